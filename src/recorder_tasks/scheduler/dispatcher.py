"""TaskDispatcher: 基于租约的任务调度器

每个 tick：
- 先执行定时定义 tick，把到期的定义物化为任务
- 按执行器剩余容量调用 claim_batch 认领到期任务（priority 降序，run_at 升序）
- 每个任务交给对应执行器在独立的 asyncio.Task 中运行，不阻塞下一次轮询
- 执行期间按 timeout_ms / 3 的间隔续约；结束后由重试控制器落库结果

多实例之间不做任何进程内协调，互斥完全依赖存储层的条件写入。
存储不可用时整个轮询周期指数退避，不会修改任何任务行。
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..errors import StoreUnavailable
from ..models.task import SubscriberTask, TaskRecord
from .cron_engine import CronTickEngine
from .cron_store import CronRegistry
from .executor import BaseJobExecutor, JobExecutorRegistry
from .lease import LeaseManager
from .retry import RetryController, RetryPolicy
from .task_store import TaskStore
from .types import make_worker_id

# 续约间隔下限（秒）
_MIN_HEARTBEAT_INTERVAL = 0.05


class TaskDispatcher:
    """轮询-认领-分发调度器"""

    def __init__(
        self,
        store: TaskStore,
        executors: JobExecutorRegistry,
        *,
        worker_id: Optional[str] = None,
        cron_engine: Optional[CronTickEngine] = None,
        retry_policy: Optional[RetryPolicy] = None,
        tick_interval: float = 1.0,
        max_concurrency: int = 4,
        store_backoff_initial: float = 1.0,
        store_backoff_max: float = 60.0,
        cron_retry_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        """初始化调度器

        Args:
            store: 任务存储
            executors: 执行器注册表，只认领其中存在的任务类型
            worker_id: 本实例标识，默认自动生成
            cron_engine: 定时 tick 引擎，默认基于同一数据库创建
            retry_policy: 失败退避策略
            tick_interval: 轮询周期，单位秒
            max_concurrency: 本实例同时执行的任务上限
            store_backoff_initial: 存储不可用时的首次退避秒数
            store_backoff_max: 存储不可用时的退避上限
            cron_retry_seconds: 定时任务生成失败后的重试间隔
            clock: 时间源，测试时可替换
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        self.store = store
        self.executors = executors
        self.worker_id = worker_id or make_worker_id()
        self.lease = LeaseManager(store.db_manager)
        self.retry = RetryController(store, retry_policy)
        self.cron_engine = cron_engine or CronTickEngine(
            CronRegistry(store.db_manager),
            self.worker_id,
            lease=self.lease,
            retry_seconds=cron_retry_seconds,
        )

        self._tick_interval = max(0.05, tick_interval)
        self._max_concurrency = max_concurrency
        self._store_backoff_initial = store_backoff_initial
        self._store_backoff_max = max(store_backoff_max, store_backoff_initial)
        self._store_backoff = 0.0
        self._clock = clock

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._per_type: Dict[str, int] = {}

        self._log = logging.getLogger("recorder.dispatcher")

    async def start(self) -> None:
        """启动调度主循环（幂等）"""
        if self._running:
            self._log.warning("Dispatcher already running")
            return

        self._running = True
        self._loop_task = asyncio.create_task(self._timer_loop())
        self._log.info(
            "Dispatcher started worker=%s executors=%s",
            self.worker_id,
            self.executors.task_types(),
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """有序停止：先停止轮询，再等待执行中的任务

        Args:
            timeout: 等待执行中任务的最长秒数，超时后取消并释放租约
        """
        if not self._running:
            self._log.warning("Dispatcher not running")
            return

        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        running = list(self._in_flight.values())
        if running:
            self._log.info("等待执行中的任务结束 count=%d", len(running))
            _, pending = await asyncio.wait(running, timeout=timeout)
            for job in pending:
                job.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        self._log.info("Dispatcher stopped")

    async def _timer_loop(self) -> None:
        self._log.info("Dispatcher timer loop started")
        try:
            while self._running:
                delay = self._tick_interval
                try:
                    await self.run_once()
                    if self._store_backoff:
                        self._log.info("存储已恢复，退出退避")
                    self._store_backoff = 0.0
                except StoreUnavailable as exc:
                    self._store_backoff = (
                        min(self._store_backoff * 2, self._store_backoff_max)
                        if self._store_backoff
                        else self._store_backoff_initial
                    )
                    delay = self._store_backoff
                    self._log.warning(
                        "存储不可用，%.1f 秒后重试整个轮询周期: %s", delay, exc
                    )
                except Exception as exc:
                    self._log.exception("Dispatcher cycle error: %s", exc)
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            self._log.debug("Dispatcher timer loop cancelled")
            raise
        finally:
            self._log.info("Dispatcher timer loop stopped")

    async def run_once(self) -> List[str]:
        """执行一个轮询周期

        Returns:
            本周期分发出去的任务 id

        Raises:
            StoreUnavailable: 存储不可用
        """
        now = self._clock()
        await asyncio.to_thread(self.cron_engine.tick, now)

        capacity = self._max_concurrency - len(self._in_flight)
        if capacity <= 0:
            return []
        spare: Dict[str, int] = {}
        for executor in self.executors.executors.values():
            free = executor.concurrency - self._per_type.get(executor.task_type, 0)
            if free > 0:
                spare[executor.task_type] = free
        if not spare:
            return []

        limit = min(capacity, sum(spare.values()))
        claimed = await asyncio.to_thread(
            self.store.claim_batch, limit, now, self.worker_id, list(spare)
        )
        dispatched: List[str] = []
        for task in claimed:
            executor = self.executors.find(task.task_type)
            if executor is None or self._per_type.get(task.task_type, 0) >= executor.concurrency:
                # 执行器已满，立即释放，避免空占租约
                await asyncio.to_thread(
                    self.lease.release, SubscriberTask, task.id, self.worker_id, now
                )
                self._log.debug("执行器已满，释放任务 id=%s type=%s", task.id, task.task_type)
                continue
            self._per_type[task.task_type] = self._per_type.get(task.task_type, 0) + 1
            self._in_flight[task.id] = asyncio.create_task(
                self._run(task, executor), name=f"task-{task.id[:8]}"
            )
            dispatched.append(task.id)

        if dispatched:
            self._log.debug("分发任务 count=%d in_flight=%d", len(dispatched), len(self._in_flight))
        return dispatched

    async def _run(self, task: TaskRecord, executor: BaseJobExecutor) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(task))
        try:
            self._log.info("执行任务 %s worker=%s", task, self.worker_id)
            error: Optional[BaseException] = None
            try:
                await executor.execute(task)
            except asyncio.CancelledError:
                with contextlib.suppress(StoreUnavailable):
                    await asyncio.to_thread(
                        self.lease.release,
                        SubscriberTask,
                        task.id,
                        self.worker_id,
                        self._clock(),
                    )
                self._log.warning("任务被取消，已释放租约 id=%s", task.id)
                raise
            except Exception as exc:
                error = exc
            finally:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat

            now = self._clock()
            try:
                if error is None:
                    await asyncio.to_thread(self.retry.on_success, task, self.worker_id, now)
                else:
                    await asyncio.to_thread(
                        self.retry.on_failure, task, self.worker_id, error, now
                    )
            except StoreUnavailable as exc:
                # 租约到期后任务会被重新认领
                self._log.warning("存储不可用，执行结果未能落库 id=%s: %s", task.id, exc)
        finally:
            self._in_flight.pop(task.id, None)
            remaining = self._per_type.get(task.task_type, 1) - 1
            if remaining > 0:
                self._per_type[task.task_type] = remaining
            else:
                self._per_type.pop(task.task_type, None)

    async def _heartbeat(self, task: TaskRecord) -> None:
        interval = max(task.timeout_ms / 3000.0, _MIN_HEARTBEAT_INTERVAL)
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await asyncio.to_thread(
                    self.lease.renew, SubscriberTask, task.id, self.worker_id, self._clock()
                )
            except StoreUnavailable as exc:
                self._log.warning("续约失败，存储不可用 id=%s: %s", task.id, exc)
                continue
            if not renewed:
                self._log.warning("租约已被回收，停止续约 id=%s", task.id)
                return

    def is_running(self) -> bool:
        return self._running

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def wait_idle(self) -> None:
        """等待当前执行中的任务全部结束（测试使用）"""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    def get_status(self) -> Dict[str, Any]:
        """返回调度器状态快照"""
        return {
            "running": self._running,
            "worker_id": self.worker_id,
            "tick_interval": self._tick_interval,
            "max_concurrency": self._max_concurrency,
            "in_flight": len(self._in_flight),
            "in_flight_by_type": dict(self._per_type),
            "executors": self.executors.task_types(),
            "store_backoff": self._store_backoff,
        }
