"""定时定义 tick 引擎

每个轮询周期随任务调度一起执行：
1. 查出到期（active 且 next_run <= now）且无有效租约的定义
2. 逐个尝试获取租约，竞争失败直接跳过
3. 计算 next_run；表达式非法时标记为 errored，不推进 next_run
4. 在同一事务中推进 next_run、释放租约并生成一个任务

多实例并发 tick 时，租约保证每次触发恰好生成一个任务；
next_run 推进后重复 tick 同一窗口为空操作。
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..errors import ScheduleEvaluationError, StoreUnavailable
from ..models.task import CronDefinition, CronStatus
from .cron_expr import evaluate
from .cron_store import CronRegistry
from .lease import LeaseManager

logger = logging.getLogger("recorder.cron_engine")


class CronTickEngine:
    def __init__(
        self,
        registry: CronRegistry,
        worker_id: str,
        lease: Optional[LeaseManager] = None,
        retry_seconds: float = 5.0,
    ):
        """
        Args:
            registry: 定时定义存储
            worker_id: 本实例标识，作为租约持有者
            lease: 租约管理器，默认与 registry 共用数据库
            retry_seconds: 生成任务失败后再次尝试的间隔
        """
        self.registry = registry
        self.worker_id = worker_id
        self.lease = lease or LeaseManager(registry.db_manager)
        self.retry_seconds = retry_seconds

    def tick(self, now: float) -> List[str]:
        """处理所有到期定义

        Returns:
            本次生成的任务 id 列表

        Raises:
            StoreUnavailable: 存储不可用，由调用方整体退避
        """
        created: List[str] = []
        for cron_id in self.registry.list_due_ids(now):
            task_id = self._tick_one(cron_id, now)
            if task_id is not None:
                created.append(task_id)
        if created:
            logger.info("定时触发生成任务 count=%d worker=%s", len(created), self.worker_id)
        return created

    def _tick_one(self, cron_id: int, now: float) -> Optional[str]:
        acquired = self.lease.acquire(
            CronDefinition,
            cron_id,
            self.worker_id,
            now,
            CronDefinition.status == CronStatus.Active.value,
            CronDefinition.next_run <= now,
        )
        if not acquired:
            return None

        # 获取租约后再读取，拿到的是最新模板
        cron = self.registry.get(cron_id)
        if cron is None:
            return None

        try:
            next_run = evaluate(cron.cron_expr, now, cron.cron_timezone)
        except ScheduleEvaluationError as exc:
            self.registry.mark_errored(cron_id, self.worker_id, now, str(exc))
            logger.error("定时表达式非法，定义已标记为 errored id=%s error=%s", cron_id, exc)
            return None

        try:
            task_id = self.registry.materialize_occurrence(
                cron, self.worker_id, now, next_run
            )
        except StoreUnavailable:
            raise
        except (SQLAlchemyError, ValueError) as exc:
            status = self.registry.record_failure(
                cron_id, self.worker_id, now, str(exc), self.retry_seconds
            )
            if status == CronStatus.Errored:
                logger.error("定时任务生成失败次数达到上限 id=%s error=%s", cron_id, exc)
            else:
                logger.warning(
                    "定时任务生成失败，%.0f 秒后重试 id=%s error=%s",
                    self.retry_seconds,
                    cron_id,
                    exc,
                )
            return None

        if task_id is None:
            # 定义在获取租约后被停用，或租约已被他人回收
            if self.lease.release(CronDefinition, cron_id, self.worker_id, now):
                logger.info("定时定义已不再是 active，放弃本次触发并释放租约 id=%s", cron_id)
            else:
                logger.warning("定时定义租约已丢失，放弃本次触发 id=%s", cron_id)
            return None

        logger.debug("定时定义触发 id=%s task=%s next_run=%.0f", cron_id, task_id, next_run)
        return task_id
