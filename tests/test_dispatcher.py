from __future__ import annotations

import asyncio
import sqlite3
import time

import pytest

from recorder_tasks.errors import FatalExecutionError, StoreUnavailable
from recorder_tasks.models import DatabaseManager, TaskStatus
from recorder_tasks.scheduler import (
    BaseJobExecutor,
    JobExecutorRegistry,
    RetryPolicy,
    TaskDispatcher,
    TaskFilter,
    TaskStore,
)

T0 = 1_700_000_000.0


class RecordingExecutor(BaseJobExecutor):
    task_type = "echo"

    def __init__(self, concurrency: int = 1):
        super().__init__(concurrency=concurrency)
        self.seen: list[bytes] = []

    async def execute(self, task):
        self.seen.append(task.job)


class FailingExecutor(BaseJobExecutor):
    task_type = "flaky"

    def __init__(self, error: Exception):
        super().__init__()
        self.error = error

    async def execute(self, task):
        raise self.error


class BlockingExecutor(BaseJobExecutor):
    task_type = "slow"

    def __init__(self, concurrency: int = 1):
        super().__init__(concurrency=concurrency)
        self.release = asyncio.Event()
        self.started = 0

    async def execute(self, task):
        self.started += 1
        await self.release.wait()


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _dispatcher(store, *executors, clock=None, **kwargs):
    registry = JobExecutorRegistry()
    for executor in executors:
        registry.register(executor)
    return TaskDispatcher(
        store,
        registry,
        worker_id="worker-test",
        retry_policy=RetryPolicy(base_seconds=5, factor=2, max_seconds=60),
        clock=clock or FakeClock(T0),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_dispatches_in_priority_order_and_completes(store):
    low = store.create(job=b"low", task_type="echo", priority=1, now=T0)
    high = store.create(job=b"high", task_type="echo", priority=9, now=T0)
    executor = RecordingExecutor(concurrency=2)
    dispatcher = _dispatcher(store, executor)

    dispatched = await dispatcher.run_once()
    await dispatcher.wait_idle()

    assert dispatched == [high, low]
    assert executor.seen == [b"high", b"low"]
    for task_id in (low, high):
        record = store.get(task_id)
        assert record.status == TaskStatus.Done
        assert record.done_at == T0
        assert not record.is_locked


@pytest.mark.asyncio
async def test_failure_requeues_with_backoff(store):
    task_id = store.create(job=b"", task_type="flaky", max_attempts=3, now=T0)
    dispatcher = _dispatcher(store, FailingExecutor(RuntimeError("boom")))

    await dispatcher.run_once()
    await dispatcher.wait_idle()

    record = store.get(task_id)
    assert record.status == TaskStatus.Pending
    assert record.attempts == 1
    assert record.run_at == T0 + 5
    assert record.last_error == "RuntimeError: boom"
    assert not record.is_locked


@pytest.mark.asyncio
async def test_fatal_error_fails_task(store):
    task_id = store.create(job=b"", task_type="flaky", max_attempts=3, now=T0)
    dispatcher = _dispatcher(store, FailingExecutor(FatalExecutionError("nope")))

    await dispatcher.run_once()
    await dispatcher.wait_idle()

    record = store.get(task_id)
    assert record.status == TaskStatus.Failed
    assert record.attempts == 1


@pytest.mark.asyncio
async def test_saturated_executor_releases_lease(store):
    first = store.create(job=b"", task_type="slow", now=T0 - 2)
    second = store.create(job=b"", task_type="slow", now=T0 - 1)
    executor = BlockingExecutor(concurrency=1)
    # echo 的空闲槽位让本轮认领上限为 2，但只有 slow 任务到期
    dispatcher = _dispatcher(store, executor, RecordingExecutor())

    dispatched = await dispatcher.run_once()
    await asyncio.sleep(0)

    assert dispatched == [first]
    assert dispatcher.in_flight_count() == 1
    assert store.get(first).lock_by == "worker-test"
    # 未能分发的任务立即释放租约
    assert store.get(second).lock_by is None

    # 执行器已满时不再认领该类型
    assert await dispatcher.run_once() == []
    assert store.get(second).lock_by is None

    executor.release.set()
    await dispatcher.wait_idle()
    assert store.get(first).status == TaskStatus.Done


@pytest.mark.asyncio
async def test_claim_limit_is_capped_by_spare_executor_slots(monkeypatch, store):
    for i in range(3):
        store.create(job=b"", task_type="slow", now=T0 - 10 + i)
    executor = BlockingExecutor(concurrency=1)
    dispatcher = _dispatcher(store, executor, max_concurrency=4)
    original = store.claim_batch
    limits = []

    def recording_claim(limit, *args, **kwargs):
        limits.append(limit)
        return original(limit, *args, **kwargs)

    monkeypatch.setattr(store, "claim_batch", recording_claim)

    assert len(await dispatcher.run_once()) == 1
    assert limits == [1]
    # 只有被分发的任务持有租约
    records, _ = store.list(TaskFilter(task_type="slow"))
    assert sum(1 for record in records if record.lock_by) == 1

    executor.release.set()
    await dispatcher.wait_idle()


@pytest.mark.asyncio
async def test_unregistered_task_types_are_not_claimed(store):
    foreign = store.create(job=b"", task_type="download", now=T0)
    dispatcher = _dispatcher(store, RecordingExecutor())

    assert await dispatcher.run_once() == []
    assert store.get(foreign).lock_by is None


@pytest.mark.asyncio
async def test_respects_max_concurrency(store):
    for i in range(3):
        store.create(job=b"", task_type="slow", now=T0 - 10 + i)
    executor = BlockingExecutor(concurrency=5)
    dispatcher = _dispatcher(store, executor, max_concurrency=2)

    assert len(await dispatcher.run_once()) == 2
    assert await dispatcher.run_once() == []

    executor.release.set()
    await dispatcher.wait_idle()
    assert len(await dispatcher.run_once()) == 1
    await dispatcher.wait_idle()


@pytest.mark.asyncio
async def test_cron_occurrence_is_dispatched_in_same_cycle(store, crons):
    cron = crons.create(cron_expr="*/5 * * * *", job=b"tick", task_type="echo", now=T0)
    executor = RecordingExecutor()
    clock = FakeClock(cron.next_run + 1)
    dispatcher = _dispatcher(store, executor, clock=clock)

    dispatched = await dispatcher.run_once()
    await dispatcher.wait_idle()

    assert len(dispatched) == 1
    assert executor.seen == [b"tick"]
    assert store.get(dispatched[0]).cron_id == cron.id


@pytest.mark.asyncio
async def test_heartbeat_renews_lease(store):
    task_id = store.create(job=b"", task_type="slow", timeout_ms=150, now=time.time())
    executor = BlockingExecutor()
    dispatcher = _dispatcher(store, executor, clock=time.time)

    await dispatcher.run_once()
    claimed_at = store.get(task_id).lock_at
    await asyncio.sleep(0.25)

    renewed = store.get(task_id)
    assert renewed.lock_by == "worker-test"
    assert renewed.lock_at > claimed_at

    executor.release.set()
    await dispatcher.wait_idle()
    assert store.get(task_id).status == TaskStatus.Done


@pytest.mark.asyncio
async def test_store_outage_backs_off_whole_cycle(monkeypatch, store):
    dispatcher = _dispatcher(
        store,
        RecordingExecutor(),
        tick_interval=0.05,
        store_backoff_initial=0.01,
        store_backoff_max=0.04,
    )

    def unavailable(now):
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(dispatcher.cron_engine, "tick", unavailable)

    await dispatcher.start()
    await asyncio.sleep(0.2)
    status = dispatcher.get_status()
    await dispatcher.stop()

    assert status["running"]
    assert status["store_backoff"] == 0.04
    assert not dispatcher.is_running()


@pytest.mark.asyncio
async def test_start_stop_lifecycle_waits_for_running_jobs(store):
    task_id = store.create(job=b"", task_type="slow", now=time.time())
    executor = BlockingExecutor()
    dispatcher = _dispatcher(store, executor, clock=time.time, tick_interval=0.05)

    await dispatcher.start()
    for _ in range(40):
        if executor.started:
            break
        await asyncio.sleep(0.05)
    assert executor.started == 1

    asyncio.get_running_loop().call_later(0.05, executor.release.set)
    await dispatcher.stop()

    assert dispatcher.in_flight_count() == 0
    assert store.get(task_id).status == TaskStatus.Done


@pytest.mark.asyncio
async def test_stop_timeout_cancels_and_releases(store):
    task_id = store.create(job=b"", task_type="slow", now=time.time())
    executor = BlockingExecutor()
    dispatcher = _dispatcher(store, executor, clock=time.time, tick_interval=0.05)

    await dispatcher.start()
    for _ in range(40):
        if executor.started:
            break
        await asyncio.sleep(0.05)

    await dispatcher.stop(timeout=0.05)

    record = store.get(task_id)
    assert record.status == TaskStatus.Pending
    assert record.lock_by is None
    assert record.attempts == 0


@pytest.mark.asyncio
async def test_cancel_during_store_outage_stays_cancelled(monkeypatch, store):
    task_id = store.create(job=b"", task_type="slow", now=T0)
    executor = BlockingExecutor()
    dispatcher = _dispatcher(store, executor)

    await dispatcher.run_once()
    await asyncio.sleep(0)
    assert executor.started == 1
    jobs = list(dispatcher._in_flight.values())

    def unavailable(*args, **kwargs):
        raise StoreUnavailable("database is locked")

    monkeypatch.setattr(dispatcher.lease, "release", unavailable)
    await dispatcher.start()
    await dispatcher.stop(timeout=0.05)

    assert jobs[0].cancelled()
    assert dispatcher.in_flight_count() == 0
    # 释放失败时租约保留，到期后由其他实例回收
    assert store.get(task_id).lock_by == "worker-test"


@pytest.mark.asyncio
async def test_store_lock_does_not_block_event_loop(db, store):
    task_id = store.create(job=b"", task_type="slow", now=T0)
    executor = BlockingExecutor()
    dispatcher = _dispatcher(store, executor)
    loop = asyncio.get_running_loop()

    blocker = sqlite3.connect(db.db_path, isolation_level=None)
    try:
        blocker.execute("BEGIN IMMEDIATE")
        loop.call_later(0.6, blocker.execute, "COMMIT")

        started = time.monotonic()
        cycle = asyncio.create_task(dispatcher.run_once())
        gaps = []
        while not cycle.done():
            before = time.monotonic()
            await asyncio.sleep(0.05)
            gaps.append(time.monotonic() - before)
        dispatched = cycle.result()
        elapsed = time.monotonic() - started
    finally:
        blocker.close()

    # 认领确实等待了写锁，期间事件循环仍按时调度
    assert elapsed >= 0.5
    assert max(gaps) < 0.3
    assert dispatched == [task_id]

    executor.release.set()
    await dispatcher.wait_idle()
    assert store.get(task_id).status == TaskStatus.Done


@pytest.fixture(name="impatient_store")
def fixture_impatient_store(tmp_path):
    """等待写锁不超过 50ms 的独立数据库"""

    DatabaseManager.reset_instance()
    manager = DatabaseManager.get_instance(str(tmp_path / "impatient.db"), busy_timeout=0.05)
    yield TaskStore(manager)
    DatabaseManager.reset_instance()


@pytest.mark.asyncio
async def test_locked_database_backs_off_without_touching_rows(impatient_store):
    store = impatient_store
    task_id = store.create(job=b"", task_type="echo", now=T0)
    executor = RecordingExecutor()
    dispatcher = _dispatcher(
        store,
        executor,
        tick_interval=0.05,
        store_backoff_initial=0.01,
        store_backoff_max=0.04,
    )

    blocker = sqlite3.connect(store.db_manager.db_path, isolation_level=None)
    try:
        blocker.execute("BEGIN IMMEDIATE")

        with pytest.raises(StoreUnavailable):
            store.claim_batch(1, T0, "worker-test", ["echo"])
        with pytest.raises(StoreUnavailable):
            await dispatcher.run_once()

        await dispatcher.start()
        await asyncio.sleep(0.3)
        status = dispatcher.get_status()
        await dispatcher.stop()
        # 已进入线程的认领在写锁超时后才返回
        await asyncio.sleep(0.1)
    finally:
        blocker.execute("COMMIT")
        blocker.close()

    assert status["store_backoff"] > 0
    assert executor.seen == []
    record = store.get(task_id)
    assert record.status == TaskStatus.Pending
    assert record.lock_by is None
    assert record.attempts == 0

    # 锁释放后恢复正常调度
    assert await dispatcher.run_once() == [task_id]
    await dispatcher.wait_idle()
    assert executor.seen == [b""]
