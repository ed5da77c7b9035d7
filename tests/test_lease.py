from __future__ import annotations

from recorder_tasks.models import CronDefinition, SubscriberTask
from recorder_tasks.scheduler.lease import is_lease_expired

T = 1_700_000_000.0


def _new_task(store, timeout_ms=30000):
    return store.create(job=b"payload", task_type="echo", timeout_ms=timeout_ms, now=T)


def test_acquire_free_row(store, lease):
    task_id = _new_task(store)

    assert lease.acquire(SubscriberTask, task_id, "worker-a", T)

    record = store.get(task_id)
    assert record.lock_by == "worker-a"
    assert record.lock_at == T
    assert record.is_locked


def test_live_lease_blocks_other_workers(store, lease):
    task_id = _new_task(store)
    assert lease.acquire(SubscriberTask, task_id, "worker-a", T)

    assert not lease.acquire(SubscriberTask, task_id, "worker-b", T + 1)
    assert store.get(task_id).lock_by == "worker-a"


def test_lease_expiry_boundary(store, lease):
    task_id = _new_task(store, timeout_ms=30000)
    assert lease.acquire(SubscriberTask, task_id, "worker-a", T)

    # T + 29.999s: 仍然有效
    assert not lease.acquire(SubscriberTask, task_id, "worker-b", T + 29.999)
    # T + 30.001s: 已过期，任何人都可以回收
    assert lease.acquire(SubscriberTask, task_id, "worker-b", T + 30.001)

    record = store.get(task_id)
    assert record.lock_by == "worker-b"
    assert record.lock_at == T + 30.001


def test_is_lease_expired_matches_sql_predicate():
    assert is_lease_expired(None, 30000, T)
    assert not is_lease_expired(T, 30000, T + 29.999)
    assert is_lease_expired(T, 30000, T + 30.001)


def test_release_by_holder_clears_both_fields(store, lease):
    task_id = _new_task(store)
    lease.acquire(SubscriberTask, task_id, "worker-a", T)

    assert lease.release(SubscriberTask, task_id, "worker-a", T + 1)

    record = store.get(task_id)
    assert record.lock_by is None
    assert record.lock_at is None


def test_stale_release_is_silent_noop(store, lease):
    task_id = _new_task(store, timeout_ms=1000)
    lease.acquire(SubscriberTask, task_id, "worker-a", T)
    lease.acquire(SubscriberTask, task_id, "worker-b", T + 5)

    assert not lease.release(SubscriberTask, task_id, "worker-a", T + 6)
    assert store.get(task_id).lock_by == "worker-b"


def test_renew_extends_lease(store, lease):
    task_id = _new_task(store, timeout_ms=10000)
    lease.acquire(SubscriberTask, task_id, "worker-a", T)

    assert lease.renew(SubscriberTask, task_id, "worker-a", T + 8)
    # 续约后从 T+8 起算，T+15 时仍有效
    assert not lease.acquire(SubscriberTask, task_id, "worker-b", T + 15)
    assert not lease.renew(SubscriberTask, task_id, "worker-b", T + 15)


def test_extra_conditions_are_part_of_the_same_write(crons, lease):
    cron = crons.create(cron_expr="*/5 * * * *", job=b"x", task_type="echo", now=T)

    # next_run 尚未到达
    assert not lease.acquire(
        CronDefinition, cron.id, "worker-a", T, CronDefinition.next_run <= T
    )
    assert lease.acquire(
        CronDefinition,
        cron.id,
        "worker-a",
        cron.next_run,
        CronDefinition.next_run <= cron.next_run,
    )
    locked = crons.get(cron.id)
    assert locked.locked_by == "worker-a"
    assert locked.locked_at == cron.next_run
