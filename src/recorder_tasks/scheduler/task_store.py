"""任务存储

任务实例的持久化访问层。所有会修改任务行的操作都是单条带条件的语句
（或单个事务内的条件语句），不存在“先读后写”的窗口：

- claim_batch: 选择 + 加锁在一条 UPDATE ... WHERE id IN (SELECT ...) 中完成
- apply_transition: 仅当调用者仍持有租约时生效
- retry / delete: 管理操作，跳过或拒绝仍持有有效租约的行
"""

from __future__ import annotations

import logging
import time
import uuid as uuid_lib
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, or_, select, update

from ..errors import ConflictError
from ..models.database import DatabaseManager
from ..models.task import SubscriberTask, TaskRecord, TaskStatus
from .lease import lease_free_clause, lease_held_clause
from .types import Page, TaskFilter, TaskOrder, TaskTransition

logger = logging.getLogger("recorder.task_store")


def new_task_row(
    *,
    job: bytes,
    task_type: str,
    now: float,
    priority: int = 0,
    max_attempts: int = 1,
    timeout_ms: int = 60000,
    run_at: Optional[float] = None,
    subscription_id: Optional[int] = None,
    cron_id: Optional[int] = None,
) -> SubscriberTask:
    """构造一条待插入的任务行

    run_at 早于创建时间时按创建时间处理，保证 run_at >= created_at。
    """
    if not task_type or not task_type.strip():
        raise ValueError("task_type is required")
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if timeout_ms < 1:
        raise ValueError("timeout_ms must be >= 1")

    effective_run_at = now if run_at is None else max(float(run_at), now)
    return SubscriberTask(
        id=str(uuid_lib.uuid4()),
        job=bytes(job),
        task_type=task_type.strip(),
        status=TaskStatus.Pending.value,
        attempts=0,
        max_attempts=int(max_attempts),
        run_at=effective_run_at,
        last_error=None,
        lock_at=None,
        lock_by=None,
        done_at=None,
        priority=int(priority),
        timeout_ms=int(timeout_ms),
        subscription_id=subscription_id,
        cron_id=cron_id,
        created_at=now,
        updated_at=now,
    )


def _filter_clauses(task_filter: Optional[TaskFilter]) -> list:
    if task_filter is None:
        return []
    clauses = []
    if task_filter.ids is not None:
        clauses.append(SubscriberTask.id.in_(list(task_filter.ids)))
    if task_filter.status is not None:
        clauses.append(SubscriberTask.status == TaskStatus(task_filter.status).value)
    if task_filter.task_type is not None:
        clauses.append(SubscriberTask.task_type == task_filter.task_type)
    if task_filter.subscription_id is not None:
        clauses.append(SubscriberTask.subscription_id == task_filter.subscription_id)
    if task_filter.cron_id is not None:
        clauses.append(SubscriberTask.cron_id == task_filter.cron_id)
    return clauses


_CLAIM_ORDER = (
    SubscriberTask.priority.desc(),
    SubscriberTask.run_at.asc(),
    SubscriberTask.created_at.asc(),
)


class TaskStore:
    """任务数据访问层

    使用 Repository 模式封装任务表的全部读写，调度器与 API 都只经由这里修改任务行。
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        """初始化任务存储

        Args:
            db_manager: 数据库管理器实例，如果为None则使用默认实例
        """
        self.db_manager = db_manager or DatabaseManager.get_instance()

    def create(
        self,
        *,
        job: bytes,
        task_type: str,
        priority: int = 0,
        max_attempts: int = 1,
        timeout_ms: int = 60000,
        run_at: Optional[float] = None,
        subscription_id: Optional[int] = None,
        now: Optional[float] = None,
    ) -> str:
        """提交一个临时任务

        Returns:
            新任务的 id
        """
        if now is None:
            now = time.time()
        row = new_task_row(
            job=job,
            task_type=task_type,
            now=now,
            priority=priority,
            max_attempts=max_attempts,
            timeout_ms=timeout_ms,
            run_at=run_at,
            subscription_id=subscription_id,
        )
        with self.db_manager.session_scope() as session:
            session.add(row)
        logger.info(
            "任务已创建 id=%s type=%s priority=%d run_at=%.3f",
            row.id,
            row.task_type,
            row.priority,
            row.run_at,
        )
        return row.id

    def get(self, task_id: str, *, with_relations: bool = True) -> Optional[TaskRecord]:
        with self.db_manager.session_scope() as session:
            row = session.get(SubscriberTask, task_id)
            return row.to_record(with_relations=with_relations) if row else None

    def claim_batch(
        self,
        limit: int,
        now: float,
        worker_id: str,
        task_types: Optional[Iterable[str]] = None,
    ) -> List[TaskRecord]:
        """原子地认领一批到期任务

        选择条件：status=pending、run_at <= now、未加锁或租约已过期。
        排序：priority 降序，同优先级 run_at 升序。
        被其他调用者锁住的行直接排除在结果之外，不视为错误。

        Args:
            limit: 最多认领数量（通常为执行器剩余容量）
            now: 当前时间戳
            worker_id: 认领者标识
            task_types: 只认领这些任务类型，None 表示不限

        Returns:
            已加锁的任务快照，按认领顺序排列
        """
        if limit <= 0:
            return []
        types = list(task_types) if task_types is not None else None
        if types is not None and not types:
            return []

        eligible = [
            SubscriberTask.status == TaskStatus.Pending.value,
            SubscriberTask.run_at <= now,
            lease_free_clause(SubscriberTask, now),
        ]
        if types is not None:
            eligible.append(SubscriberTask.task_type.in_(types))

        candidates = (
            select(SubscriberTask.id)
            .where(*eligible)
            .order_by(*_CLAIM_ORDER)
            .limit(int(limit))
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(SubscriberTask)
            .where(SubscriberTask.id.in_(candidates), *eligible)
            .values(lock_at=now, lock_by=worker_id, updated_at=now)
            .returning(SubscriberTask.id)
            .execution_options(synchronize_session=False)
        )

        with self.db_manager.session_scope() as session:
            claimed_ids = list(session.execute(stmt).scalars())
            if not claimed_ids:
                logger.debug("无到期任务 worker=%s", worker_id)
                return []
            rows = session.scalars(
                select(SubscriberTask)
                .where(SubscriberTask.id.in_(claimed_ids))
                .order_by(*_CLAIM_ORDER)
            ).all()
            records = [row.to_record() for row in rows]

        logger.debug("认领任务 worker=%s count=%d", worker_id, len(records))
        return records

    def apply_transition(
        self,
        task: TaskRecord,
        worker_id: str,
        transition: TaskTransition,
        now: float,
    ) -> bool:
        """由租约持有者落库一次状态迁移，并同时释放租约

        仅当行仍为 pending、仍由 worker_id 持有、attempts 未被他人改动时生效。

        Returns:
            是否生效；租约已丢失时返回 False
        """
        stmt = (
            update(SubscriberTask)
            .where(
                SubscriberTask.id == task.id,
                SubscriberTask.status == TaskStatus.Pending.value,
                SubscriberTask.lock_by == worker_id,
                SubscriberTask.attempts == task.attempts,
            )
            .values(
                status=transition.status.value,
                attempts=transition.attempts,
                run_at=transition.run_at,
                last_error=transition.last_error,
                done_at=transition.done_at,
                lock_at=None,
                lock_by=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with self.db_manager.session_scope() as session:
            applied = session.execute(stmt).rowcount == 1
        if not applied:
            logger.warning(
                "租约已丢失，放弃提交执行结果 id=%s worker=%s status=%s",
                task.id,
                worker_id,
                transition.status.value,
            )
        return applied

    def retry(self, task_filter: TaskFilter, now: Optional[float] = None) -> List[TaskRecord]:
        """管理性重试

        对 failed 任务以及未被有效租约持有的 pending 任务：
        status=pending、attempts 归零、清空租约与 last_error、run_at=now。
        done 为终态，不受影响；仍持有有效租约的任务被跳过。

        Returns:
            被重置的任务快照
        """
        if now is None:
            now = time.time()
        resettable = or_(
            SubscriberTask.status == TaskStatus.Failed.value,
            and_(
                SubscriberTask.status == TaskStatus.Pending.value,
                lease_free_clause(SubscriberTask, now),
            ),
        )
        stmt = (
            update(SubscriberTask)
            .where(*_filter_clauses(task_filter), resettable)
            .values(
                status=TaskStatus.Pending.value,
                attempts=0,
                last_error=None,
                lock_at=None,
                lock_by=None,
                done_at=None,
                run_at=now,
                updated_at=now,
            )
            .returning(SubscriberTask.id)
            .execution_options(synchronize_session=False)
        )
        with self.db_manager.session_scope() as session:
            ids = list(session.execute(stmt).scalars())
            if not ids:
                return []
            rows = session.scalars(
                select(SubscriberTask)
                .where(SubscriberTask.id.in_(ids))
                .order_by(SubscriberTask.created_at.asc())
            ).all()
            records = [row.to_record(with_relations=True) for row in rows]

        logger.info("管理性重试 count=%d", len(records))
        return records

    def delete(self, task_filter: TaskFilter, now: Optional[float] = None) -> int:
        """删除任务

        命中的任务中只要有一条仍持有有效租约，整个请求以 ConflictError 拒绝；
        租约过期或任务结束后同一删除即可成功。

        Returns:
            删除的行数
        """
        if now is None:
            now = time.time()
        clauses = _filter_clauses(task_filter)
        with self.db_manager.session_scope() as session:
            leased = list(
                session.execute(
                    select(SubscriberTask.id).where(
                        *clauses, lease_held_clause(SubscriberTask, now)
                    )
                ).scalars()
            )
            if leased:
                raise ConflictError(
                    f"{len(leased)} task(s) are currently leased", ids=leased
                )
            deleted = session.execute(
                delete(SubscriberTask)
                .where(*clauses, lease_free_clause(SubscriberTask, now))
                .execution_options(synchronize_session=False)
            ).rowcount

        logger.info("删除任务 count=%d", deleted)
        return deleted

    def list(
        self,
        task_filter: Optional[TaskFilter] = None,
        order: Optional[TaskOrder] = None,
        page: Optional[Page] = None,
    ) -> Tuple[List[TaskRecord], int]:
        """分页查询任务，附带订阅与定时定义信息

        Returns:
            (任务快照列表, 总数量)
        """
        order = order or TaskOrder()
        page = page or Page()
        clauses = _filter_clauses(task_filter)
        column = getattr(SubscriberTask, order.field)
        ordering = column.desc() if order.descending else column.asc()

        with self.db_manager.session_scope() as session:
            total = session.scalar(
                select(func.count()).select_from(SubscriberTask).where(*clauses)
            )
            rows = session.scalars(
                select(SubscriberTask)
                .where(*clauses)
                .order_by(ordering, SubscriberTask.id.asc())
                .offset(page.offset)
                .limit(page.limit)
            ).all()
            records = [row.to_record(with_relations=True) for row in rows]
        return records, int(total or 0)

    def all(self, ids: Optional[Sequence[str]] = None) -> List[TaskRecord]:
        """返回全部任务快照（测试与巡检使用）"""
        clauses = _filter_clauses(TaskFilter(ids=ids)) if ids is not None else []
        with self.db_manager.session_scope() as session:
            rows = session.scalars(select(SubscriberTask).where(*clauses)).all()
            return [row.to_record() for row in rows]
