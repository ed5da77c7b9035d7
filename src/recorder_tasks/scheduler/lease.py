"""租约管理器

租约由 (lock_at, lock_by, timeout_ms) 三元组表示，挂在任务行或定时定义行上。
获取、释放、续约都是单条带条件的 UPDATE，检查与写入在数据库中一步完成，
多实例并发时只有一个调用者能成功。

可加锁的 ORM 类通过类属性 ``__lease_columns__`` 声明三列的名称，
任务与定时定义共用同一套实现。
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import InstrumentedAttribute, Session

from ..models.database import DatabaseManager

logger = logging.getLogger("recorder.lease")


def lease_columns(
    model: Any,
) -> Tuple[InstrumentedAttribute, InstrumentedAttribute, InstrumentedAttribute]:
    """返回 (lock_at, lock_by, timeout_ms) 三列"""
    lock_at_name, lock_by_name, timeout_name = model.__lease_columns__
    return (
        getattr(model, lock_at_name),
        getattr(model, lock_by_name),
        getattr(model, timeout_name),
    )


def lease_free_clause(model: Any, now: float):
    """未加锁或租约已过期（lock_at + timeout_ms < now）"""
    lock_at, lock_by, timeout_ms = lease_columns(model)
    return or_(
        lock_by.is_(None),
        lock_at + timeout_ms * 0.001 < now,
    )


def lease_held_clause(model: Any, now: float):
    """仍持有有效租约"""
    lock_at, lock_by, timeout_ms = lease_columns(model)
    return and_(
        lock_by.is_not(None),
        lock_at + timeout_ms * 0.001 >= now,
    )


def is_lease_expired(lock_at: Optional[float], timeout_ms: int, now: float) -> bool:
    """内存侧的同一判断，用于快照"""
    if lock_at is None:
        return True
    return lock_at + timeout_ms * 0.001 < now


class LeaseManager:
    """通用排他租约

    - acquire: 仅当未加锁或租约已过期时成功
    - release: 仅当调用者仍是持有者时生效，过期释放静默忽略
    - renew: 心跳，持有者把 lock_at 推进到 now
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or DatabaseManager.get_instance()

    def acquire(
        self,
        model: Any,
        row_id: Any,
        worker_id: str,
        now: float,
        *conditions: Any,
        session: Optional[Session] = None,
    ) -> bool:
        """尝试获取租约

        Args:
            model: 可加锁的 ORM 类
            row_id: 行主键
            worker_id: 调用者标识
            now: 当前时间戳
            *conditions: 额外的 WHERE 条件，与租约判断在同一条语句中生效
            session: 可选，复用外部事务

        Returns:
            是否获取成功；竞争失败返回 False，不抛异常
        """
        lock_at, lock_by, _ = lease_columns(model)
        stmt = (
            update(model)
            .where(model.id == row_id, lease_free_clause(model, now), *conditions)
            .values({lock_at.key: now, lock_by.key: worker_id, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        acquired = self._execute(stmt, session) == 1
        if acquired:
            logger.debug(
                "租约获取成功 table=%s id=%s worker=%s",
                model.__tablename__,
                row_id,
                worker_id,
            )
        else:
            logger.debug(
                "租约竞争失败，跳过 table=%s id=%s worker=%s",
                model.__tablename__,
                row_id,
                worker_id,
            )
        return acquired

    def release(
        self,
        model: Any,
        row_id: Any,
        worker_id: str,
        now: float,
        *,
        session: Optional[Session] = None,
    ) -> bool:
        """释放租约；调用者已不再持有时为静默空操作"""
        lock_at, lock_by, _ = lease_columns(model)
        stmt = (
            update(model)
            .where(model.id == row_id, lock_by == worker_id)
            .values({lock_at.key: None, lock_by.key: None, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        released = self._execute(stmt, session) == 1
        if not released:
            logger.debug(
                "租约已被回收，忽略释放 table=%s id=%s worker=%s",
                model.__tablename__,
                row_id,
                worker_id,
            )
        return released

    def renew(
        self,
        model: Any,
        row_id: Any,
        worker_id: str,
        now: float,
        *,
        session: Optional[Session] = None,
    ) -> bool:
        """续约（心跳）：持有者把 lock_at 推进到 now"""
        lock_at, lock_by, _ = lease_columns(model)
        stmt = (
            update(model)
            .where(model.id == row_id, lock_by == worker_id)
            .values({lock_at.key: now, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        return self._execute(stmt, session) == 1

    def _execute(self, stmt, session: Optional[Session]) -> int:
        if session is not None:
            return session.execute(stmt).rowcount
        with self.db_manager.session_scope() as own_session:
            return own_session.execute(stmt).rowcount
