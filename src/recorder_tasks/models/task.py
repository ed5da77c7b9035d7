"""任务与定时定义数据模型

本模块定义调度器持久化使用的数据表，使用 SQLAlchemy ORM 实现：
- subscriber_tasks: 任务实例（一次可调度的工作单元）
- cron: 定时定义（周期性生成任务的模板）
- subscriptions: 订阅信息，由外部维护，仅用于任务列表关联展示

时间字段统一使用 Unix 时间戳（秒，浮点数），租约过期判断直接在 SQL 中完成。
"""

from __future__ import annotations

import uuid as uuid_lib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# SQLAlchemy 基类（Typed Declarative）
class Base(DeclarativeBase):
    pass


class TaskStatus(str, Enum):
    """任务存储状态

    Locked 不是存储状态：租约持有期间 status 仍为 pending，
    由 lock_by 是否为空区分“已认领”和“可认领”。
    """

    Pending = "pending"
    Done = "done"
    Failed = "failed"


class CronStatus(str, Enum):
    """定时定义状态，租约（locked_at/locked_by）与之正交"""

    Active = "active"
    Disabled = "disabled"
    Errored = "errored"


class Subscription(Base):
    """订阅表（外部维护）"""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    display_name: Mapped[str] = mapped_column(String, nullable=False, comment="显示名称")
    source_url: Mapped[Optional[str]] = mapped_column(Text, comment="订阅源地址")

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, display_name={self.display_name})>"

    def to_record(self) -> "SubscriptionRecord":
        return SubscriptionRecord(
            id=self.id, display_name=self.display_name, source_url=self.source_url
        )


class CronDefinition(Base):
    """定时定义表

    字段说明：
    - cron_expr / cron_timezone: 五段式 cron 表达式及其解释时区
    - next_run / last_run: 下一次、上一次触发时间戳
    - status: active/disabled/errored
    - locked_at / locked_by: 串行化多实例 tick 的租约
    - timeout_ms: 租约超时（毫秒）
    - attempts / max_attempts: 连续生成任务失败次数及上限
    - priority / max_attempts / timeout_ms / job / task_type: 生成任务时复制的模板
    """

    __tablename__ = "cron"
    __lease_columns__ = ("locked_at", "locked_by", "timeout_ms")

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cron_expr: Mapped[str] = mapped_column(String, nullable=False, comment="cron 表达式")
    cron_timezone: Mapped[str] = mapped_column(
        String, nullable=False, default="UTC", comment="表达式解释时区"
    )
    next_run: Mapped[float] = mapped_column(
        Float, nullable=False, index=True, comment="下一次触发时间戳"
    )
    last_run: Mapped[Optional[float]] = mapped_column(Float, comment="上一次触发时间戳")
    last_error: Mapped[Optional[str]] = mapped_column(Text, comment="最近一次错误")
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=CronStatus.Active.value, index=True
    )
    locked_at: Mapped[Optional[float]] = mapped_column(Float, comment="租约获取时间")
    locked_by: Mapped[Optional[str]] = mapped_column(String, comment="租约持有者")
    timeout_ms: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5000, comment="租约超时（毫秒）"
    )
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # 任务模板
    job: Mapped[bytes] = mapped_column(LargeBinary, nullable=False, comment="不透明任务负载")
    task_type: Mapped[str] = mapped_column(String, nullable=False, comment="任务类型")
    subscription_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[float] = mapped_column(Float, nullable=False, comment="创建时间戳")
    updated_at: Mapped[float] = mapped_column(Float, nullable=False, comment="更新时间戳")

    def __repr__(self) -> str:
        return (
            f"<CronDefinition(id={self.id}, cron_expr={self.cron_expr}, "
            f"status={self.status}, next_run={self.next_run})>"
        )

    def to_record(self) -> "CronRecord":
        return CronRecord(
            id=self.id,
            cron_expr=self.cron_expr,
            cron_timezone=self.cron_timezone,
            next_run=self.next_run,
            last_run=self.last_run,
            last_error=self.last_error,
            status=CronStatus(self.status),
            locked_at=self.locked_at,
            locked_by=self.locked_by,
            timeout_ms=self.timeout_ms,
            max_attempts=self.max_attempts,
            priority=self.priority,
            attempts=self.attempts,
            job=self.job,
            task_type=self.task_type,
            subscription_id=self.subscription_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class SubscriberTask(Base):
    """任务实例表

    任务只会被租约管理器（lock 字段）和重试控制器
    （status/attempts/run_at/last_error/done_at）修改，调度器本身从不删除任务。
    """

    __tablename__ = "subscriber_tasks"
    __lease_columns__ = ("lock_at", "lock_by", "timeout_ms")
    __table_args__ = (
        Index("idx_subscriber_tasks_claim", "status", "run_at", "priority"),
    )

    id: Mapped[str] = mapped_column(
        String, primary_key=True, default=lambda: str(uuid_lib.uuid4())
    )
    job: Mapped[bytes] = mapped_column(LargeBinary, nullable=False, comment="不透明任务负载")
    task_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=TaskStatus.Pending.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    run_at: Mapped[float] = mapped_column(Float, nullable=False, comment="最早执行时间戳")
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    lock_at: Mapped[Optional[float]] = mapped_column(Float, comment="租约获取时间")
    lock_by: Mapped[Optional[str]] = mapped_column(String, comment="租约持有者")
    done_at: Mapped[Optional[float]] = mapped_column(Float)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timeout_ms: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="租约超时（毫秒），创建时确定"
    )

    subscription_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    cron_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("cron.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)

    subscription: Mapped[Optional[Subscription]] = relationship(lazy="joined")
    cron: Mapped[Optional[CronDefinition]] = relationship(lazy="joined")

    def __repr__(self) -> str:
        return (
            f"<SubscriberTask(id={self.id[:8]}, task_type={self.task_type}, "
            f"status={self.status}, run_at={self.run_at}, lock_by={self.lock_by})>"
        )

    def to_record(self, *, with_relations: bool = False) -> "TaskRecord":
        subscription = None
        cron = None
        if with_relations:
            subscription = self.subscription.to_record() if self.subscription else None
            cron = self.cron.to_record() if self.cron else None
        return TaskRecord(
            id=self.id,
            job=self.job,
            task_type=self.task_type,
            status=TaskStatus(self.status),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            run_at=self.run_at,
            last_error=self.last_error,
            lock_at=self.lock_at,
            lock_by=self.lock_by,
            done_at=self.done_at,
            priority=self.priority,
            timeout_ms=self.timeout_ms,
            subscription_id=self.subscription_id,
            cron_id=self.cron_id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            subscription=subscription,
            cron=cron,
        )


@dataclass(frozen=True, slots=True)
class SubscriptionRecord:
    id: int
    display_name: str
    source_url: Optional[str]


@dataclass(frozen=True, slots=True)
class CronRecord:
    """定时定义快照（脱离会话的只读副本）"""

    id: int
    cron_expr: str
    cron_timezone: str
    next_run: float
    last_run: Optional[float]
    last_error: Optional[str]
    status: CronStatus
    locked_at: Optional[float]
    locked_by: Optional[str]
    timeout_ms: int
    max_attempts: int
    priority: int
    attempts: int
    job: bytes
    task_type: str
    subscription_id: Optional[int]
    created_at: float
    updated_at: float

    @property
    def is_locked(self) -> bool:
        return self.locked_by is not None


@dataclass(frozen=True, slots=True)
class TaskRecord:
    """任务快照（脱离会话的只读副本）

    is_locked 即“Locked”子状态的派生判断，不单独存储。
    """

    id: str
    job: bytes
    task_type: str
    status: TaskStatus
    attempts: int
    max_attempts: int
    run_at: float
    last_error: Optional[str]
    lock_at: Optional[float]
    lock_by: Optional[str]
    done_at: Optional[float]
    priority: int
    timeout_ms: int
    subscription_id: Optional[int]
    cron_id: Optional[int]
    created_at: float
    updated_at: float
    subscription: Optional[SubscriptionRecord] = None
    cron: Optional[CronRecord] = None

    @property
    def is_locked(self) -> bool:
        return self.lock_by is not None

    def __str__(self) -> str:
        return (
            f"Task(id={self.id[:8]}, type={self.task_type}, status={self.status.value}, "
            f"attempts={self.attempts}/{self.max_attempts})"
        )
