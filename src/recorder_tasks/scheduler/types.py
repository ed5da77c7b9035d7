"""调度器公共类型：工作者标识与查询过滤条件"""

from __future__ import annotations

import os
import socket
import uuid as uuid_lib
from dataclasses import dataclass
from typing import Optional, Sequence

from ..models.task import TaskStatus

TASK_ORDER_FIELDS = ("priority", "run_at", "created_at", "attempts")


def make_worker_id(prefix: Optional[str] = None) -> str:
    """生成调度实例标识

    简化后的格式：``<host>:<pid>:<随机后缀>``，显式给定前缀时替换主机名部分。
    同一进程多次调用得到不同的标识，测试里可以模拟多个实例。
    """
    host = prefix or socket.gethostname() or "worker"
    return f"{host}:{os.getpid()}:{uuid_lib.uuid4().hex[:8]}"


@dataclass(frozen=True)
class TaskFilter:
    """任务批量操作与列表查询的过滤条件，字段之间为 AND 关系"""

    ids: Optional[Sequence[str]] = None
    status: Optional[TaskStatus] = None
    task_type: Optional[str] = None
    subscription_id: Optional[int] = None
    cron_id: Optional[int] = None

    def is_empty(self) -> bool:
        return (
            self.ids is None
            and self.status is None
            and self.task_type is None
            and self.subscription_id is None
            and self.cron_id is None
        )


@dataclass(frozen=True)
class TaskOrder:
    field: str = "run_at"
    descending: bool = False

    def __post_init__(self):
        if self.field not in TASK_ORDER_FIELDS:
            raise ValueError(f"unsupported order field: {self.field}")


@dataclass(frozen=True)
class Page:
    page: int = 1
    limit: int = 20

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class TaskTransition:
    """重试控制器给出的状态迁移结果，由任务存储以条件更新落库"""

    status: TaskStatus
    attempts: int
    run_at: float
    last_error: Optional[str]
    done_at: Optional[float]


__all__ = [
    "make_worker_id",
    "TaskFilter",
    "TaskOrder",
    "TaskTransition",
    "Page",
    "TASK_ORDER_FIELDS",
]
