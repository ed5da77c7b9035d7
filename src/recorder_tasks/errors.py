"""调度器异常体系

按照传播策略划分：
- LockConflict / StoreUnavailable 在调度器内部静默恢复，不会落到任务行上
- FatalExecutionError、耗尽重试次数的 TransientExecutionError、ScheduleEvaluationError
  是仅有的用户可见错误（status=failed / errored，并记录 last_error）
"""

from __future__ import annotations


class SchedulerError(Exception):
    """调度器异常基类"""


class TransientExecutionError(SchedulerError):
    """可重试的执行失败，累加 attempts 并按退避策略重新调度"""


class FatalExecutionError(SchedulerError):
    """不可重试的执行失败，无论剩余次数直接标记为 failed"""


class LockConflict(SchedulerError):
    """租约竞争失败，输家直接跳过"""


class ConflictError(LockConflict):
    """对仍持有有效租约的行执行删除等操作时抛出"""

    def __init__(self, message: str, ids: list | None = None):
        super().__init__(message)
        self.ids = list(ids or [])


class ScheduleEvaluationError(SchedulerError, ValueError):
    """cron 表达式非法，定义会被标记为 errored，需要人工修正"""

    def __init__(self, expr: str, reason: str):
        super().__init__(f"invalid cron expression {expr!r}: {reason}")
        self.expr = expr
        self.reason = reason


class StoreUnavailable(SchedulerError):
    """后端存储不可用，整个轮询周期退避后重试"""


__all__ = [
    "SchedulerError",
    "TransientExecutionError",
    "FatalExecutionError",
    "LockConflict",
    "ConflictError",
    "ScheduleEvaluationError",
    "StoreUnavailable",
]
