"""重试控制器

根据执行器报告的结果决定任务的下一个状态：
- 成功: status=done, done_at=now
- 可重试失败: attempts + 1；未达上限则 run_at = now + backoff(attempts) 重新排队
- 不可重试失败或达到上限: status=failed，run_at 不再推进

决策（decide_*）是纯计算，落库由 TaskStore.apply_transition 以条件更新完成，
租约在同一条语句中释放。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import FatalExecutionError
from ..models.task import TaskRecord, TaskStatus
from .task_store import TaskStore
from .types import TaskTransition

logger = logging.getLogger("recorder.retry")


@dataclass(frozen=True)
class RetryPolicy:
    """指数退避：min(base * factor ** (attempts - 1), max)"""

    base_seconds: float = 5.0
    factor: float = 2.0
    max_seconds: float = 3600.0

    def __post_init__(self):
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be positive")
        if self.factor < 1:
            raise ValueError("factor must be >= 1")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")

    def backoff(self, attempts: int) -> float:
        exponent = max(attempts, 1) - 1
        try:
            delay = self.base_seconds * self.factor**exponent
        except OverflowError:
            return self.max_seconds
        return min(delay, self.max_seconds)


def describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    return f"{exc.__class__.__name__}: {message}" if message else exc.__class__.__name__


class RetryController:
    def __init__(self, store: TaskStore, policy: Optional[RetryPolicy] = None):
        self.store = store
        self.policy = policy or RetryPolicy()

    def decide_success(self, task: TaskRecord, now: float) -> TaskTransition:
        return TaskTransition(
            status=TaskStatus.Done,
            attempts=task.attempts,
            run_at=task.run_at,
            last_error=task.last_error,
            done_at=now,
        )

    def decide_failure(
        self, task: TaskRecord, exc: BaseException, now: float
    ) -> TaskTransition:
        """计算失败后的迁移

        非 FatalExecutionError 的任何异常都按可重试处理。
        """
        attempts = min(task.attempts + 1, task.max_attempts)
        error = describe_error(exc)
        if isinstance(exc, FatalExecutionError) or attempts >= task.max_attempts:
            return TaskTransition(
                status=TaskStatus.Failed,
                attempts=attempts,
                run_at=task.run_at,
                last_error=error,
                done_at=None,
            )
        return TaskTransition(
            status=TaskStatus.Pending,
            attempts=attempts,
            run_at=now + self.policy.backoff(attempts),
            last_error=error,
            done_at=None,
        )

    def on_success(self, task: TaskRecord, worker_id: str, now: float) -> bool:
        applied = self.store.apply_transition(
            task, worker_id, self.decide_success(task, now), now
        )
        if applied:
            logger.info("任务执行成功 %s", task)
        return applied

    def on_failure(
        self, task: TaskRecord, worker_id: str, exc: BaseException, now: float
    ) -> bool:
        transition = self.decide_failure(task, exc, now)
        applied = self.store.apply_transition(task, worker_id, transition, now)
        if not applied:
            return False
        if transition.status == TaskStatus.Failed:
            logger.error(
                "任务最终失败 id=%s attempts=%d/%d error=%s",
                task.id,
                transition.attempts,
                task.max_attempts,
                transition.last_error,
            )
        else:
            logger.warning(
                "任务执行失败，%.1f 秒后重试 id=%s attempts=%d/%d error=%s",
                transition.run_at - now,
                task.id,
                transition.attempts,
                task.max_attempts,
                transition.last_error,
            )
        return True
