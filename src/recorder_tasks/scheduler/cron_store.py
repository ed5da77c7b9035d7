"""定时定义存储（Cron Registry）

定义行由外部创建与编辑；运行期只有 tick 引擎通过租约修改
lock 字段、last_run、next_run、status、last_error、attempts。
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, select, update

from ..errors import ConflictError
from ..models.database import DatabaseManager
from ..models.task import CronDefinition, CronRecord, CronStatus
from .cron_expr import evaluate
from .lease import lease_free_clause
from .task_store import new_task_row

logger = logging.getLogger("recorder.cron_store")

# 允许外部编辑的字段
EDITABLE_FIELDS = (
    "cron_expr",
    "cron_timezone",
    "status",
    "priority",
    "max_attempts",
    "timeout_ms",
    "job",
    "task_type",
    "subscription_id",
)


def _check_template(max_attempts: int, timeout_ms: int, task_type: str) -> None:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    if timeout_ms < 1:
        raise ValueError("timeout_ms must be >= 1")
    if not task_type or not task_type.strip():
        raise ValueError("task_type is required")


class CronRegistry:
    """定时定义数据访问层"""

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or DatabaseManager.get_instance()

    # ------------------------------------------------------------------
    # 外部 CRUD
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        cron_expr: str,
        job: bytes,
        task_type: str,
        cron_timezone: str = "UTC",
        priority: int = 0,
        max_attempts: int = 1,
        timeout_ms: int = 5000,
        subscription_id: Optional[int] = None,
        status: CronStatus = CronStatus.Active,
        now: Optional[float] = None,
    ) -> CronRecord:
        """创建定时定义

        写入前即计算 next_run，非法表达式直接抛出 ScheduleEvaluationError，不会落库。
        """
        if now is None:
            now = time.time()
        _check_template(max_attempts, timeout_ms, task_type)
        status = CronStatus(status)
        if status == CronStatus.Errored:
            raise ValueError("a definition cannot be created as errored")

        next_run = evaluate(cron_expr, now, cron_timezone)
        row = CronDefinition(
            cron_expr=" ".join(cron_expr.split()),
            cron_timezone=cron_timezone,
            next_run=next_run,
            last_run=None,
            last_error=None,
            status=status.value,
            locked_at=None,
            locked_by=None,
            timeout_ms=int(timeout_ms),
            max_attempts=int(max_attempts),
            priority=int(priority),
            attempts=0,
            job=bytes(job),
            task_type=task_type.strip(),
            subscription_id=subscription_id,
            created_at=now,
            updated_at=now,
        )
        with self.db_manager.session_scope() as session:
            session.add(row)
            session.flush()
            record = row.to_record()

        logger.info(
            "定时定义已创建 id=%s expr=%r tz=%s next_run=%.0f",
            record.id,
            record.cron_expr,
            record.cron_timezone,
            record.next_run,
        )
        return record

    def get(self, cron_id: int) -> Optional[CronRecord]:
        with self.db_manager.session_scope() as session:
            row = session.get(CronDefinition, cron_id)
            return row.to_record() if row else None

    def list(self, status: Optional[CronStatus] = None) -> List[CronRecord]:
        stmt = select(CronDefinition).order_by(CronDefinition.id.asc())
        if status is not None:
            stmt = stmt.where(CronDefinition.status == CronStatus(status).value)
        with self.db_manager.session_scope() as session:
            return [row.to_record() for row in session.scalars(stmt).all()]

    def update(
        self, cron_id: int, changes: Dict[str, Any], now: Optional[float] = None
    ) -> Optional[CronRecord]:
        """编辑定时定义

        - 修改 cron_expr / cron_timezone 时重新计算 next_run，并把 errored 定义恢复为 active
        - status 只能在 active 与 disabled 之间切换；重新启用时从 now 起重新计算 next_run

        Returns:
            编辑后的快照，不存在时返回 None
        """
        if now is None:
            now = time.time()
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"unsupported fields: {', '.join(sorted(unknown))}")

        with self.db_manager.session_scope() as session:
            row = session.get(CronDefinition, cron_id)
            if row is None:
                return None

            expr = changes.get("cron_expr", row.cron_expr)
            tz_name = changes.get("cron_timezone", row.cron_timezone)
            schedule_changed = expr != row.cron_expr or tz_name != row.cron_timezone
            previous_status = CronStatus(row.status)

            requested = changes.get("status")
            new_status = previous_status
            if requested is not None:
                requested = CronStatus(requested)
                if requested == CronStatus.Errored:
                    raise ValueError("status can only be set to active or disabled")
                new_status = requested
            if schedule_changed and new_status == CronStatus.Errored:
                new_status = CronStatus.Active

            max_attempts = int(changes.get("max_attempts", row.max_attempts))
            timeout_ms = int(changes.get("timeout_ms", row.timeout_ms))
            task_type = changes.get("task_type", row.task_type)
            _check_template(max_attempts, timeout_ms, task_type)

            reactivated = (
                new_status == CronStatus.Active and previous_status != CronStatus.Active
            )
            if schedule_changed or reactivated:
                row.next_run = evaluate(expr, now, tz_name)
            if reactivated:
                row.attempts = 0
                row.last_error = None

            row.cron_expr = " ".join(expr.split())
            row.cron_timezone = tz_name
            row.status = new_status.value
            row.max_attempts = max_attempts
            row.attempts = min(row.attempts, max_attempts)
            row.timeout_ms = timeout_ms
            row.task_type = task_type.strip()
            if "priority" in changes:
                row.priority = int(changes["priority"])
            if "job" in changes:
                row.job = bytes(changes["job"])
            if "subscription_id" in changes:
                row.subscription_id = changes["subscription_id"]
            row.updated_at = now
            session.flush()
            record = row.to_record()

        logger.info(
            "定时定义已更新 id=%s status=%s next_run=%.0f",
            record.id,
            record.status.value,
            record.next_run,
        )
        return record

    def delete(self, cron_id: int, now: Optional[float] = None) -> bool:
        """删除定时定义；tick 正持有租约时抛出 ConflictError

        已生成的任务保留，cron_id 置空。
        """
        if now is None:
            now = time.time()
        with self.db_manager.session_scope() as session:
            deleted = session.execute(
                delete(CronDefinition)
                .where(
                    CronDefinition.id == cron_id,
                    lease_free_clause(CronDefinition, now),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if not deleted:
                if session.get(CronDefinition, cron_id) is None:
                    return False
                raise ConflictError(f"cron {cron_id} is currently leased", ids=[cron_id])

        logger.info("定时定义已删除 id=%s", cron_id)
        return True

    # ------------------------------------------------------------------
    # tick 引擎使用
    # ------------------------------------------------------------------

    def list_due_ids(self, now: float) -> List[int]:
        """到期（active、next_run <= now、无有效租约）的定义 id"""
        stmt = (
            select(CronDefinition.id)
            .where(
                CronDefinition.status == CronStatus.Active.value,
                CronDefinition.next_run <= now,
                lease_free_clause(CronDefinition, now),
            )
            .order_by(CronDefinition.next_run.asc(), CronDefinition.id.asc())
        )
        with self.db_manager.session_scope() as session:
            return list(session.execute(stmt).scalars())

    def materialize_occurrence(
        self, cron: CronRecord, worker_id: str, now: float, next_run: float
    ) -> Optional[str]:
        """生成一次触发对应的任务并推进 next_run

        定义更新与任务插入在同一事务中完成；调用者已不再持有租约时不做任何修改。

        Returns:
            新任务 id；租约已丢失或定义不再是 active 时返回 None
        """
        with self.db_manager.session_scope() as session:
            advanced = session.execute(
                update(CronDefinition)
                .where(
                    CronDefinition.id == cron.id,
                    CronDefinition.locked_by == worker_id,
                    CronDefinition.status == CronStatus.Active.value,
                )
                .values(
                    last_run=now,
                    next_run=next_run,
                    attempts=0,
                    last_error=None,
                    locked_at=None,
                    locked_by=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            if advanced != 1:
                return None

            task = new_task_row(
                job=cron.job,
                task_type=cron.task_type,
                now=now,
                priority=cron.priority,
                max_attempts=cron.max_attempts,
                timeout_ms=cron.timeout_ms,
                subscription_id=cron.subscription_id,
                cron_id=cron.id,
            )
            session.add(task)
            session.flush()
            return task.id

    def mark_errored(self, cron_id: int, worker_id: str, now: float, error: str) -> bool:
        """表达式求值失败：status=errored，记录 last_error，next_run 不推进"""
        with self.db_manager.session_scope() as session:
            return (
                session.execute(
                    update(CronDefinition)
                    .where(
                        CronDefinition.id == cron_id,
                        CronDefinition.locked_by == worker_id,
                    )
                    .values(
                        status=CronStatus.Errored.value,
                        last_error=error,
                        locked_at=None,
                        locked_by=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                == 1
            )

    def record_failure(
        self,
        cron_id: int,
        worker_id: str,
        now: float,
        error: str,
        retry_seconds: float,
    ) -> Optional[CronStatus]:
        """生成任务失败：attempts + 1，达到上限后转为 errored，否则稍后重试

        Returns:
            更新后的状态，租约丢失时返回 None
        """
        exhausted = CronDefinition.attempts + 1 >= CronDefinition.max_attempts
        stmt = (
            update(CronDefinition)
            .where(CronDefinition.id == cron_id, CronDefinition.locked_by == worker_id)
            .values(
                attempts=case(
                    (exhausted, CronDefinition.max_attempts),
                    else_=CronDefinition.attempts + 1,
                ),
                status=case(
                    (exhausted, CronStatus.Errored.value),
                    else_=CronDefinition.status,
                ),
                last_error=error,
                next_run=now + retry_seconds,
                locked_at=None,
                locked_by=None,
                updated_at=now,
            )
            .returning(CronDefinition.status)
            .execution_options(synchronize_session=False)
        )
        with self.db_manager.session_scope() as session:
            status = session.execute(stmt).scalar_one_or_none()
        return CronStatus(status) if status is not None else None
