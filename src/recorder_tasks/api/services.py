"""业务逻辑服务层

作为路由与调度器存储之间的中间层，负责请求模型与存储快照之间的转换、分页计算，
以及从配置中补齐任务默认值。
"""

from __future__ import annotations

import math
from typing import List, Optional

from ..config.settings import Settings, get_settings
from ..models.task import CronRecord, CronStatus, TaskRecord
from ..scheduler.cron_store import CronRegistry
from ..scheduler.task_store import TaskStore
from ..scheduler.types import Page, TaskFilter, TaskOrder
from .schemas import (
    CronCreateRequest,
    CronListResponse,
    CronResponse,
    CronUpdateRequest,
    PaginatedTasksResponse,
    PaginationInfo,
    RetryResponse,
    SubscriptionInfo,
    TaskCreateRequest,
    TaskResponse,
    decode_job,
    encode_job,
)


def to_cron_response(record: CronRecord) -> CronResponse:
    return CronResponse(
        id=record.id,
        cron_expr=record.cron_expr,
        cron_timezone=record.cron_timezone,
        next_run=record.next_run,
        last_run=record.last_run,
        last_error=record.last_error,
        status=record.status,
        locked_at=record.locked_at,
        locked_by=record.locked_by,
        timeout_ms=record.timeout_ms,
        max_attempts=record.max_attempts,
        priority=record.priority,
        attempts=record.attempts,
        job=encode_job(record.job),
        task_type=record.task_type,
        subscription_id=record.subscription_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def to_task_response(record: TaskRecord) -> TaskResponse:
    subscription = None
    if record.subscription is not None:
        subscription = SubscriptionInfo(
            id=record.subscription.id,
            display_name=record.subscription.display_name,
            source_url=record.subscription.source_url,
        )
    return TaskResponse(
        id=record.id,
        job=encode_job(record.job),
        task_type=record.task_type,
        status=record.status,
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        run_at=record.run_at,
        last_error=record.last_error,
        lock_at=record.lock_at,
        lock_by=record.lock_by,
        is_locked=record.is_locked,
        done_at=record.done_at,
        priority=record.priority,
        timeout_ms=record.timeout_ms,
        subscription_id=record.subscription_id,
        cron_id=record.cron_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
        subscription=subscription,
        cron=to_cron_response(record.cron) if record.cron is not None else None,
    )


class TaskService:
    """任务业务逻辑服务"""

    def __init__(
        self, store: Optional[TaskStore] = None, settings: Optional[Settings] = None
    ):
        """初始化服务

        Args:
            store: 任务存储实例，如果为None则创建默认实例
            settings: 配置，用于补齐 max_attempts / timeout_ms 默认值
        """
        self.store = store or TaskStore()
        self.settings = settings or get_settings()

    def list_tasks(
        self,
        task_filter: TaskFilter,
        order: TaskOrder,
        page: int,
        limit: int,
    ) -> PaginatedTasksResponse:
        records, total_count = self.store.list(task_filter, order, Page(page, limit))

        # 计算分页信息
        total_pages = math.ceil(total_count / limit) if total_count > 0 else 1
        pagination_info = PaginationInfo(
            current_page=page,
            total_pages=total_pages,
            total_items=total_count,
            per_page=limit,
            has_next=page < total_pages,
            has_prev=page > 1,
        )
        return PaginatedTasksResponse(
            data=[to_task_response(record) for record in records],
            pagination=pagination_info,
        )

    def get_task(self, task_id: str) -> Optional[TaskResponse]:
        record = self.store.get(task_id)
        return to_task_response(record) if record else None

    def create_task(self, request: TaskCreateRequest) -> str:
        defaults = self.settings.scheduler
        return self.store.create(
            job=decode_job(request.job),
            task_type=request.task_type,
            priority=request.priority,
            max_attempts=request.max_attempts or defaults.default_max_attempts,
            timeout_ms=request.timeout_ms or defaults.default_timeout_ms,
            run_at=request.run_at,
            subscription_id=request.subscription_id,
        )

    def delete_tasks(self, task_filter: TaskFilter) -> int:
        return self.store.delete(task_filter)

    def retry_tasks(self, task_filter: TaskFilter) -> RetryResponse:
        records = self.store.retry(task_filter)
        return RetryResponse(
            data=[to_task_response(record) for record in records], count=len(records)
        )


class CronService:
    """定时定义业务逻辑服务"""

    def __init__(self, registry: Optional[CronRegistry] = None):
        self.registry = registry or CronRegistry()

    def create_cron(self, request: CronCreateRequest) -> CronResponse:
        record = self.registry.create(
            cron_expr=request.cron_expr,
            cron_timezone=request.cron_timezone,
            job=decode_job(request.job),
            task_type=request.task_type,
            priority=request.priority,
            max_attempts=request.max_attempts,
            timeout_ms=request.timeout_ms,
            subscription_id=request.subscription_id,
            status=request.status,
        )
        return to_cron_response(record)

    def list_crons(self, status: Optional[CronStatus] = None) -> CronListResponse:
        records: List[CronRecord] = self.registry.list(status)
        return CronListResponse(
            data=[to_cron_response(record) for record in records], count=len(records)
        )

    def get_cron(self, cron_id: int) -> Optional[CronResponse]:
        record = self.registry.get(cron_id)
        return to_cron_response(record) if record else None

    def update_cron(
        self, cron_id: int, request: CronUpdateRequest
    ) -> Optional[CronResponse]:
        changes = request.model_dump(exclude_unset=True)
        if "job" in changes and changes["job"] is not None:
            changes["job"] = decode_job(changes["job"])
        # 显式传 null 的字段中，只有 subscription_id 允许置空
        changes = {
            key: value
            for key, value in changes.items()
            if value is not None or key == "subscription_id"
        }
        record = self.registry.update(cron_id, changes)
        return to_cron_response(record) if record else None

    def delete_cron(self, cron_id: int) -> bool:
        return self.registry.delete(cron_id)


__all__ = ["TaskService", "CronService"]
