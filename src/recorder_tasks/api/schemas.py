"""API 请求与响应模型定义

本模块定义了任务调度 API 的请求和响应模型，使用 Pydantic 实现数据验证和序列化。
job 负载对调度器不透明，在 JSON 中以 base64 字符串传输。
"""

from __future__ import annotations

import base64
import binascii
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ..models.task import CronStatus, TaskStatus
from ..scheduler.types import TaskFilter


def encode_job(job: bytes) -> str:
    return base64.b64encode(job).decode("ascii")


def decode_job(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("job must be base64 encoded") from exc


def _check_base64(value: Optional[str]) -> Optional[str]:
    if value is not None:
        decode_job(value)
    return value


class SubscriptionInfo(BaseModel):
    """订阅信息（关联展示）"""
    id: int = Field(..., description="订阅ID")
    display_name: str = Field(..., description="显示名称")
    source_url: Optional[str] = Field(None, description="订阅源地址")


class CronResponse(BaseModel):
    """定时定义响应模型"""
    id: int = Field(..., description="定义ID")
    cron_expr: str = Field(..., description="cron 表达式")
    cron_timezone: str = Field(..., description="表达式解释时区")
    next_run: float = Field(..., description="下一次触发时间戳")
    last_run: Optional[float] = Field(None, description="上一次触发时间戳")
    last_error: Optional[str] = Field(None, description="最近一次错误")
    status: CronStatus = Field(..., description="定义状态")
    locked_at: Optional[float] = Field(None, description="租约获取时间")
    locked_by: Optional[str] = Field(None, description="租约持有者")
    timeout_ms: int = Field(..., description="租约超时（毫秒）")
    max_attempts: int = Field(..., description="最大尝试次数")
    priority: int = Field(..., description="优先级")
    attempts: int = Field(..., description="连续失败次数")
    job: str = Field(..., description="任务负载（base64）")
    task_type: str = Field(..., description="任务类型")
    subscription_id: Optional[int] = Field(None, description="订阅ID")
    created_at: float = Field(..., description="创建时间戳")
    updated_at: float = Field(..., description="更新时间戳")


class TaskResponse(BaseModel):
    """任务响应模型"""
    id: str = Field(..., description="任务ID")
    job: str = Field(..., description="任务负载（base64）")
    task_type: str = Field(..., description="任务类型")
    status: TaskStatus = Field(..., description="任务状态")
    attempts: int = Field(..., description="已尝试次数")
    max_attempts: int = Field(..., description="最大尝试次数")
    run_at: float = Field(..., description="最早执行时间戳")
    last_error: Optional[str] = Field(None, description="最近一次错误")
    lock_at: Optional[float] = Field(None, description="租约获取时间")
    lock_by: Optional[str] = Field(None, description="租约持有者")
    is_locked: bool = Field(False, description="是否已被认领")
    done_at: Optional[float] = Field(None, description="完成时间戳")
    priority: int = Field(..., description="优先级")
    timeout_ms: int = Field(..., description="租约超时（毫秒）")
    subscription_id: Optional[int] = Field(None, description="订阅ID")
    cron_id: Optional[int] = Field(None, description="定时定义ID")
    created_at: float = Field(..., description="创建时间戳")
    updated_at: float = Field(..., description="更新时间戳")
    subscription: Optional[SubscriptionInfo] = Field(None, description="关联订阅")
    cron: Optional[CronResponse] = Field(None, description="关联定时定义")


class PaginationInfo(BaseModel):
    """分页信息模型"""
    current_page: int = Field(..., description="当前页码")
    total_pages: int = Field(..., description="总页数")
    total_items: int = Field(..., description="总条目数")
    per_page: int = Field(..., description="每页条数")
    has_next: bool = Field(..., description="是否有下一页")
    has_prev: bool = Field(..., description="是否有上一页")


class PaginatedTasksResponse(BaseModel):
    """分页任务响应模型"""
    data: List[TaskResponse] = Field(..., description="任务列表")
    pagination: PaginationInfo = Field(..., description="分页信息")


class TaskCreateRequest(BaseModel):
    """临时任务提交请求"""
    job: str = Field(..., description="任务负载（base64）")
    task_type: str = Field(..., min_length=1, description="任务类型")
    priority: int = Field(0, description="优先级，越大越先执行")
    max_attempts: Optional[int] = Field(None, ge=1, description="最大尝试次数")
    run_at: Optional[float] = Field(None, description="最早执行时间戳，缺省为立即")
    timeout_ms: Optional[int] = Field(None, ge=1, description="租约超时（毫秒）")
    subscription_id: Optional[int] = Field(None, description="订阅ID")

    @field_validator("job")
    @classmethod
    def check_job(cls, value: Optional[str]) -> Optional[str]:
        return _check_base64(value)


class TaskCreateResponse(BaseModel):
    id: str = Field(..., description="新任务ID")


class TaskFilterRequest(BaseModel):
    """批量操作过滤条件，字段之间为 AND 关系，至少指定一项"""
    ids: Optional[List[str]] = Field(None, description="任务ID列表")
    status: Optional[TaskStatus] = Field(None, description="任务状态")
    task_type: Optional[str] = Field(None, description="任务类型")
    subscription_id: Optional[int] = Field(None, description="订阅ID")
    cron_id: Optional[int] = Field(None, description="定时定义ID")

    def to_filter(self) -> TaskFilter:
        return TaskFilter(
            ids=self.ids,
            status=self.status,
            task_type=self.task_type,
            subscription_id=self.subscription_id,
            cron_id=self.cron_id,
        )


class DeleteResponse(BaseModel):
    deleted: int = Field(..., description="删除数量")


class RetryResponse(BaseModel):
    data: List[TaskResponse] = Field(..., description="被重置的任务")
    count: int = Field(..., description="重置数量")


class CronCreateRequest(BaseModel):
    """定时定义创建请求"""
    cron_expr: str = Field(..., min_length=1, description="五段式 cron 表达式或宏")
    cron_timezone: str = Field("UTC", description="IANA 时区")
    job: str = Field(..., description="任务负载（base64）")
    task_type: str = Field(..., min_length=1, description="任务类型")
    priority: int = Field(0, description="生成任务的优先级")
    max_attempts: int = Field(1, ge=1, description="生成任务的最大尝试次数")
    timeout_ms: int = Field(5000, ge=1, description="租约超时（毫秒）")
    subscription_id: Optional[int] = Field(None, description="订阅ID")
    status: CronStatus = Field(CronStatus.Active, description="初始状态：active 或 disabled")

    @field_validator("job")
    @classmethod
    def check_job(cls, value: Optional[str]) -> Optional[str]:
        return _check_base64(value)


class CronUpdateRequest(BaseModel):
    """定时定义编辑请求，只更新显式给出的字段"""
    cron_expr: Optional[str] = Field(None, min_length=1)
    cron_timezone: Optional[str] = Field(None)
    job: Optional[str] = Field(None, description="任务负载（base64）")
    task_type: Optional[str] = Field(None, min_length=1)
    priority: Optional[int] = Field(None)
    max_attempts: Optional[int] = Field(None, ge=1)
    timeout_ms: Optional[int] = Field(None, ge=1)
    subscription_id: Optional[int] = Field(None)
    status: Optional[CronStatus] = Field(None, description="active 或 disabled")

    @field_validator("job")
    @classmethod
    def check_job(cls, value: Optional[str]) -> Optional[str]:
        return _check_base64(value)


class CronListResponse(BaseModel):
    data: List[CronResponse] = Field(..., description="定时定义列表")
    count: int = Field(..., description="数量")

