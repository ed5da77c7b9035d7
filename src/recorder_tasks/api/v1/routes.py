"""API v1 路由定义。

此模块包含任务调度 API v1 版本提供的所有 FastAPI 路由端点：
任务的查询、提交、删除、重试，以及定时定义的增删改查。
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ...errors import ConflictError, ScheduleEvaluationError, StoreUnavailable
from ...models.task import CronStatus, TaskStatus
from ...scheduler.types import TASK_ORDER_FIELDS, TaskFilter, TaskOrder
from ..schemas import (
    CronCreateRequest,
    CronListResponse,
    CronResponse,
    CronUpdateRequest,
    DeleteResponse,
    PaginatedTasksResponse,
    RetryResponse,
    TaskCreateRequest,
    TaskCreateResponse,
    TaskFilterRequest,
    TaskResponse,
)
from ..services import CronService, TaskService

router = APIRouter(prefix="/api/v1", tags=["tasks"])


def get_task_service() -> TaskService:
    """依赖注入：获取任务服务实例"""

    return TaskService()


def get_cron_service() -> CronService:
    """依赖注入：获取定时定义服务实例"""

    return CronService()


def _http_error(exc: Exception, action: str) -> HTTPException:
    """把调度器异常映射为 HTTP 错误"""

    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": f"{action}失败: {exc}", "ids": exc.ids},
        )
    if isinstance(exc, (ScheduleEvaluationError, ValueError)):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=f"{action}失败: {exc}",
        )
    if isinstance(exc, StoreUnavailable):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{action}失败，存储暂不可用: {exc}",
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{action}失败: {exc}",
    )


def _require_criteria(request: TaskFilterRequest) -> TaskFilter:
    task_filter = request.to_filter()
    if task_filter.is_empty():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail="至少需要指定一个过滤条件",
        )
    return task_filter


# ----------------------------------------------------------------------
# 任务
# ----------------------------------------------------------------------


@router.get(
    "/tasks",
    response_model=PaginatedTasksResponse,
    summary="获取任务列表",
    description="获取分页的任务列表，支持按状态、类型、订阅、定时定义筛选及排序",
)
async def list_tasks(
    page: int = Query(1, ge=1, description="页码"),
    limit: int = Query(20, ge=1, le=100, description="每页条数"),
    status_filter: Optional[TaskStatus] = Query(None, alias="status", description="任务状态"),
    task_type: Optional[str] = Query(None, description="任务类型"),
    subscription_id: Optional[int] = Query(None, description="订阅ID"),
    cron_id: Optional[int] = Query(None, description="定时定义ID"),
    order_by: str = Query("run_at", description=f"排序字段：{', '.join(TASK_ORDER_FIELDS)}"),
    order: str = Query("asc", pattern="^(asc|desc)$", description="排序方向"),
    service: TaskService = Depends(get_task_service),
):
    """获取分页任务列表"""

    try:
        task_order = TaskOrder(field=order_by, descending=order == "desc")
        task_filter = TaskFilter(
            status=status_filter,
            task_type=task_type,
            subscription_id=subscription_id,
            cron_id=cron_id,
        )
        return service.list_tasks(task_filter, task_order, page, limit)
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "获取任务列表") from exc


@router.get(
    "/tasks/{task_id}",
    response_model=TaskResponse,
    summary="获取任务详情",
)
async def get_task(task_id: str, service: TaskService = Depends(get_task_service)):
    try:
        result = service.get_task(task_id)
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "获取任务详情") from exc
    if not result:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"任务 {task_id} 不存在"
        )
    return result


@router.post(
    "/tasks",
    response_model=TaskCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="提交临时任务",
)
async def create_task(
    request: TaskCreateRequest, service: TaskService = Depends(get_task_service)
):
    try:
        return TaskCreateResponse(id=service.create_task(request))
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "提交任务") from exc


@router.delete(
    "/tasks/{task_id}",
    response_model=DeleteResponse,
    summary="删除单个任务",
    description="任务仍持有有效租约时返回 409",
)
async def delete_task(task_id: str, service: TaskService = Depends(get_task_service)):
    try:
        deleted = service.delete_tasks(TaskFilter(ids=[task_id]))
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "删除任务") from exc
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"任务 {task_id} 不存在"
        )
    return DeleteResponse(deleted=deleted)


@router.post(
    "/tasks/delete",
    response_model=DeleteResponse,
    summary="批量删除任务",
    description="命中的任务中只要有一条仍持有有效租约，整个请求返回 409",
)
async def delete_tasks(
    request: TaskFilterRequest, service: TaskService = Depends(get_task_service)
):
    task_filter = _require_criteria(request)
    try:
        return DeleteResponse(deleted=service.delete_tasks(task_filter))
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "删除任务") from exc


@router.post(
    "/tasks/retry",
    response_model=RetryResponse,
    summary="批量重试任务",
    description="重置 failed 及未被认领的 pending 任务：attempts 归零，立即可被认领",
)
async def retry_tasks(
    request: TaskFilterRequest, service: TaskService = Depends(get_task_service)
):
    task_filter = _require_criteria(request)
    try:
        return service.retry_tasks(task_filter)
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "重试任务") from exc


# ----------------------------------------------------------------------
# 定时定义
# ----------------------------------------------------------------------


@router.post(
    "/crons",
    response_model=CronResponse,
    status_code=status.HTTP_201_CREATED,
    summary="创建定时定义",
    tags=["crons"],
)
async def create_cron(
    request: CronCreateRequest, service: CronService = Depends(get_cron_service)
):
    try:
        return service.create_cron(request)
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "创建定时定义") from exc


@router.get(
    "/crons",
    response_model=CronListResponse,
    summary="获取定时定义列表",
    tags=["crons"],
)
async def list_crons(
    status_filter: Optional[CronStatus] = Query(None, alias="status", description="定义状态"),
    service: CronService = Depends(get_cron_service),
):
    try:
        return service.list_crons(status_filter)
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "获取定时定义列表") from exc


@router.get(
    "/crons/{cron_id}",
    response_model=CronResponse,
    summary="获取定时定义详情",
    tags=["crons"],
)
async def get_cron(cron_id: int, service: CronService = Depends(get_cron_service)):
    try:
        result = service.get_cron(cron_id)
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "获取定时定义") from exc
    if not result:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"定时定义 {cron_id} 不存在"
        )
    return result


@router.patch(
    "/crons/{cron_id}",
    response_model=CronResponse,
    summary="编辑定时定义",
    description="修改表达式会重新计算 next_run，并把 errored 定义恢复为 active",
    tags=["crons"],
)
async def update_cron(
    cron_id: int,
    request: CronUpdateRequest,
    service: CronService = Depends(get_cron_service),
):
    try:
        result = service.update_cron(cron_id, request)
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "编辑定时定义") from exc
    if not result:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"定时定义 {cron_id} 不存在"
        )
    return result


@router.delete(
    "/crons/{cron_id}",
    response_model=DeleteResponse,
    summary="删除定时定义",
    description="tick 正持有租约时返回 409；已生成的任务保留",
    tags=["crons"],
)
async def delete_cron(cron_id: int, service: CronService = Depends(get_cron_service)):
    try:
        deleted = service.delete_cron(cron_id)
    except Exception as exc:  # noqa: BLE001
        raise _http_error(exc, "删除定时定义") from exc
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"定时定义 {cron_id} 不存在"
        )
    return DeleteResponse(deleted=1)
