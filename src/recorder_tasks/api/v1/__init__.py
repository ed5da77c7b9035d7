"""任务调度 API v1：任务与定时定义路由。"""

from __future__ import annotations

from .routes import get_cron_service, get_task_service, router

__all__ = ["router", "get_task_service", "get_cron_service"]
