"""recorder 任务调度服务

- FastAPI 实例
- TaskDispatcher 集成（应用启动/关闭生命周期）
- 按配置加载任务执行器
- RESTful API 接口
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.v1 import router as api_v1_router
from .config.settings import get_settings
from .models.database import DatabaseManager
from .scheduler import RetryPolicy, TaskDispatcher, TaskStore, load_executors
from .state import get_dispatcher, set_dispatcher
from .utils.logging import setup_logging

logger = setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:  # noqa: D401 (fastapi 兼容)
    """应用生命周期：启动调度器 & 关闭清理。"""
    logger.info("Application starting ...")

    # 解析配置文件（尽早进行，以便初始化数据库路径等依赖）
    settings = get_settings()
    Path(settings.storage.db_path).parent.mkdir(parents=True, exist_ok=True)
    db_manager = DatabaseManager.get_instance(
        settings.storage.db_path,
        settings.storage.enable_wal,
        settings.storage.busy_timeout,
    )

    executors = load_executors(settings.executors)
    if not len(executors):
        logger.warning("未配置任何执行器，本实例只处理定时触发，不认领任务")

    conf = settings.scheduler
    dispatcher = TaskDispatcher(
        TaskStore(db_manager),
        executors,
        worker_id=conf.worker_id,
        retry_policy=RetryPolicy(
            base_seconds=conf.retry_backoff_base,
            factor=conf.retry_backoff_factor,
            max_seconds=conf.retry_backoff_max,
        ),
        tick_interval=conf.tick_interval,
        max_concurrency=conf.max_concurrency,
        store_backoff_initial=conf.store_backoff_initial,
        store_backoff_max=conf.store_backoff_max,
        cron_retry_seconds=conf.cron_retry_seconds,
    )
    try:
        await dispatcher.start()
    except Exception as exc:
        logger.exception("Failed to initialise dispatcher: %s", exc)
        raise
    set_dispatcher(dispatcher)

    logger.info("Application started worker=%s", dispatcher.worker_id)

    try:
        yield
    finally:
        logger.info("Application shutting down ...")
        await dispatcher.stop()
        set_dispatcher(None)
        logger.info("TaskDispatcher stopped.")


app = FastAPI(
    title="Recorder Task Scheduler",
    description="基于租约的分布式任务调度 API",
    version="1.0.0",
    lifespan=lifespan,
)

# 添加 CORS 支持
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册 API 路由
app.include_router(api_v1_router)


@app.get("/", summary="健康检查 / Hello")
async def root():
    return {"message": "Hello Recorder"}


@app.get("/status")
async def get_status() -> dict[str, Any]:
    """获取调度器状态信息。"""
    dispatcher = get_dispatcher()
    status: dict[str, Any] = {
        "message": "Recorder task scheduler is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "scheduler_running": dispatcher.is_running() if dispatcher else False,
    }
    if dispatcher:
        status["dispatcher"] = dispatcher.get_status()
    return status


# 可选：uvicorn 直接运行入口
if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("recorder_tasks.app:app", host="0.0.0.0", port=8000, reload=True)
