"""基于租约的分布式任务调度

对外导出调度器各组件，供应用装配与测试使用。
"""

from .cron_engine import CronTickEngine
from .cron_expr import evaluate
from .cron_store import CronRegistry
from .dispatcher import TaskDispatcher
from .executor import BaseJobExecutor, JobExecutorRegistry, load_executors
from .lease import LeaseManager
from .retry import RetryController, RetryPolicy
from .task_store import TaskStore
from .types import Page, TaskFilter, TaskOrder, TaskTransition, make_worker_id

__all__ = [
    "BaseJobExecutor",
    "CronRegistry",
    "CronTickEngine",
    "JobExecutorRegistry",
    "LeaseManager",
    "Page",
    "RetryController",
    "RetryPolicy",
    "TaskDispatcher",
    "TaskFilter",
    "TaskOrder",
    "TaskStore",
    "TaskTransition",
    "evaluate",
    "load_executors",
    "make_worker_id",
]
