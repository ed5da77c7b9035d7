"""任务执行器契约与注册表

执行器负责解释不透明的 job 负载。调度器只关心结果：
- 正常返回视为成功
- 抛出 FatalExecutionError 视为不可重试失败
- 抛出其他任何异常视为可重试失败

租约过期后任务可能被其他实例重新认领，执行器必须能容忍重复执行。
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from ..models.task import TaskRecord

logger = logging.getLogger("recorder.executor")


class BaseJobExecutor(ABC):
    """任务执行器基类

    每个子类处理一种 task_type。

    Attributes:
        task_type: 处理的任务类型，同时作为注册表键
        concurrency: 本实例内同时执行的上限，默认为1
    """

    task_type: str = ""
    concurrency: int = 1

    def __init__(self, task_type: Optional[str] = None, concurrency: Optional[int] = None):
        if task_type is not None:
            self.task_type = task_type
        if concurrency is not None:
            self.concurrency = concurrency
        if not self.task_type:
            raise ValueError(f"{self.__class__.__name__} must declare a task_type")
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")

    @abstractmethod
    async def execute(self, task: TaskRecord) -> None:
        """执行一个任务

        Args:
            task: 已被本实例认领的任务快照
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(task_type='{self.task_type}', "
            f"concurrency={self.concurrency})"
        )


class JobExecutorRegistry:
    """执行器注册表，键为 task_type"""

    def __init__(self):
        self.executors: Dict[str, BaseJobExecutor] = {}

    def register(self, executor: BaseJobExecutor) -> None:
        """注册执行器

        Raises:
            ValueError: 当 task_type 已存在时抛出异常
        """
        if executor.task_type in self.executors:
            raise ValueError(
                f"executor for task_type '{executor.task_type}' already registered"
            )
        self.executors[executor.task_type] = executor
        logger.info("执行器已注册 %r", executor)

    def find(self, task_type: str) -> Optional[BaseJobExecutor]:
        return self.executors.get(task_type)

    def unregister(self, task_type: str) -> bool:
        return self.executors.pop(task_type, None) is not None

    def task_types(self) -> list[str]:
        return sorted(self.executors)

    def __len__(self) -> int:
        return len(self.executors)

    def __contains__(self, task_type: str) -> bool:
        return task_type in self.executors


def import_executor(path: str) -> type[BaseJobExecutor]:
    """按 ``package.module:ClassName`` 导入执行器类"""
    module_name, sep, class_name = path.partition(":")
    if not sep or not module_name or not class_name:
        raise ValueError(f"invalid executor path {path!r}, expected 'module:Class'")
    module = importlib.import_module(module_name)
    try:
        cls = getattr(module, class_name)
    except AttributeError as exc:
        raise ValueError(f"{module_name} has no attribute {class_name!r}") from exc
    if not isinstance(cls, type) or not issubclass(cls, BaseJobExecutor):
        raise ValueError(f"{path} is not a BaseJobExecutor subclass")
    return cls


def load_executors(
    paths: Mapping[str, str], registry: Optional[JobExecutorRegistry] = None
) -> JobExecutorRegistry:
    """根据配置实例化并注册执行器

    Args:
        paths: task_type -> "module:Class"
        registry: 目标注册表，为 None 时新建

    导入或实例化失败的条目记录错误后跳过，对应任务类型不会被本实例认领。
    """
    if registry is None:
        registry = JobExecutorRegistry()
    for task_type, path in paths.items():
        try:
            cls = import_executor(path)
            registry.register(cls(task_type=task_type))
        except Exception as exc:
            logger.error("加载执行器失败 task_type=%s path=%s error=%s", task_type, path, exc)
    logger.info("执行器加载完成 total=%d", len(registry))
    return registry
