from __future__ import annotations

from pydantic import BaseModel, Field, ValidationError
from pathlib import Path
import yaml
from typing import Dict, Optional
import logging
import os

logger = logging.getLogger("recorder.config")


class StorageConfig(BaseModel):
    db_path: str = Field(default="./data/recorder.db")
    enable_wal: bool = Field(default=True)
    busy_timeout: float = Field(default=30.0, gt=0)

    def __init__(self, **data):
        super().__init__(**data)
        # 支持环境变量覆盖数据库路径
        if "RECORDER_DB_PATH" in os.environ:
            self.db_path = os.environ["RECORDER_DB_PATH"]


class SchedulerConfig(BaseModel):
    worker_id: Optional[str] = Field(default=None)
    tick_interval: float = Field(default=1.0, ge=0.05)
    max_concurrency: int = Field(default=4, ge=1)
    default_timeout_ms: int = Field(default=60000, ge=1)
    default_max_attempts: int = Field(default=3, ge=1)
    retry_backoff_base: float = Field(default=5.0, gt=0)
    retry_backoff_factor: float = Field(default=2.0, ge=1)
    retry_backoff_max: float = Field(default=3600.0, gt=0)
    store_backoff_initial: float = Field(default=1.0, gt=0)
    store_backoff_max: float = Field(default=60.0, gt=0)
    cron_retry_seconds: float = Field(default=5.0, gt=0)


class Settings(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    # task_type -> "package.module:ClassName"
    executors: Dict[str, str] = Field(default_factory=dict)

    @staticmethod
    def from_yaml(path: Optional[Path | str] = None) -> "Settings":
        """从 YAML 文件加载配置"""
        if path is None:
            path = _discover_yaml_path()

        path = Path(path)
        if not path.exists():
            logger.warning(f"配置文件不存在: {path}")
            return Settings()

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

            return Settings(
                storage=StorageConfig(**(data.get("storage") or {})),
                scheduler=SchedulerConfig(**(data.get("scheduler") or {})),
                executors={
                    str(task_type): str(target)
                    for task_type, target in (data.get("executors") or {}).items()
                },
            )

        except (OSError, yaml.YAMLError, ValidationError, AttributeError) as e:
            logger.error(f"加载配置文件失败: {e}")
            return Settings()


def _discover_yaml_path() -> Path:
    """向上递归查找 recorder.yaml 文件"""
    start = Path(__file__).resolve()
    for parent in start.parents:
        candidate = parent / "recorder.yaml"
        if candidate.exists():
            return candidate
    # 默认位置
    return Path.cwd() / "recorder.yaml"


_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例"""
    global _settings
    if _settings is None:
        _settings = Settings.from_yaml()
    return _settings


def reset_settings() -> None:
    """清除缓存的配置（测试使用）"""
    global _settings
    _settings = None
