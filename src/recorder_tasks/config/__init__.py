from .settings import SchedulerConfig, Settings, StorageConfig, get_settings, reset_settings

__all__ = ["SchedulerConfig", "Settings", "StorageConfig", "get_settings", "reset_settings"]
