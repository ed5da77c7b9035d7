"""Persistence models: ORM rows, detached record snapshots and the database manager."""

from .task import (
    Base,
    CronDefinition,
    CronRecord,
    CronStatus,
    Subscription,
    SubscriptionRecord,
    SubscriberTask,
    TaskRecord,
    TaskStatus,
)
from .database import DatabaseManager

__all__ = [
    "Base",
    "CronDefinition",
    "CronRecord",
    "CronStatus",
    "DatabaseManager",
    "Subscription",
    "SubscriptionRecord",
    "SubscriberTask",
    "TaskRecord",
    "TaskStatus",
]
