from __future__ import annotations

from datetime import datetime, timezone

import pytest

from recorder_tasks.models import DatabaseManager, Subscription
from recorder_tasks.scheduler import CronRegistry, LeaseManager, TaskStore


def ts(*args: int) -> float:
    """UTC 日期 -> Unix 时间戳"""

    return datetime(*args, tzinfo=timezone.utc).timestamp()


@pytest.fixture(name="db")
def fixture_db(tmp_path):
    """Temporary SQLite database, fresh for every test."""

    DatabaseManager.reset_instance()
    manager = DatabaseManager.get_instance(str(tmp_path / "recorder.db"))
    yield manager
    DatabaseManager.reset_instance()


@pytest.fixture(name="store")
def fixture_store(db):
    return TaskStore(db)


@pytest.fixture(name="crons")
def fixture_crons(db):
    return CronRegistry(db)


@pytest.fixture(name="lease")
def fixture_lease(db):
    return LeaseManager(db)


@pytest.fixture(name="subscription_id")
def fixture_subscription_id(db):
    with db.session_scope() as session:
        row = Subscription(display_name="Example Feed", source_url="https://example.com/feed")
        session.add(row)
        session.flush()
        return row.id
