from __future__ import annotations

import pytest

from recorder_tasks.config import Settings, get_settings, reset_settings


@pytest.fixture(autouse=True)
def clear_cached_settings(monkeypatch):
    monkeypatch.delenv("RECORDER_DB_PATH", raising=False)
    reset_settings()
    yield
    reset_settings()


def test_load_from_yaml(tmp_path):
    config = tmp_path / "recorder.yaml"
    config.write_text(
        """
storage:
  db_path: /var/lib/recorder/tasks.db
  enable_wal: false
  busy_timeout: 2.5
scheduler:
  worker_id: node-1
  tick_interval: 0.5
  max_concurrency: 8
  retry_backoff_base: 2
executors:
  echo: example.executors:EchoExecutor
""",
        encoding="utf-8",
    )

    settings = Settings.from_yaml(config)

    assert settings.storage.db_path == "/var/lib/recorder/tasks.db"
    assert settings.storage.enable_wal is False
    assert settings.storage.busy_timeout == 2.5
    assert settings.scheduler.worker_id == "node-1"
    assert settings.scheduler.tick_interval == 0.5
    assert settings.scheduler.max_concurrency == 8
    assert settings.scheduler.retry_backoff_base == 2
    # 未配置的字段保留默认值
    assert settings.scheduler.default_max_attempts == 3
    assert settings.executors == {"echo": "example.executors:EchoExecutor"}


def test_missing_file_uses_defaults(tmp_path):
    settings = Settings.from_yaml(tmp_path / "absent.yaml")

    assert settings.storage.db_path == "./data/recorder.db"
    assert settings.scheduler.max_concurrency == 4
    assert settings.executors == {}


@pytest.mark.parametrize(
    "content",
    [
        "scheduler: [unbalanced",
        "scheduler:\n  max_concurrency: 0\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_file_falls_back_to_defaults(tmp_path, content):
    config = tmp_path / "recorder.yaml"
    config.write_text(content, encoding="utf-8")

    settings = Settings.from_yaml(config)

    assert settings == Settings()


def test_env_overrides_db_path(tmp_path, monkeypatch):
    config = tmp_path / "recorder.yaml"
    config.write_text("storage:\n  db_path: from-file.db\n", encoding="utf-8")
    monkeypatch.setenv("RECORDER_DB_PATH", "/tmp/from-env.db")

    assert Settings.from_yaml(config).storage.db_path == "/tmp/from-env.db"


def test_get_settings_is_cached():
    assert get_settings() is get_settings()
