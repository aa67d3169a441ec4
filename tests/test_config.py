from __future__ import annotations

from pathlib import Path

import allure
import pytest

from team_bridge.config import (
    DEFAULT_ROOT,
    DEFAULT_TEAM,
    LockSettings,
    RestartSettings,
    Settings,
    WorkerSettings,
)
from team_bridge.coordination.models import RestartPolicy

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_without_environment() -> None:
    settings = Settings.from_env()

    assert settings.root == DEFAULT_ROOT
    assert settings.team == DEFAULT_TEAM
    assert settings.worker.poll_interval_seconds == 3.0
    assert settings.worker.max_consecutive_errors == 3
    assert settings.lead.heartbeat_max_age_seconds == 30.0
    assert settings.lead.spawn_workers is True
    assert settings.locks.max_task_retries == 5
    assert settings.channels.outbox_max_lines == 500
    assert settings.restart.policy() == RestartPolicy()
    settings.validate()


def test_environment_overrides_are_parsed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEAM_BRIDGE_ROOT", "/srv/bridge")
    monkeypatch.setenv("TEAM_BRIDGE_TEAM", "beta")
    monkeypatch.setenv("TEAM_BRIDGE_WORKER_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("TEAM_BRIDGE_WORKER_COMMAND", "agent {prompt_file}")
    monkeypatch.setenv("TEAM_BRIDGE_SPAWN_WORKERS", "off")
    monkeypatch.setenv("TEAM_BRIDGE_INBOX_MAX_BYTES", "2048")
    monkeypatch.setenv("TEAM_BRIDGE_RESTART_MAX", "0")

    settings = Settings.from_env()

    assert settings.root == Path("/srv/bridge")
    assert settings.team == "beta"
    assert settings.worker.poll_interval_seconds == 0.5
    assert settings.worker.command_template == "agent {prompt_file}"
    assert settings.lead.spawn_workers is False
    assert settings.channels.inbox_max_bytes == 2048
    assert settings.restart.max_restarts == 0
    settings.validate()


def test_explicit_arguments_take_precedence(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("TEAM_BRIDGE_ROOT", "/srv/bridge")
    monkeypatch.setenv("TEAM_BRIDGE_TEAM", "beta")

    settings = Settings.from_env(root=tmp_path, team="gamma")

    assert settings.root == tmp_path
    assert settings.team == "gamma"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEAM_BRIDGE_SPAWN_WORKERS", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for TEAM_BRIDGE_SPAWN_WORKERS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (
            Settings(worker=WorkerSettings(poll_interval_seconds=0)),
            "TEAM_BRIDGE_WORKER_POLL_INTERVAL_SECONDS must be > 0",
        ),
        (
            Settings(locks=LockSettings(max_task_retries=0)),
            "TEAM_BRIDGE_MAX_TASK_RETRIES must be > 0",
        ),
        (
            Settings(restart=RestartSettings(max_restarts=-1)),
            "TEAM_BRIDGE_RESTART_MAX must be >= 0",
        ),
        (
            Settings(restart=RestartSettings(backoff_multiplier=0.5)),
            "TEAM_BRIDGE_RESTART_BACKOFF_MULTIPLIER must be >= 1",
        ),
        (
            Settings(worker=WorkerSettings(graceful_shutdown_seconds=-1)),
            "TEAM_BRIDGE_GRACEFUL_SHUTDOWN_SECONDS must be >= 0",
        ),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
