"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from team_bridge.coordination.models import Task
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.tasks import TaskStore

DEAD_PID = 999_999_999


def dead_pid_probe(pid: int) -> bool:
    """Process probe that treats only :data:`DEAD_PID` as gone."""

    return pid != DEAD_PID


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer TEAM_BRIDGE_* variables out of the tests."""

    for name in list(os.environ):
        if name.startswith("TEAM_BRIDGE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def paths(tmp_path: Path) -> TeamPaths:
    return TeamPaths(root=tmp_path / "bridge", team="alpha")


@pytest.fixture()
def store(paths: TeamPaths) -> TaskStore:
    return TaskStore(
        paths,
        max_retries=3,
        lock_wait_attempts=5,
        lock_wait_interval_seconds=0.01,
        is_process_alive=dead_pid_probe,
    )


@pytest.fixture()
def make_task(store: TaskStore):
    """Create a task in the store with sensible defaults."""

    def _make(task_id: str, *, owner: str = "", **fields) -> Task:
        fields.setdefault("subject", f"Task {task_id}")
        return store.create_task(Task(id=task_id, owner=owner, **fields))

    return _make
