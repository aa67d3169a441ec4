"""On-disk layout of one team under a coordination root."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from team_bridge.coordination.fsutils import (
    validate_name,
    validate_resolved_path,
    validate_task_id,
)


@dataclass(slots=True, frozen=True)
class TeamPaths:
    """Every file path is derived here so names are validated in one place."""

    root: Path
    team: str

    def __post_init__(self) -> None:
        validate_name(self.team, kind="team name")

    @property
    def tasks_dir(self) -> Path:
        return self.root / "tasks" / self.team

    @property
    def state_dir(self) -> Path:
        return self.root / "state" / self.team

    @property
    def inbox_dir(self) -> Path:
        return self.root / "inbox" / self.team

    @property
    def outbox_dir(self) -> Path:
        return self.root / "outbox" / self.team

    @property
    def signals_dir(self) -> Path:
        return self.root / "signals" / self.team

    @property
    def audit_path(self) -> Path:
        return self.state_dir / "audit.jsonl"

    @property
    def audit_lock_path(self) -> Path:
        return self.state_dir / "audit.jsonl.lock"

    @property
    def usage_path(self) -> Path:
        return self.state_dir / "usage.jsonl"

    @property
    def reports_dir(self) -> Path:
        return self.root / "reports" / self.team

    @property
    def registry_path(self) -> Path:
        return self.state_dir / "workers.json"

    @property
    def registry_lock_path(self) -> Path:
        return self.state_dir / "workers.json.lock"

    def run_dir(self, worker: str) -> Path:
        return self._checked(self.state_dir / "runs", _worker(worker))

    def task_path(self, task_id: str) -> Path:
        return self._checked(self.tasks_dir, f"{validate_task_id(task_id)}.json")

    def task_lock_path(self, task_id: str) -> Path:
        return self._checked(self.tasks_dir, f"{validate_task_id(task_id)}.lock")

    def failure_path(self, task_id: str) -> Path:
        return self._checked(self.tasks_dir, f"{validate_task_id(task_id)}.failure.json")

    def heartbeat_path(self, worker: str) -> Path:
        return self._checked(self.state_dir, f"{_worker(worker)}.heartbeat.json")

    def restart_path(self, worker: str) -> Path:
        return self._checked(self.state_dir, f"{_worker(worker)}.restart.json")

    def inbox_path(self, worker: str) -> Path:
        return self._checked(self.inbox_dir, f"{_worker(worker)}.jsonl")

    def outbox_path(self, worker: str) -> Path:
        return self._checked(self.outbox_dir, f"{_worker(worker)}.jsonl")

    def shutdown_signal_path(self, worker: str) -> Path:
        return self._checked(self.signals_dir, f"{_worker(worker)}.shutdown.json")

    def drain_signal_path(self, worker: str) -> Path:
        return self._checked(self.signals_dir, f"{_worker(worker)}.drain.json")

    def _checked(self, directory: Path, filename: str) -> Path:
        path = directory / filename
        validate_resolved_path(path, self.root)
        return path


def cursor_path(log_path: Path) -> Path:
    """Reader cursor stored beside a JSONL channel: ``x.jsonl`` -> ``x.offset``."""

    return log_path.with_suffix(".offset")


def channel_lock_path(log_path: Path) -> Path:
    return log_path.with_suffix(".lock")


def _worker(name: str) -> str:
    return validate_name(name, kind="worker name")
