"""Runtime configuration for the lead and worker processes."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from team_bridge.coordination.models import RestartPolicy

DEFAULT_ROOT = Path(".team-bridge")
DEFAULT_TEAM = "default"


@dataclass(slots=True)
class WorkerSettings:
    """Worker poll-loop settings."""

    poll_interval_seconds: float = 3.0
    max_consecutive_errors: int = 3
    task_timeout_seconds: float = 600.0
    graceful_shutdown_seconds: float = 5.0
    command_template: str = ""


@dataclass(slots=True)
class LeadSettings:
    """Lead poll-loop settings."""

    poll_interval_seconds: float = 5.0
    heartbeat_max_age_seconds: float = 30.0
    spawn_workers: bool = True


@dataclass(slots=True)
class LockSettings:
    """Task lock staleness and bounded-wait settings."""

    stale_lock_seconds: float = 30.0
    wait_attempts: int = 20
    wait_interval_seconds: float = 0.05
    max_task_retries: int = 5


@dataclass(slots=True)
class ChannelSettings:
    """Rotation thresholds for channels and the audit log."""

    outbox_max_lines: int = 500
    inbox_max_bytes: int = 10 * 1024 * 1024
    audit_max_bytes: int = 5 * 1024 * 1024


@dataclass(slots=True)
class RestartSettings:
    """Backoff for respawning dead workers."""

    max_restarts: int = 5
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 60.0
    backoff_multiplier: float = 2.0

    def policy(self) -> RestartPolicy:
        return RestartPolicy(
            max_restarts=self.max_restarts,
            backoff_base_seconds=self.backoff_base_seconds,
            backoff_max_seconds=self.backoff_max_seconds,
            backoff_multiplier=self.backoff_multiplier,
        )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    root: Path = DEFAULT_ROOT
    team: str = DEFAULT_TEAM
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    lead: LeadSettings = field(default_factory=LeadSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    channels: ChannelSettings = field(default_factory=ChannelSettings)
    restart: RestartSettings = field(default_factory=RestartSettings)

    @classmethod
    def from_env(cls, root: Path | None = None, team: str | None = None) -> Settings:
        """Load settings from ``TEAM_BRIDGE_*`` variables; arguments take precedence."""

        return cls(
            root=root or Path(os.getenv("TEAM_BRIDGE_ROOT", str(DEFAULT_ROOT))),
            team=team or os.getenv("TEAM_BRIDGE_TEAM", DEFAULT_TEAM),
            worker=WorkerSettings(
                poll_interval_seconds=float(
                    os.getenv("TEAM_BRIDGE_WORKER_POLL_INTERVAL_SECONDS", "3"),
                ),
                max_consecutive_errors=int(os.getenv("TEAM_BRIDGE_MAX_CONSECUTIVE_ERRORS", "3")),
                task_timeout_seconds=float(os.getenv("TEAM_BRIDGE_TASK_TIMEOUT_SECONDS", "600")),
                graceful_shutdown_seconds=float(
                    os.getenv("TEAM_BRIDGE_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
                command_template=os.getenv("TEAM_BRIDGE_WORKER_COMMAND", ""),
            ),
            lead=LeadSettings(
                poll_interval_seconds=float(
                    os.getenv("TEAM_BRIDGE_LEAD_POLL_INTERVAL_SECONDS", "5"),
                ),
                heartbeat_max_age_seconds=float(
                    os.getenv("TEAM_BRIDGE_HEARTBEAT_MAX_AGE_SECONDS", "30"),
                ),
                spawn_workers=_env_bool("TEAM_BRIDGE_SPAWN_WORKERS", default=True),
            ),
            locks=LockSettings(
                stale_lock_seconds=float(os.getenv("TEAM_BRIDGE_STALE_LOCK_SECONDS", "30")),
                wait_attempts=int(os.getenv("TEAM_BRIDGE_LOCK_WAIT_ATTEMPTS", "20")),
                wait_interval_seconds=float(
                    os.getenv("TEAM_BRIDGE_LOCK_WAIT_INTERVAL_SECONDS", "0.05"),
                ),
                max_task_retries=int(os.getenv("TEAM_BRIDGE_MAX_TASK_RETRIES", "5")),
            ),
            channels=ChannelSettings(
                outbox_max_lines=int(os.getenv("TEAM_BRIDGE_OUTBOX_MAX_LINES", "500")),
                inbox_max_bytes=int(
                    os.getenv("TEAM_BRIDGE_INBOX_MAX_BYTES", str(10 * 1024 * 1024)),
                ),
                audit_max_bytes=int(
                    os.getenv("TEAM_BRIDGE_AUDIT_MAX_BYTES", str(5 * 1024 * 1024)),
                ),
            ),
            restart=RestartSettings(
                max_restarts=int(os.getenv("TEAM_BRIDGE_RESTART_MAX", "5")),
                backoff_base_seconds=float(
                    os.getenv("TEAM_BRIDGE_RESTART_BACKOFF_BASE_SECONDS", "5"),
                ),
                backoff_max_seconds=float(
                    os.getenv("TEAM_BRIDGE_RESTART_BACKOFF_MAX_SECONDS", "60"),
                ),
                backoff_multiplier=float(
                    os.getenv("TEAM_BRIDGE_RESTART_BACKOFF_MULTIPLIER", "2"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the coordination layer cannot use."""

        positive = {
            "TEAM_BRIDGE_WORKER_POLL_INTERVAL_SECONDS": self.worker.poll_interval_seconds,
            "TEAM_BRIDGE_MAX_CONSECUTIVE_ERRORS": self.worker.max_consecutive_errors,
            "TEAM_BRIDGE_TASK_TIMEOUT_SECONDS": self.worker.task_timeout_seconds,
            "TEAM_BRIDGE_LEAD_POLL_INTERVAL_SECONDS": self.lead.poll_interval_seconds,
            "TEAM_BRIDGE_HEARTBEAT_MAX_AGE_SECONDS": self.lead.heartbeat_max_age_seconds,
            "TEAM_BRIDGE_STALE_LOCK_SECONDS": self.locks.stale_lock_seconds,
            "TEAM_BRIDGE_LOCK_WAIT_ATTEMPTS": self.locks.wait_attempts,
            "TEAM_BRIDGE_LOCK_WAIT_INTERVAL_SECONDS": self.locks.wait_interval_seconds,
            "TEAM_BRIDGE_MAX_TASK_RETRIES": self.locks.max_task_retries,
            "TEAM_BRIDGE_OUTBOX_MAX_LINES": self.channels.outbox_max_lines,
            "TEAM_BRIDGE_INBOX_MAX_BYTES": self.channels.inbox_max_bytes,
            "TEAM_BRIDGE_AUDIT_MAX_BYTES": self.channels.audit_max_bytes,
            "TEAM_BRIDGE_RESTART_BACKOFF_BASE_SECONDS": self.restart.backoff_base_seconds,
            "TEAM_BRIDGE_RESTART_BACKOFF_MAX_SECONDS": self.restart.backoff_max_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.restart.max_restarts < 0:
            raise ValueError("TEAM_BRIDGE_RESTART_MAX must be >= 0.")
        if self.restart.backoff_multiplier < 1:
            raise ValueError("TEAM_BRIDGE_RESTART_BACKOFF_MULTIPLIER must be >= 1.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("TEAM_BRIDGE_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
