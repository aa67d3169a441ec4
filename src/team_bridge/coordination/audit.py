"""Append-only audit log and the activity timeline built from it."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from team_bridge.coordination.channels import retained_lines
from team_bridge.coordination.fsutils import append_line, atomic_write_bytes
from team_bridge.coordination.locking import LockHandle, acquire_lock_wait, held_lock
from team_bridge.coordination.models import AuditEvent, AuditEventType, parse_timestamp, utc_now
from team_bridge.coordination.paths import TeamPaths

logger = logging.getLogger(__name__)

AUDIT_LOCK_STALE_SECONDS = 30.0
CLI_ACTOR = "cli"


class AuditLog:
    """Every component appends here; nobody rewrites except :meth:`rotate`."""

    def __init__(self, paths: TeamPaths, *, lock_wait_attempts: int = 10) -> None:
        self.paths = paths
        self.lock_wait_attempts = lock_wait_attempts

    def log_event(self, event: AuditEvent) -> None:
        line = json.dumps(event.to_dict(), ensure_ascii=False)
        handle = self._lock(interval_seconds=0.01)
        with held_lock(handle):
            append_line(self.paths.audit_path, line)

    def record(
        self,
        event_type: AuditEventType,
        worker_name: str,
        *,
        task_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            timestamp=utc_now().isoformat(),
            event_type=event_type,
            team_name=self.paths.team,
            worker_name=worker_name,
            task_id=task_id,
            details=details,
        )
        self.log_event(event)
        return event

    def read(
        self,
        *,
        event_type: AuditEventType | None = None,
        worker_name: str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditEvent]:
        """Filtered events in file order; ``limit`` keeps the newest ones."""

        try:
            data = self.paths.audit_path.read_bytes()
        except FileNotFoundError:
            return []

        events: list[AuditEvent] = []
        for raw_line in data.splitlines():
            if not raw_line.strip():
                continue
            try:
                payload = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                continue
            event = AuditEvent.from_dict(payload)
            if event is None:
                continue
            if event_type is not None and event.event_type != event_type:
                continue
            if worker_name is not None and event.worker_name != worker_name:
                continue
            if since is not None:
                stamp = parse_timestamp(event.timestamp)
                if stamp is None or stamp < since:
                    continue
            events.append(event)

        if limit is not None and limit > 0:
            return events[-limit:]
        return events

    def rotate(self, max_bytes: int) -> bool:
        """Keep the newest half of the log once it grows past ``max_bytes``."""

        handle = self._lock(interval_seconds=0.05)
        if handle is None:
            logger.debug("Audit log is locked, skipping rotation")
            return False
        with held_lock(handle):
            try:
                data = self.paths.audit_path.read_bytes()
            except FileNotFoundError:
                return False
            lines = data.splitlines(keepends=True)
            kept = retained_lines(lines, size=len(data), max_bytes=max_bytes)
            if kept is None:
                return False
            atomic_write_bytes(self.paths.audit_path, b"".join(kept))
        logger.info("Rotated audit log: kept %s of %s lines", len(kept), len(lines))
        return True

    def _lock(self, *, interval_seconds: float) -> LockHandle | None:
        return acquire_lock_wait(
            self.paths.audit_lock_path,
            attempts=self.lock_wait_attempts,
            interval_seconds=interval_seconds,
            worker_name="audit",
            stale_after_seconds=AUDIT_LOCK_STALE_SECONDS,
        )


class ActivityCategory(str, Enum):
    TASK = "task"
    LIFECYCLE = "lifecycle"
    ERROR = "error"


_CATEGORIES: dict[AuditEventType, ActivityCategory] = {
    AuditEventType.BRIDGE_START: ActivityCategory.LIFECYCLE,
    AuditEventType.BRIDGE_SHUTDOWN: ActivityCategory.LIFECYCLE,
    AuditEventType.TASK_ASSIGNED: ActivityCategory.TASK,
    AuditEventType.TASK_CLAIMED: ActivityCategory.TASK,
    AuditEventType.TASK_STARTED: ActivityCategory.TASK,
    AuditEventType.TASK_COMPLETED: ActivityCategory.TASK,
    AuditEventType.TASK_FAILED: ActivityCategory.ERROR,
    AuditEventType.TASK_PERMANENTLY_FAILED: ActivityCategory.ERROR,
    AuditEventType.TASK_RELEASED: ActivityCategory.TASK,
    AuditEventType.WORKER_QUARANTINED: ActivityCategory.ERROR,
    AuditEventType.WORKER_IDLE: ActivityCategory.LIFECYCLE,
    AuditEventType.WORKER_RESTARTED: ActivityCategory.LIFECYCLE,
    AuditEventType.WORKER_RESTART_EXHAUSTED: ActivityCategory.ERROR,
    AuditEventType.INBOX_ROTATED: ActivityCategory.LIFECYCLE,
    AuditEventType.OUTBOX_ROTATED: ActivityCategory.LIFECYCLE,
    AuditEventType.AUDIT_ROTATED: ActivityCategory.LIFECYCLE,
    AuditEventType.CLI_SPAWNED: ActivityCategory.TASK,
    AuditEventType.CLI_TIMEOUT: ActivityCategory.ERROR,
    AuditEventType.CLI_ERROR: ActivityCategory.ERROR,
    AuditEventType.SHUTDOWN_RECEIVED: ActivityCategory.LIFECYCLE,
    AuditEventType.SHUTDOWN_ACK: ActivityCategory.LIFECYCLE,
    AuditEventType.DRAIN_RECEIVED: ActivityCategory.LIFECYCLE,
    AuditEventType.DRAIN_ACK: ActivityCategory.LIFECYCLE,
    AuditEventType.PERMISSION_VIOLATION: ActivityCategory.ERROR,
    AuditEventType.PERMISSION_AUDIT: ActivityCategory.TASK,
}

_ACTIONS: dict[AuditEventType, str] = {
    AuditEventType.BRIDGE_START: "Started bridge",
    AuditEventType.BRIDGE_SHUTDOWN: "Shut down bridge",
    AuditEventType.TASK_ASSIGNED: "Assigned task {task}",
    AuditEventType.TASK_CLAIMED: "Claimed task {task}",
    AuditEventType.TASK_STARTED: "Started working on task {task}",
    AuditEventType.TASK_COMPLETED: "Completed task {task}",
    AuditEventType.TASK_FAILED: "Task {task} failed",
    AuditEventType.TASK_PERMANENTLY_FAILED: "Task {task} permanently failed",
    AuditEventType.TASK_RELEASED: "Released task {task}",
    AuditEventType.WORKER_QUARANTINED: "Self-quarantined due to errors",
    AuditEventType.WORKER_IDLE: "Standing by (idle)",
    AuditEventType.WORKER_RESTARTED: "Restarted worker",
    AuditEventType.WORKER_RESTART_EXHAUSTED: "Gave up restarting worker",
    AuditEventType.INBOX_ROTATED: "Rotated inbox log",
    AuditEventType.OUTBOX_ROTATED: "Rotated outbox log",
    AuditEventType.AUDIT_ROTATED: "Rotated audit log",
    AuditEventType.CLI_SPAWNED: "Spawned CLI process",
    AuditEventType.CLI_TIMEOUT: "CLI process timed out",
    AuditEventType.CLI_ERROR: "CLI process error",
    AuditEventType.SHUTDOWN_RECEIVED: "Received shutdown signal",
    AuditEventType.SHUTDOWN_ACK: "Acknowledged shutdown",
    AuditEventType.DRAIN_RECEIVED: "Received drain signal",
    AuditEventType.DRAIN_ACK: "Acknowledged drain",
    AuditEventType.PERMISSION_VIOLATION: "Permission violation on task {task}",
    AuditEventType.PERMISSION_AUDIT: "Permission audit warning on task {task}",
}


@dataclass(slots=True)
class ActivityEntry:
    timestamp: str
    actor: str
    action: str
    category: ActivityCategory
    target: str | None = None
    details: str | None = None


def describe_event(event: AuditEvent) -> ActivityEntry:
    action = _ACTIONS[event.event_type].format(task=event.task_id or "(unknown)")
    return ActivityEntry(
        timestamp=event.timestamp,
        actor=event.worker_name,
        action=action,
        category=_CATEGORIES[event.event_type],
        target=event.task_id,
        details=json.dumps(event.details, sort_keys=True) if event.details else None,
    )


def activity_log(
    audit: AuditLog,
    *,
    since: datetime | None = None,
    actor: str | None = None,
    category: ActivityCategory | None = None,
    limit: int | None = None,
) -> list[ActivityEntry]:
    entries = [describe_event(event) for event in audit.read(worker_name=actor, since=since)]
    if category is not None:
        entries = [entry for entry in entries if entry.category == category]
    if limit is not None and limit > 0:
        entries = entries[-limit:]
    return entries


def format_activity_timeline(entries: list[ActivityEntry]) -> str:
    """Render ``[YYYY-MM-DD HH:MM] actor: action [target]`` lines."""

    if not entries:
        return "(no activity recorded)"
    lines = []
    for entry in entries:
        stamp = entry.timestamp[:16].replace("T", " ")
        target = f" [{entry.target}]" if entry.target else ""
        lines.append(f"[{stamp}] {entry.actor}: {entry.action}{target}")
    return "\n".join(lines)
