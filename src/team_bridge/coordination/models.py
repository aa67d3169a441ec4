"""Domain records persisted in the shared coordination tree."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO timestamp; anything unparsable reads as ``None``."""

    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class TaskStatus(str, Enum):
    """Persisted task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TaskOutcome(str, Enum):
    """Operator-facing view that separates success from give-up."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


PERMANENTLY_FAILED_KEY = "permanently_failed"

_TASK_KEYS = frozenset(
    {
        "id",
        "subject",
        "description",
        "status",
        "owner",
        "blocks",
        "blocked_by",
        "claimed_by",
        "claimed_at",
        "claim_pid",
        "metadata",
    },
)


@dataclass(slots=True)
class Task:
    """One unit of work, stored as ``tasks/{team}/{id}.json``."""

    id: str
    subject: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    owner: str = ""
    blocks: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    claimed_by: str | None = None
    claimed_at: str | None = None
    claim_pid: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def permanently_failed(self) -> bool:
        return bool(self.metadata.get(PERMANENTLY_FAILED_KEY))

    @property
    def outcome(self) -> TaskOutcome:
        if self.status == TaskStatus.COMPLETED:
            return TaskOutcome.FAILED if self.permanently_failed else TaskOutcome.COMPLETED
        return TaskOutcome(self.status.value)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload.update(
            {
                "id": self.id,
                "subject": self.subject,
                "description": self.description,
                "status": self.status.value,
                "owner": self.owner,
                "blocks": list(self.blocks),
                "blocked_by": list(self.blocked_by),
                "metadata": dict(self.metadata),
            },
        )
        if self.claimed_by is not None:
            payload["claimed_by"] = self.claimed_by
        if self.claimed_at is not None:
            payload["claimed_at"] = self.claimed_at
        if self.claim_pid is not None:
            payload["claim_pid"] = self.claim_pid
        return payload

    @classmethod
    def from_dict(cls, data: object) -> Task | None:
        """Build a task from a decoded record; malformed records give ``None``."""

        if not isinstance(data, dict):
            return None
        task_id = data.get("id")
        if not isinstance(task_id, str) or not task_id:
            return None
        try:
            status = TaskStatus(data.get("status", TaskStatus.PENDING.value))
        except ValueError:
            return None
        metadata = data.get("metadata")
        claim_pid = data.get("claim_pid")
        return cls(
            id=task_id,
            subject=str(data.get("subject", "")),
            description=str(data.get("description", "")),
            status=status,
            owner=str(data.get("owner") or ""),
            blocks=_str_list(data.get("blocks")),
            blocked_by=_str_list(data.get("blocked_by")),
            claimed_by=data.get("claimed_by") if isinstance(data.get("claimed_by"), str) else None,
            claimed_at=data.get("claimed_at") if isinstance(data.get("claimed_at"), str) else None,
            claim_pid=claim_pid if isinstance(claim_pid, int) else None,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
            extra={key: value for key, value in data.items() if key not in _TASK_KEYS},
        )


@dataclass(slots=True)
class TaskFailure:
    """Retry-count sidecar kept next to the task record."""

    task_id: str
    last_error: str
    retry_count: int
    last_failed_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "last_error": self.last_error,
            "retry_count": self.retry_count,
            "last_failed_at": self.last_failed_at,
        }

    @classmethod
    def from_dict(cls, data: object) -> TaskFailure | None:
        if not isinstance(data, dict):
            return None
        retry_count = data.get("retry_count")
        if not isinstance(retry_count, int) or retry_count < 0:
            return None
        return cls(
            task_id=str(data.get("task_id", "")),
            last_error=str(data.get("last_error", "")),
            retry_count=retry_count,
            last_failed_at=str(data.get("last_failed_at", "")),
        )


@dataclass(slots=True)
class FailureOutcome:
    """Result of recording one failed attempt."""

    retry_count: int
    permanently_failed: bool


class HeartbeatStatus(str, Enum):
    POLLING = "polling"
    EXECUTING = "executing"
    SHUTDOWN = "shutdown"
    QUARANTINED = "quarantined"


@dataclass(slots=True)
class Heartbeat:
    """Per-worker liveness record, rewritten on every poll tick."""

    worker_name: str
    team_name: str
    pid: int
    last_poll_at: str
    status: HeartbeatStatus
    consecutive_errors: int = 0
    current_task_id: str | None = None

    @property
    def last_poll_time(self) -> datetime | None:
        return parse_timestamp(self.last_poll_at)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "worker_name": self.worker_name,
            "team_name": self.team_name,
            "pid": self.pid,
            "last_poll_at": self.last_poll_at,
            "status": self.status.value,
            "consecutive_errors": self.consecutive_errors,
        }
        if self.current_task_id is not None:
            payload["current_task_id"] = self.current_task_id
        return payload

    @classmethod
    def from_dict(cls, data: object) -> Heartbeat | None:
        if not isinstance(data, dict):
            return None
        worker_name = data.get("worker_name")
        pid = data.get("pid")
        if not isinstance(worker_name, str) or not isinstance(pid, int):
            return None
        try:
            status = HeartbeatStatus(data.get("status"))
        except ValueError:
            return None
        errors = data.get("consecutive_errors", 0)
        current = data.get("current_task_id")
        return cls(
            worker_name=worker_name,
            team_name=str(data.get("team_name", "")),
            pid=pid,
            last_poll_at=str(data.get("last_poll_at", "")),
            status=status,
            consecutive_errors=errors if isinstance(errors, int) else 0,
            current_task_id=current if isinstance(current, str) else None,
        )


class InboxMessageType(str, Enum):
    """Lead -> worker message kinds."""

    MESSAGE = "message"
    CONTEXT = "context"


class OutboxMessageType(str, Enum):
    """Worker -> lead message kinds."""

    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    IDLE = "idle"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    SHUTDOWN_ACK = "shutdown_ack"
    DRAIN_ACK = "drain_ack"


@dataclass(slots=True)
class InboxMessage:
    type: InboxMessageType
    content: str
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: object) -> InboxMessage | None:
        if not isinstance(data, dict):
            return None
        try:
            message_type = InboxMessageType(data.get("type"))
        except ValueError:
            return None
        return cls(
            type=message_type,
            content=str(data.get("content", "")),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass(slots=True)
class OutboxMessage:
    type: OutboxMessageType
    task_id: str | None = None
    summary: str | None = None
    error: str | None = None
    message: str | None = None
    request_id: str | None = None
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value, "timestamp": self.timestamp}
        for key in ("task_id", "summary", "error", "message", "request_id"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, data: object) -> OutboxMessage | None:
        if not isinstance(data, dict):
            return None
        try:
            message_type = OutboxMessageType(data.get("type"))
        except ValueError:
            return None
        return cls(
            type=message_type,
            task_id=_optional_str(data.get("task_id")),
            summary=_optional_str(data.get("summary")),
            error=_optional_str(data.get("error")),
            message=_optional_str(data.get("message")),
            request_id=_optional_str(data.get("request_id")),
            timestamp=str(data.get("timestamp", "")),
        )


class SignalKind(str, Enum):
    SHUTDOWN = "shutdown"
    DRAIN = "drain"


@dataclass(slots=True)
class ControlSignal:
    """Shutdown or drain request left for one worker."""

    kind: SignalKind
    request_id: str
    reason: str
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "request_id": self.request_id,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: object, *, kind: SignalKind) -> ControlSignal | None:
        if not isinstance(data, dict):
            return None
        request_id = data.get("request_id")
        if not isinstance(request_id, str) or not request_id:
            return None
        return cls(
            kind=kind,
            request_id=request_id,
            reason=str(data.get("reason", "")),
            timestamp=str(data.get("timestamp", "")),
        )


class AuditEventType(str, Enum):
    """Closed set of audit event kinds."""

    BRIDGE_START = "bridge_start"
    BRIDGE_SHUTDOWN = "bridge_shutdown"
    TASK_ASSIGNED = "task_assigned"
    TASK_CLAIMED = "task_claimed"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_PERMANENTLY_FAILED = "task_permanently_failed"
    TASK_RELEASED = "task_released"
    WORKER_QUARANTINED = "worker_quarantined"
    WORKER_IDLE = "worker_idle"
    WORKER_RESTARTED = "worker_restarted"
    WORKER_RESTART_EXHAUSTED = "worker_restart_exhausted"
    INBOX_ROTATED = "inbox_rotated"
    OUTBOX_ROTATED = "outbox_rotated"
    AUDIT_ROTATED = "audit_rotated"
    CLI_SPAWNED = "cli_spawned"
    CLI_TIMEOUT = "cli_timeout"
    CLI_ERROR = "cli_error"
    SHUTDOWN_RECEIVED = "shutdown_received"
    SHUTDOWN_ACK = "shutdown_ack"
    DRAIN_RECEIVED = "drain_received"
    DRAIN_ACK = "drain_ack"
    PERMISSION_VIOLATION = "permission_violation"
    PERMISSION_AUDIT = "permission_audit"


@dataclass(slots=True)
class AuditEvent:
    timestamp: str
    event_type: AuditEventType
    team_name: str
    worker_name: str
    task_id: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp,
            "event_type": self.event_type.value,
            "team_name": self.team_name,
            "worker_name": self.worker_name,
        }
        if self.task_id is not None:
            payload["task_id"] = self.task_id
        if self.details is not None:
            payload["details"] = self.details
        return payload

    @classmethod
    def from_dict(cls, data: object) -> AuditEvent | None:
        if not isinstance(data, dict):
            return None
        try:
            event_type = AuditEventType(data.get("event_type"))
        except ValueError:
            return None
        details = data.get("details")
        return cls(
            timestamp=str(data.get("timestamp", "")),
            event_type=event_type,
            team_name=str(data.get("team_name", "")),
            worker_name=str(data.get("worker_name", "")),
            task_id=_optional_str(data.get("task_id")),
            details=details if isinstance(details, dict) else None,
        )


@dataclass(slots=True, frozen=True)
class RestartPolicy:
    """Exponential backoff limits for respawning dead workers."""

    max_restarts: int = 5
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 60.0
    backoff_multiplier: float = 2.0


@dataclass(slots=True)
class RestartState:
    worker_name: str
    restart_count: int
    last_restart_at: str
    next_backoff_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_name": self.worker_name,
            "restart_count": self.restart_count,
            "last_restart_at": self.last_restart_at,
            "next_backoff_seconds": self.next_backoff_seconds,
        }

    @classmethod
    def from_dict(cls, data: object) -> RestartState | None:
        if not isinstance(data, dict):
            return None
        count = data.get("restart_count")
        backoff = data.get("next_backoff_seconds", 0)
        if not isinstance(count, int) or not isinstance(backoff, int | float):
            return None
        return cls(
            worker_name=str(data.get("worker_name", "")),
            restart_count=count,
            last_restart_at=str(data.get("last_restart_at", "")),
            next_backoff_seconds=float(backoff),
        )


@dataclass(slots=True)
class WorkerMember:
    """Registry entry describing how to (re)start a worker."""

    name: str
    command: str = ""
    registered_at: str = field(default_factory=lambda: utc_now().isoformat())
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "registered_at": self.registered_at,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: object) -> WorkerMember | None:
        if not isinstance(data, dict):
            return None
        name = data.get("name")
        if not isinstance(name, str) or not name:
            return None
        metadata = data.get("metadata")
        return cls(
            name=name,
            command=str(data.get("command", "")),
            registered_at=str(data.get("registered_at", "")),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )


def _str_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None
