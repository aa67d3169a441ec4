"""Read-only team status and per-worker health reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from team_bridge.coordination.audit import AuditLog
from team_bridge.coordination.channels import OutboxChannel
from team_bridge.coordination.heartbeat import HeartbeatMonitor
from team_bridge.coordination.locking import ProcessProbe, is_pid_alive
from team_bridge.coordination.models import (
    AuditEventType,
    Heartbeat,
    HeartbeatStatus,
    OutboxMessage,
    Task,
    TaskOutcome,
    parse_timestamp,
    utc_now,
)
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.registry import WorkerRegistry
from team_bridge.coordination.restart import RestartSupervisor
from team_bridge.coordination.tasks import TaskStore

AT_RISK_ERRORS = 2


@dataclass(slots=True)
class TaskSummary:
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0

    def add(self, task: Task) -> None:
        self.total += 1
        outcome = task.outcome
        if outcome == TaskOutcome.PENDING:
            self.pending += 1
        elif outcome == TaskOutcome.IN_PROGRESS:
            self.in_progress += 1
        elif outcome == TaskOutcome.COMPLETED:
            self.completed += 1
        else:
            self.failed += 1


@dataclass(slots=True)
class WorkerStatus:
    name: str
    alive: bool
    heartbeat: Heartbeat | None
    heartbeat_age_seconds: float | None
    tasks: TaskSummary
    current_task_id: str | None
    recent_messages: list[OutboxMessage]
    restart_count: int


@dataclass(slots=True)
class TeamStatus:
    team: str
    generated_at: str
    workers: list[WorkerStatus] = field(default_factory=list)
    tasks: TaskSummary = field(default_factory=TaskSummary)


@dataclass(slots=True)
class WorkerHealthReport:
    worker_name: str
    is_alive: bool
    process_alive: bool
    heartbeat_age_seconds: float | None
    status: str
    consecutive_errors: int
    current_task_id: str | None
    tasks_completed: int
    tasks_failed: int
    uptime_seconds: float | None


def known_workers(paths: TeamPaths) -> list[str]:
    """Registered workers plus any worker that left a heartbeat behind."""

    names = {member.name for member in WorkerRegistry(paths).list_workers()}
    names.update(heartbeat.worker_name for heartbeat in HeartbeatMonitor(paths).list_heartbeats())
    return sorted(names)


def build_team_status(  # noqa: PLR0913
    paths: TeamPaths,
    *,
    task_store: TaskStore,
    heartbeat_max_age_seconds: float,
    recent_limit: int = 5,
    restarts: RestartSupervisor | None = None,
    now: datetime | None = None,
) -> TeamStatus:
    """Snapshot of workers and tasks; outbox cursors are left untouched."""

    now = now or utc_now()
    heartbeats = HeartbeatMonitor(paths)
    restarts = restarts or RestartSupervisor(paths)
    tasks = task_store.list_tasks()

    status = TeamStatus(team=paths.team, generated_at=now.isoformat())
    for task in tasks:
        status.tasks.add(task)

    for name in known_workers(paths):
        heartbeat = heartbeats.read_heartbeat(name)
        worker_tasks = TaskSummary()
        for task in tasks:
            if task.owner == name:
                worker_tasks.add(task)
        restart_state = restarts.read_restart_state(name)
        status.workers.append(
            WorkerStatus(
                name=name,
                alive=heartbeats.is_worker_alive(name, heartbeat_max_age_seconds, now=now),
                heartbeat=heartbeat,
                heartbeat_age_seconds=heartbeats.heartbeat_age(name, now=now),
                tasks=worker_tasks,
                current_task_id=heartbeat.current_task_id if heartbeat is not None else None,
                recent_messages=OutboxChannel(paths, name).tail(recent_limit),
                restart_count=restart_state.restart_count if restart_state is not None else 0,
            ),
        )
    return status


def worker_health_reports(
    paths: TeamPaths,
    *,
    heartbeat_max_age_seconds: float,
    is_process_alive: ProcessProbe = is_pid_alive,
    now: datetime | None = None,
) -> list[WorkerHealthReport]:
    now = now or utc_now()
    heartbeats = HeartbeatMonitor(paths)
    audit = AuditLog(paths)
    reports: list[WorkerHealthReport] = []

    for name in known_workers(paths):
        heartbeat = heartbeats.read_heartbeat(name)
        alive = heartbeats.is_worker_alive(name, heartbeat_max_age_seconds, now=now)
        process_alive = heartbeat is not None and is_process_alive(heartbeat.pid)

        status = heartbeat.status.value if heartbeat is not None else "unknown"
        if not alive and not process_alive:
            status = "dead"

        completed = 0
        failed = 0
        last_start: datetime | None = None
        for event in audit.read(worker_name=name):
            if event.event_type == AuditEventType.TASK_COMPLETED:
                completed += 1
            elif event.event_type == AuditEventType.TASK_PERMANENTLY_FAILED:
                failed += 1
            elif event.event_type == AuditEventType.BRIDGE_START:
                last_start = parse_timestamp(event.timestamp) or last_start

        reports.append(
            WorkerHealthReport(
                worker_name=name,
                is_alive=alive,
                process_alive=process_alive,
                heartbeat_age_seconds=heartbeats.heartbeat_age(name, now=now),
                status=status,
                consecutive_errors=heartbeat.consecutive_errors if heartbeat is not None else 0,
                current_task_id=heartbeat.current_task_id if heartbeat is not None else None,
                tasks_completed=completed,
                tasks_failed=failed,
                uptime_seconds=(now - last_start).total_seconds() if last_start else None,
            ),
        )
    return reports


def check_worker_health(
    paths: TeamPaths,
    worker_name: str,
    *,
    heartbeat_max_age_seconds: float,
    is_process_alive: ProcessProbe = is_pid_alive,
    now: datetime | None = None,
) -> str | None:
    """Reason the worker needs intervention, or ``None`` when it looks healthy."""

    heartbeats = HeartbeatMonitor(paths)
    heartbeat = heartbeats.read_heartbeat(worker_name)
    alive = heartbeats.is_worker_alive(worker_name, heartbeat_max_age_seconds, now=now)
    process_alive = heartbeat is not None and is_process_alive(heartbeat.pid)

    if not alive and not process_alive:
        age = heartbeats.heartbeat_age(worker_name, now=now)
        age_text = f"{round(age)}s" if age is not None else "unknown"
        return f"Worker is dead: heartbeat stale for {age_text}, process not running"
    if not alive:
        return "Heartbeat stale but process is still running; worker may be hung"
    if heartbeat is not None and heartbeat.status == HeartbeatStatus.QUARANTINED:
        return f"Worker self-quarantined after {heartbeat.consecutive_errors} consecutive errors"
    if heartbeat is not None and heartbeat.consecutive_errors >= AT_RISK_ERRORS:
        return (
            f"Worker has {heartbeat.consecutive_errors} consecutive errors, "
            "at risk of quarantine"
        )
    return None
