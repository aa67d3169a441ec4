"""Controllers for team-bridge CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from team_bridge.config import Settings
from team_bridge.coordination.audit import (
    CLI_ACTOR,
    ActivityCategory,
    AuditLog,
    activity_log,
    format_activity_timeline,
)
from team_bridge.coordination.channels import cleanup_worker_files
from team_bridge.coordination.executor import CommandExecutor
from team_bridge.coordination.fsutils import validate_name
from team_bridge.coordination.health import (
    build_team_status,
    check_worker_health,
    worker_health_reports,
)
from team_bridge.coordination.lead import LeadCycleSummary, SubprocessSpawner, TeamLead
from team_bridge.coordination.models import (
    AuditEventType,
    InboxMessageType,
    Task,
    TaskOutcome,
    WorkerMember,
    utc_now,
)
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.registry import WorkerRegistry
from team_bridge.coordination.report import build_team_report, save_team_report
from team_bridge.coordination.restart import RestartSupervisor
from team_bridge.coordination.tasks import TaskNotFoundError, TaskStore
from team_bridge.coordination.usage import UsageLog, build_usage_report, render_usage_lines
from team_bridge.coordination.worker import TeamWorker


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    root: Path | None
    team: str | None
    task_id: str
    subject: str
    description: str = ""
    owner: str = ""
    blocked_by: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskListCommand:
    root: Path | None
    team: str | None
    outcome: str | None = None
    owner: str | None = None


@dataclass(slots=True)
class TaskShowCommand:
    root: Path | None
    team: str | None
    task_id: str


@dataclass(slots=True)
class WorkerRegisterCommand:
    root: Path | None
    team: str | None
    name: str
    command: str = ""


@dataclass(slots=True)
class WorkerUnregisterCommand:
    root: Path | None
    team: str | None
    name: str
    cleanup: bool = False


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    root: Path | None
    team: str | None
    name: str
    command_template: str | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class LeadPollCommand:
    root: Path | None
    team: str | None
    once: bool
    max_cycles: int | None = None


@dataclass(slots=True)
class LeadStatusCommand:
    root: Path | None
    team: str | None
    recent: int = 3


@dataclass(slots=True)
class LeadHealthCommand:
    root: Path | None
    team: str | None


@dataclass(slots=True)
class LeadReportCommand:
    """CLI input for the markdown team report."""

    root: Path | None
    team: str | None
    output_dir: Path | None = None
    print_only: bool = False


@dataclass(slots=True)
class LeadUsageCommand:
    root: Path | None
    team: str | None


@dataclass(slots=True)
class LeadSendCommand:
    root: Path | None
    team: str | None
    worker: str
    content: str
    message_type: str = InboxMessageType.MESSAGE.value


@dataclass(slots=True)
class LeadSignalCommand:
    """CLI input for shutdown / drain requests."""

    root: Path | None
    team: str | None
    worker: str
    reason: str = ""


@dataclass(slots=True)
class AuditShowCommand:
    root: Path | None
    team: str | None
    event_type: str | None = None
    worker: str | None = None
    hours: int | None = None
    limit: int = 50


@dataclass(slots=True)
class AuditTimelineCommand:
    root: Path | None
    team: str | None
    worker: str | None = None
    category: str | None = None
    hours: int | None = None
    limit: int = 50


@dataclass(slots=True)
class AuditRotateCommand:
    root: Path | None
    team: str | None
    max_bytes: int | None = None


@dataclass(slots=True)
class RestartCommand:
    root: Path | None
    team: str | None
    worker: str | None = None


class TeamBridgeCliController:
    """Translate CLI commands into coordination calls and printable lines."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        store = _task_store(settings, paths)
        task = store.create_task(
            Task(
                id=command.task_id,
                subject=command.subject,
                description=command.description,
                owner=command.owner,
                blocked_by=list(command.blocked_by),
            ),
        )
        for blocker_id in task.blocked_by:
            blocker = store.read_task(blocker_id)
            if blocker is not None and task.id not in blocker.blocks:
                store.update_task(blocker_id, {"blocks": [*blocker.blocks, task.id]})
        return [f"Task created: {task.id} ({paths.team})"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        outcome = TaskOutcome(command.outcome) if command.outcome else None
        tasks = [
            task
            for task in _task_store(settings, paths).list_tasks()
            if (outcome is None or task.outcome == outcome)
            and (command.owner is None or task.owner == command.owner)
        ]
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            blocked = ",".join(task.blocked_by) or "-"
            lines.append(
                f"  {task.id} outcome={task.outcome.value} owner={task.owner or '-'} "
                f"blocked_by={blocked} subject={task.subject}",
            )
        return lines

    def show_task(self, command: TaskShowCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        store = _task_store(settings, paths)
        task = store.read_task(command.task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {command.task_id}")
        failure = store.read_failure(task.id)
        lines = [
            f"Task: {task.id}",
            f"Subject: {task.subject}",
            f"Status: {task.status.value}",
            f"Outcome: {task.outcome.value}",
            f"Owner: {task.owner or '-'}",
            f"Blocked by: {', '.join(task.blocked_by) or '-'}",
            f"Blocks: {', '.join(task.blocks) or '-'}",
            f"Claimed by: {task.claimed_by or '-'} (pid {task.claim_pid or '-'})",
            f"Retries: {failure.retry_count if failure else 0}/{store.max_retries}",
        ]
        if failure is not None:
            lines.append(f"Last error: {failure.last_error}")
        if task.description:
            lines.extend(["", task.description])
        return lines

    def register_worker(self, command: WorkerRegisterCommand) -> list[str]:
        _, paths = _load(command.root, command.team)
        name = validate_name(command.name, kind="worker name")
        member = WorkerRegistry(paths).register(WorkerMember(name=name, command=command.command))
        return [f"Worker registered: {member.name} ({paths.team})"]

    def unregister_worker(self, command: WorkerUnregisterCommand) -> list[str]:
        _, paths = _load(command.root, command.team)
        removed = WorkerRegistry(paths).unregister(command.name)
        lines = [
            f"Worker unregistered: {command.name}"
            if removed
            else f"Worker was not registered: {command.name}",
        ]
        if command.cleanup:
            cleanup_worker_files(paths, command.name)
            lines.append(f"Removed channels and signals of {command.name}")
        return lines

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        template = command.command_template or settings.worker.command_template
        if not template:
            raise ValueError(
                "A worker command template is required. "
                "Pass --command or set TEAM_BRIDGE_WORKER_COMMAND.",
            )
        worker = TeamWorker(
            paths=paths,
            worker_name=validate_name(command.name, kind="worker name"),
            executor=CommandExecutor(template),
            task_store=_task_store(settings, paths),
            poll_interval_seconds=settings.worker.poll_interval_seconds,
            max_consecutive_errors=settings.worker.max_consecutive_errors,
            task_timeout_seconds=settings.worker.task_timeout_seconds,
            outbox_max_lines=settings.channels.outbox_max_lines,
            graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
        )
        summary = (
            worker.run_once()
            if command.once
            else worker.run_loop(
                max_tasks=command.max_tasks,
                max_idle_polls=command.max_idle_polls,
            )
        )
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} permanently_failed={summary.permanently_failed} "
            f"interrupted={summary.interrupted} idle_polls={summary.idle_polls} "
            f"errors={summary.errors} stopped={summary.stopped}",
        ]

    def lead_poll(self, command: LeadPollCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        lead = _lead(settings, paths)
        if not command.once:
            cycles = lead.run_loop(max_cycles=command.max_cycles)
            return [f"Lead stopped after {cycles} cycles"]
        return _render_cycle(lead.poll_once())

    def status(self, command: LeadStatusCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        status = build_team_status(
            paths,
            task_store=_task_store(settings, paths),
            heartbeat_max_age_seconds=settings.lead.heartbeat_max_age_seconds,
            recent_limit=command.recent,
            restarts=RestartSupervisor(paths, settings.restart.policy()),
        )
        summary = status.tasks
        lines = [
            f"Team: {status.team}",
            f"Tasks: total={summary.total} pending={summary.pending} "
            f"in_progress={summary.in_progress} completed={summary.completed} "
            f"failed={summary.failed}",
            f"Workers: {len(status.workers)}",
        ]
        for worker in status.workers:
            state = worker.heartbeat.status.value if worker.heartbeat else "unknown"
            age = (
                f"{worker.heartbeat_age_seconds:.0f}s"
                if worker.heartbeat_age_seconds is not None
                else "-"
            )
            lines.append(
                f"  {worker.name} alive={worker.alive} status={state} heartbeat_age={age} "
                f"current={worker.current_task_id or '-'} restarts={worker.restart_count} "
                f"pending={worker.tasks.pending} in_progress={worker.tasks.in_progress} "
                f"completed={worker.tasks.completed} failed={worker.tasks.failed}",
            )
            for message in worker.recent_messages:
                text = message.summary or message.error or message.message or ""
                lines.append(
                    f"    {message.timestamp} {message.type.value} "
                    f"{message.task_id or '-'} {text}".rstrip(),
                )
        return lines

    def health(self, command: LeadHealthCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        max_age = settings.lead.heartbeat_max_age_seconds
        reports = worker_health_reports(paths, heartbeat_max_age_seconds=max_age)
        lines = [f"Workers: {len(reports)}"]
        for report in reports:
            reason = check_worker_health(
                paths,
                report.worker_name,
                heartbeat_max_age_seconds=max_age,
            )
            lines.append(
                f"  {report.worker_name} status={report.status} alive={report.is_alive} "
                f"errors={report.consecutive_errors} completed={report.tasks_completed} "
                f"failed={report.tasks_failed} attention={reason or '-'}",
            )
        return lines

    def report(self, command: LeadReportCommand) -> list[str]:
        _, paths = _load(command.root, command.team)
        if command.print_only:
            return build_team_report(paths).splitlines()
        path = save_team_report(paths, output_dir=command.output_dir)
        return [f"Team report saved: {path}"]

    def usage(self, command: LeadUsageCommand) -> list[str]:
        _, paths = _load(command.root, command.team)
        report = build_usage_report(UsageLog(paths).read(), team_name=paths.team)
        return render_usage_lines(report)

    def send(self, command: LeadSendCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        validate_name(command.worker, kind="worker name")
        message = _lead(settings, paths).send_message(
            command.worker,
            command.content,
            InboxMessageType(command.message_type),
        )
        return [f"Sent {message.type.value} to {command.worker}"]

    def shutdown(self, command: LeadSignalCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        request_id = _lead(settings, paths).request_shutdown(command.worker, command.reason)
        return [f"Shutdown requested for {command.worker}: {request_id}"]

    def drain(self, command: LeadSignalCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        request_id = _lead(settings, paths).request_drain(command.worker, command.reason)
        return [f"Drain requested for {command.worker}: {request_id}"]

    def audit_show(self, command: AuditShowCommand) -> list[str]:
        _, paths = _load(command.root, command.team)
        events = AuditLog(paths).read(
            event_type=AuditEventType(command.event_type) if command.event_type else None,
            worker_name=command.worker,
            since=_since(command.hours),
            limit=command.limit,
        )
        lines = [f"Events: {len(events)}"]
        for event in events:
            details = f" {event.details}" if event.details else ""
            lines.append(
                f"  {event.timestamp} {event.event_type.value} {event.worker_name} "
                f"{event.task_id or '-'}{details}",
            )
        return lines

    def audit_timeline(self, command: AuditTimelineCommand) -> list[str]:
        _, paths = _load(command.root, command.team)
        entries = activity_log(
            AuditLog(paths),
            since=_since(command.hours),
            actor=command.worker,
            category=ActivityCategory(command.category) if command.category else None,
            limit=command.limit,
        )
        return format_activity_timeline(entries).splitlines()

    def audit_rotate(self, command: AuditRotateCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        audit = AuditLog(paths)
        max_bytes = command.max_bytes or settings.channels.audit_max_bytes
        if not audit.rotate(max_bytes):
            return ["Audit log below threshold, nothing rotated"]
        audit.record(AuditEventType.AUDIT_ROTATED, CLI_ACTOR, details={"max_bytes": max_bytes})
        return ["Audit log rotated"]

    def restart_status(self, command: RestartCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        supervisor = RestartSupervisor(paths, settings.restart.policy())
        names = [command.worker] if command.worker else [
            member.name for member in WorkerRegistry(paths).list_workers()
        ]
        lines = [f"Restart budget: {supervisor.policy.max_restarts}"]
        for name in names:
            state = supervisor.read_restart_state(name)
            delay = supervisor.should_restart(name)
            next_delay = "exhausted" if delay is None else f"{delay:g}s"
            if state is None:
                lines.append(f"  {name} restarts=0 next_backoff={next_delay}")
                continue
            lines.append(
                f"  {name} restarts={state.restart_count} last={state.last_restart_at} "
                f"next_backoff={next_delay}",
            )
        return lines

    def restart_clear(self, command: RestartCommand) -> list[str]:
        settings, paths = _load(command.root, command.team)
        if not command.worker:
            raise ValueError("A worker name is required.")
        cleared = RestartSupervisor(paths, settings.restart.policy()).clear_restart_state(
            command.worker,
        )
        if not cleared:
            return [f"No restart state for {command.worker}"]
        return [f"Restart state cleared: {command.worker}"]


def _load(root: Path | None, team: str | None) -> tuple[Settings, TeamPaths]:
    settings = Settings.from_env(root=root, team=team)
    settings.validate()
    return settings, TeamPaths(root=settings.root, team=settings.team)


def _task_store(settings: Settings, paths: TeamPaths) -> TaskStore:
    return TaskStore(
        paths,
        stale_lock_seconds=settings.locks.stale_lock_seconds,
        max_retries=settings.locks.max_task_retries,
        lock_wait_attempts=settings.locks.wait_attempts,
        lock_wait_interval_seconds=settings.locks.wait_interval_seconds,
    )


def _lead(settings: Settings, paths: TeamPaths) -> TeamLead:
    spawner = (
        SubprocessSpawner(log_dir=paths.state_dir / "logs")
        if settings.lead.spawn_workers
        else None
    )
    return TeamLead(
        paths=paths,
        task_store=_task_store(settings, paths),
        spawner=spawner,
        restart_policy=settings.restart.policy(),
        heartbeat_max_age_seconds=settings.lead.heartbeat_max_age_seconds,
        inbox_max_bytes=settings.channels.inbox_max_bytes,
        audit_max_bytes=settings.channels.audit_max_bytes,
        poll_interval_seconds=settings.lead.poll_interval_seconds,
    )


def _render_cycle(summary: LeadCycleSummary) -> list[str]:
    lines = [
        "Lead cycle: "
        f"assigned={len(summary.assigned)} restarted={len(summary.restarted)} "
        f"exhausted={len(summary.exhausted)} messages={len(summary.messages)} "
        f"acknowledged={len(summary.acknowledged)} rotated={len(summary.rotated)}",
    ]
    for task_id, owner in summary.assigned:
        lines.append(f"  assigned {task_id} -> {owner}")
    for worker_name, message in summary.messages:
        text = message.summary or message.error or message.message or ""
        lines.append(
            f"  {worker_name}: {message.type.value} {message.task_id or '-'} {text}".rstrip(),
        )
    return lines


def _since(hours: int | None) -> datetime | None:
    if hours is None:
        return None
    return utc_now() - timedelta(hours=hours)
