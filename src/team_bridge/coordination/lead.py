"""Lead poll loop: dispatch work, watch liveness, drain outboxes."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol, assert_never

from team_bridge.coordination.audit import AuditLog
from team_bridge.coordination.channels import InboxChannel, OutboxChannel
from team_bridge.coordination.fsutils import ensure_dir
from team_bridge.coordination.heartbeat import HeartbeatMonitor
from team_bridge.coordination.locking import ProcessProbe, is_pid_alive
from team_bridge.coordination.models import (
    AuditEventType,
    HeartbeatStatus,
    InboxMessage,
    InboxMessageType,
    OutboxMessage,
    OutboxMessageType,
    RestartPolicy,
    SignalKind,
    Task,
    TaskStatus,
    WorkerMember,
)
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.registry import TtlCache, WorkerRegistry
from team_bridge.coordination.restart import RestartSupervisor
from team_bridge.coordination.signals import SignalBoard
from team_bridge.coordination.tasks import TaskStore

logger = logging.getLogger(__name__)

LEAD_NAME = "lead"
_REGISTRY_KEY = "workers"
_UNAVAILABLE_STATUSES = frozenset({HeartbeatStatus.QUARANTINED, HeartbeatStatus.SHUTDOWN})


@dataclass(slots=True)
class WorkerLoad:
    name: str
    open_tasks: int


class TaskRouter(Protocol):
    """Chooses the owner of an unassigned task among available workers."""

    def choose(self, task: Task, candidates: Sequence[WorkerLoad]) -> str | None:
        """Return a worker name from ``candidates`` or ``None`` to leave it queued."""


class LeastLoadedRouter:
    def choose(self, task: Task, candidates: Sequence[WorkerLoad]) -> str | None:  # noqa: ARG002
        if not candidates:
            return None
        return min(candidates, key=lambda load: (load.open_tasks, load.name)).name


class WorkerSpawner(Protocol):
    """Process supervisor hook used to (re)start a worker."""

    def spawn(self, member: WorkerMember) -> int | None:
        """Start the worker process and return its pid when known."""


class SubprocessSpawner:
    """Start ``member.command`` as a detached child process."""

    def __init__(self, *, log_dir: Path | None = None) -> None:
        self.log_dir = log_dir

    def spawn(self, member: WorkerMember) -> int | None:
        argv = shlex.split(member.command)
        if not argv:
            logger.warning("Worker %s has no start command, cannot spawn", member.name)
            return None
        if self.log_dir is None:
            process = subprocess.Popen(  # noqa: S603
                argv,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        else:
            ensure_dir(self.log_dir)
            with (self.log_dir / f"{member.name}.log").open("a", encoding="utf-8") as log_handle:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        logger.info("Spawned worker %s (pid %s)", member.name, process.pid)
        return process.pid


@dataclass(slots=True)
class LeadCycleSummary:
    """What one lead poll tick did."""

    assigned: list[tuple[str, str]] = field(default_factory=list)
    restarted: list[str] = field(default_factory=list)
    exhausted: list[str] = field(default_factory=list)
    messages: list[tuple[str, OutboxMessage]] = field(default_factory=list)
    acknowledged: list[str] = field(default_factory=list)
    rotated: list[str] = field(default_factory=list)


class TeamLead:
    """Coordinates the workers of one team through the shared tree."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        paths: TeamPaths,
        task_store: TaskStore,
        spawner: WorkerSpawner | None = None,
        router: TaskRouter | None = None,
        restart_policy: RestartPolicy | None = None,
        heartbeat_max_age_seconds: float = 30.0,
        inbox_max_bytes: int = 10 * 1024 * 1024,
        audit_max_bytes: int = 5 * 1024 * 1024,
        poll_interval_seconds: float = 5.0,
        registry_cache: TtlCache[list[WorkerMember]] | None = None,
        is_process_alive: ProcessProbe = is_pid_alive,
    ) -> None:
        self.paths = paths
        self.tasks = task_store
        self.spawner = spawner
        self.router = router or LeastLoadedRouter()
        self.heartbeat_max_age_seconds = heartbeat_max_age_seconds
        self.inbox_max_bytes = inbox_max_bytes
        self.audit_max_bytes = audit_max_bytes
        self.poll_interval_seconds = poll_interval_seconds
        self.registry_cache = registry_cache or TtlCache(ttl_seconds=poll_interval_seconds)
        self.is_process_alive = is_process_alive

        self.registry = WorkerRegistry(paths)
        self.heartbeats = HeartbeatMonitor(paths)
        self.audit = AuditLog(paths)
        self.signals = SignalBoard(paths)
        self.restarts = RestartSupervisor(paths, restart_policy, is_process_alive=is_process_alive)

        self._exhausted_reported: set[str] = set()
        self._stop_requested = False

    def members(self) -> list[WorkerMember]:
        return self.registry_cache.get_or_load(_REGISTRY_KEY, self.registry.list_workers)

    def poll_once(self, *, now: datetime | None = None) -> LeadCycleSummary:
        summary = LeadCycleSummary()
        self._drain_outboxes(summary)
        members = self.members()
        alive = {
            member.name: self.heartbeats.is_worker_alive(
                member.name,
                self.heartbeat_max_age_seconds,
                now=now,
            )
            for member in members
        }
        self._dispatch(members, alive, summary)
        self._supervise(members, alive, summary, now=now)
        self._rotate(members, summary)
        return summary

    def run_loop(self, *, max_cycles: int | None = None) -> int:
        """Poll until SIGINT/SIGTERM or ``max_cycles``; returns cycles run."""

        cycles = 0
        self.audit.record(AuditEventType.BRIDGE_START, LEAD_NAME, details={"pid": os.getpid()})
        with self._signal_handlers():
            while not self._stop_requested:
                try:
                    self.poll_once()
                except Exception:  # noqa: BLE001
                    logger.exception("Lead poll cycle failed")
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
        self.audit.record(AuditEventType.BRIDGE_SHUTDOWN, LEAD_NAME)
        return cycles

    def request_stop(self) -> None:
        self._stop_requested = True

    def send_message(
        self,
        worker_name: str,
        content: str,
        message_type: InboxMessageType = InboxMessageType.MESSAGE,
    ) -> InboxMessage:
        message = InboxMessage(type=message_type, content=content)
        InboxChannel(self.paths, worker_name).append(message)
        return message

    def request_shutdown(self, worker_name: str, reason: str = "") -> str:
        request = self.signals.request_shutdown(worker_name, reason)
        logger.info("Requested shutdown of %s (%s)", worker_name, request.request_id)
        return request.request_id

    def request_drain(self, worker_name: str, reason: str = "") -> str:
        request = self.signals.request_drain(worker_name, reason)
        logger.info("Requested drain of %s (%s)", worker_name, request.request_id)
        return request.request_id

    def _dispatch(
        self,
        members: list[WorkerMember],
        alive: dict[str, bool],
        summary: LeadCycleSummary,
    ) -> None:
        tasks = self.tasks.list_tasks()
        loads = {
            member.name: WorkerLoad(name=member.name, open_tasks=0)
            for member in members
            if self._is_available(member.name, alive=alive.get(member.name, False))
        }
        for task in tasks:
            if task.owner in loads and task.status != TaskStatus.COMPLETED:
                loads[task.owner].open_tasks += 1

        for task in tasks:
            if task.owner or task.status != TaskStatus.PENDING:
                continue
            if not self.tasks.are_blockers_resolved(task.blocked_by):
                continue
            owner = self.router.choose(task, list(loads.values()))
            if owner is None:
                continue
            if owner not in loads:
                logger.warning("Router picked unavailable worker %s for task %s", owner, task.id)
                continue
            self.tasks.update_task(task.id, {"owner": owner})
            loads[owner].open_tasks += 1
            self.audit.record(
                AuditEventType.TASK_ASSIGNED,
                LEAD_NAME,
                task_id=task.id,
                details={"owner": owner},
            )
            summary.assigned.append((task.id, owner))
            logger.info("Assigned task %s to %s", task.id, owner)

    def _is_available(self, worker_name: str, *, alive: bool) -> bool:
        if not alive:
            return False
        if self.signals.is_pending(SignalKind.SHUTDOWN, worker_name):
            return False
        if self.signals.is_pending(SignalKind.DRAIN, worker_name):
            return False
        heartbeat = self.heartbeats.read_heartbeat(worker_name)
        return heartbeat is not None and heartbeat.status not in _UNAVAILABLE_STATUSES

    def _supervise(
        self,
        members: list[WorkerMember],
        alive: dict[str, bool],
        summary: LeadCycleSummary,
        *,
        now: datetime | None,
    ) -> None:
        for member in members:
            name = member.name
            if alive.get(name, False):
                continue
            if self.signals.is_pending(SignalKind.SHUTDOWN, name) or self.signals.is_pending(
                SignalKind.DRAIN,
                name,
            ):
                continue
            heartbeat = self.heartbeats.read_heartbeat(name)
            if not self.restarts.needs_restart(heartbeat, alive=False):
                continue

            if self.restarts.should_restart(name) is None:
                if name not in self._exhausted_reported:
                    state = self.restarts.read_restart_state(name)
                    self.audit.record(
                        AuditEventType.WORKER_RESTART_EXHAUSTED,
                        LEAD_NAME,
                        details={
                            "worker": name,
                            "restarts": state.restart_count if state is not None else 0,
                        },
                    )
                    logger.error("Worker %s exceeded its restart budget", name)
                    self._exhausted_reported.add(name)
                summary.exhausted.append(name)
                continue

            if not self.restarts.is_restart_due(name, now=now):
                continue
            if self.spawner is None:
                logger.debug("Worker %s is down and no spawner is configured", name)
                continue

            pid = self.spawner.spawn(member)
            state = self.restarts.record_restart(name, now=now)
            self.audit.record(
                AuditEventType.WORKER_RESTARTED,
                LEAD_NAME,
                details={
                    "worker": name,
                    "pid": pid,
                    "attempt": state.restart_count,
                    "next_backoff_seconds": state.next_backoff_seconds,
                },
            )
            summary.restarted.append(name)
            logger.warning("Restarted worker %s (attempt %s)", name, state.restart_count)

    def _drain_outboxes(self, summary: LeadCycleSummary) -> None:
        for member in self.members():
            for message in OutboxChannel(self.paths, member.name).read_new():
                summary.messages.append((member.name, message))
                self._handle_message(member.name, message, summary)

    def _handle_message(
        self,
        worker_name: str,
        message: OutboxMessage,
        summary: LeadCycleSummary,
    ) -> None:
        kind = message.type
        if kind is OutboxMessageType.TASK_COMPLETE:
            if self.restarts.clear_restart_state(worker_name):
                logger.info("Worker %s recovered, restart budget reset", worker_name)
            self._exhausted_reported.discard(worker_name)
            logger.info("Worker %s completed task %s", worker_name, message.task_id)
        elif kind is OutboxMessageType.TASK_FAILED:
            logger.warning(
                "Worker %s failed task %s: %s",
                worker_name,
                message.task_id,
                message.error,
            )
        elif kind is OutboxMessageType.ERROR:
            logger.error(
                "Worker %s reported an error: %s",
                worker_name,
                message.error or message.message,
            )
        elif kind is OutboxMessageType.IDLE:
            logger.info("Worker %s is idle", worker_name)
        elif kind is OutboxMessageType.HEARTBEAT:
            logger.debug("Worker %s heartbeat message", worker_name)
        elif kind is OutboxMessageType.SHUTDOWN_ACK:
            self._acknowledge(worker_name, SignalKind.SHUTDOWN, message, summary)
        elif kind is OutboxMessageType.DRAIN_ACK:
            self._acknowledge(worker_name, SignalKind.DRAIN, message, summary)
        else:
            assert_never(kind)

    def _acknowledge(
        self,
        worker_name: str,
        kind: SignalKind,
        message: OutboxMessage,
        summary: LeadCycleSummary,
    ) -> None:
        if not self.signals.clear_if_matches(kind, worker_name, message.request_id):
            pending = self.signals.read(kind, worker_name)
            if pending is not None:
                logger.info(
                    "Ignoring stale %s ack from %s: request %s is still pending",
                    kind.value,
                    worker_name,
                    pending.request_id,
                )
                return
            self.signals.clear(kind, worker_name)
        self.registry.unregister(worker_name)
        self.registry_cache.invalidate(_REGISTRY_KEY)
        self.restarts.clear_restart_state(worker_name)
        summary.acknowledged.append(worker_name)
        logger.info("Worker %s acknowledged %s", worker_name, kind.value)

    def _rotate(self, members: list[WorkerMember], summary: LeadCycleSummary) -> None:
        for member in members:
            rotation = InboxChannel(self.paths, member.name).rotate_if_needed(
                max_bytes=self.inbox_max_bytes,
            )
            if rotation is None:
                continue
            self.audit.record(
                AuditEventType.INBOX_ROTATED,
                LEAD_NAME,
                details={"worker": member.name, "dropped_bytes": rotation.dropped_bytes},
            )
            summary.rotated.append(f"inbox:{member.name}")

        if self.audit.rotate(self.audit_max_bytes):
            self.audit.record(AuditEventType.AUDIT_ROTATED, LEAD_NAME)
            summary.rotated.append("audit")

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:  # noqa: ARG001
            self.request_stop()

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
