"""Worker poll loop: claim own tasks, execute them, report to the lead."""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from team_bridge.coordination.audit import AuditLog
from team_bridge.coordination.channels import InboxChannel, OutboxChannel
from team_bridge.coordination.executor import (
    ExecutionRequest,
    ExecutionResult,
    ExecutorError,
    TaskExecutor,
    build_prompt,
)
from team_bridge.coordination.heartbeat import HeartbeatMonitor
from team_bridge.coordination.models import (
    PERMANENTLY_FAILED_KEY,
    AuditEventType,
    ControlSignal,
    Heartbeat,
    HeartbeatStatus,
    InboxMessage,
    OutboxMessage,
    OutboxMessageType,
    SignalKind,
    Task,
    TaskStatus,
    utc_now,
)
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.signals import SignalBoard
from team_bridge.coordination.tasks import TaskStore
from team_bridge.coordination.usage import TaskUsage, UsageLog, UsageOutcome, measure_char_counts

logger = logging.getLogger(__name__)

MAX_PENDING_CONTEXT = 50


@dataclass(slots=True)
class PermissionViolation:
    subject: str
    reason: str


class PermissionPolicy(Protocol):
    """Consulted before a claimed task runs.

    With ``enforce`` set, any violation fails the task permanently; otherwise
    violations are only recorded.
    """

    enforce: bool

    def check(self, task: Task, worker_name: str) -> list[PermissionViolation]:
        """Return the violations running ``task`` would cause."""


class AllowAllPolicy:
    enforce = False

    def check(self, task: Task, worker_name: str) -> list[PermissionViolation]:  # noqa: ARG002
        return []


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    permanently_failed: int = 0
    interrupted: int = 0
    idle_polls: int = 0
    errors: int = 0
    quarantined: bool = False
    stopped: bool = False

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.permanently_failed += other.permanently_failed
        self.interrupted += other.interrupted
        self.idle_polls += other.idle_polls
        self.errors += other.errors
        self.quarantined = other.quarantined
        self.stopped = self.stopped or other.stopped


class TeamWorker:
    """One worker process: polls its own tasks and channels on a fixed tick."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        paths: TeamPaths,
        worker_name: str,
        executor: TaskExecutor,
        task_store: TaskStore,
        permission_policy: PermissionPolicy | None = None,
        poll_interval_seconds: float = 3.0,
        max_consecutive_errors: int = 3,
        task_timeout_seconds: float = 600.0,
        outbox_max_lines: int = 500,
        graceful_shutdown_seconds: float = 5.0,
    ) -> None:
        self.paths = paths
        self.worker_name = worker_name
        self.executor = executor
        self.tasks = task_store
        self.permission_policy = permission_policy or AllowAllPolicy()
        self.poll_interval_seconds = poll_interval_seconds
        self.max_consecutive_errors = max_consecutive_errors
        self.task_timeout_seconds = task_timeout_seconds
        self.outbox_max_lines = outbox_max_lines
        self.graceful_shutdown_seconds = graceful_shutdown_seconds

        self.heartbeats = HeartbeatMonitor(paths)
        self.audit = AuditLog(paths)
        self.signals = SignalBoard(paths)
        self.inbox = InboxChannel(paths, worker_name)
        self.outbox = OutboxChannel(paths, worker_name)
        self.usage = UsageLog(paths)

        self.consecutive_errors = 0
        self._context: list[InboxMessage] = []
        self._idle_notified = False
        self._quarantine_notified = False
        self._stopped = False
        self._stop_requested = False
        self._started = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def start(self) -> None:
        """Announce the worker once; called implicitly by the first tick."""

        if self._started:
            return
        self._started = True
        self.audit.record(
            AuditEventType.BRIDGE_START,
            self.worker_name,
            details={"pid": os.getpid()},
        )
        logger.info("Worker %s@%s starting", self.worker_name, self.paths.team)

    def run_once(self) -> WorkerRunSummary:
        """Run a single poll tick; unexpected errors are counted, never raised."""

        summary = WorkerRunSummary()
        if self._stopped:
            summary.stopped = True
            return summary

        self.start()
        try:
            self._tick(summary)
        except Exception:  # noqa: BLE001
            logger.exception("Poll cycle error in worker %s", self.worker_name)
            self.consecutive_errors += 1
            summary.errors += 1
        summary.stopped = self._stopped
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        """Poll until stopped by a signal file, SIGINT/SIGTERM or the limits.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Stop after this many consecutive empty polls
                (None = keep polling).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stopped and not self._stop_requested:
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break

                summary = self.run_once()
                aggregate.merge(summary)
                if self._stopped:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                else:
                    consecutive_idle = 0

                interval = self.poll_interval_seconds
                if summary.quarantined:
                    interval *= 3
                self._sleep_with_stop(interval)

        self._exit_without_signal()
        aggregate.stopped = True
        return aggregate

    def request_stop(self) -> None:
        self._stop_requested = True

    def _tick(self, summary: WorkerRunSummary) -> None:
        shutdown = self._pending_signal(SignalKind.SHUTDOWN)
        if shutdown is not None:
            self._handle_shutdown(shutdown)
            return

        drain = self._pending_signal(SignalKind.DRAIN)
        if drain is not None:
            self._handle_drain(drain)
            return

        if self.consecutive_errors >= self.max_consecutive_errors:
            self._quarantine()
            summary.quarantined = True
            return

        self._beat(HeartbeatStatus.POLLING)
        self._collect_context()
        for task_id in self.tasks.release_orphaned_claims(self.worker_name):
            self.audit.record(
                AuditEventType.TASK_RELEASED,
                self.worker_name,
                task_id=task_id,
                details={"reason": "claimant process exited"},
            )

        task = self.tasks.find_next_task(self.worker_name)
        if task is None:
            summary.idle_polls = 1
            if not self._idle_notified:
                self.outbox.append(
                    OutboxMessage(
                        type=OutboxMessageType.IDLE,
                        message="All assigned tasks complete. Standing by.",
                    ),
                )
                self.audit.record(AuditEventType.WORKER_IDLE, self.worker_name)
                self._idle_notified = True
        else:
            self._idle_notified = False
            summary.processed = 1
            self._process_task(task, summary)

        if not self._stopped:
            self._rotate_outbox()

    def _process_task(self, task: Task, summary: WorkerRunSummary) -> None:
        self.audit.record(AuditEventType.TASK_CLAIMED, self.worker_name, task_id=task.id)
        self.audit.record(AuditEventType.TASK_STARTED, self.worker_name, task_id=task.id)
        self._beat(HeartbeatStatus.EXECUTING, current_task_id=task.id)

        shutdown = self._pending_signal(SignalKind.SHUTDOWN)
        if shutdown is not None:
            self.tasks.release_task(task.id)
            self._handle_shutdown(shutdown, task_id=task.id)
            summary.interrupted = 1
            return

        if not self._permission_allows(task):
            summary.permanently_failed = 1
            return

        self.audit.record(AuditEventType.CLI_SPAWNED, self.worker_name, task_id=task.id)
        context, self._context = self._context, []
        request = ExecutionRequest(
            task=task,
            worker_name=self.worker_name,
            team_name=self.paths.team,
            run_dir=self.paths.run_dir(self.worker_name),
            timeout_seconds=self.task_timeout_seconds,
            context=context,
            should_stop=self._should_interrupt,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
        )
        started_at = utc_now().isoformat()
        started = time.monotonic()
        try:
            result = self.executor.run(request)
        except ExecutorError as error:
            outcome = UsageOutcome.TIMEOUT if error.timed_out else UsageOutcome.FAILED
            self._record_usage(request, started_at=started_at, started=started, outcome=outcome)
            self._handle_failure(task, str(error), timed_out=error.timed_out, summary=summary)
            return
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor crashed on task %s", task.id)
            message = str(error) or type(error).__name__
            self._record_usage(
                request,
                started_at=started_at,
                started=started,
                outcome=UsageOutcome.FAILED,
            )
            self._handle_failure(task, message, timed_out=False, summary=summary)
            return

        if result.interrupted:
            self._record_usage(
                request,
                started_at=started_at,
                started=started,
                outcome=UsageOutcome.INTERRUPTED,
                result=result,
            )
            self.tasks.release_task(task.id)
            self.audit.record(
                AuditEventType.TASK_RELEASED,
                self.worker_name,
                task_id=task.id,
                details={"reason": "interrupted by shutdown"},
            )
            summary.interrupted = 1
            return

        self._record_usage(
            request,
            started_at=started_at,
            started=started,
            outcome=UsageOutcome.COMPLETED,
            result=result,
        )
        self._handle_success(task, result)
        summary.succeeded = 1

    def _record_usage(
        self,
        request: ExecutionRequest,
        *,
        started_at: str,
        started: float,
        outcome: UsageOutcome,
        result: ExecutionResult | None = None,
    ) -> None:
        counts = measure_char_counts(
            result.prompt_path if result is not None else None,
            result.stdout_path if result is not None else None,
        )
        if result is None or result.prompt_path is None:
            counts.prompt_chars = len(build_prompt(request.task, request.context))
        if result is not None and result.stdout_path is None:
            counts.response_chars = len(result.summary)
        usage = TaskUsage(
            task_id=request.task.id,
            worker_name=self.worker_name,
            started_at=started_at,
            completed_at=utc_now().isoformat(),
            wall_clock_ms=int((time.monotonic() - started) * 1000),
            prompt_chars=counts.prompt_chars,
            response_chars=counts.response_chars,
            outcome=outcome,
        )
        try:
            self.usage.record(usage)
        except OSError:
            logger.warning("Could not record usage for task %s", request.task.id, exc_info=True)

    def _handle_success(self, task: Task, result: ExecutionResult) -> None:
        self.tasks.complete_task(task.id, result.summary)
        self.audit.record(AuditEventType.TASK_COMPLETED, self.worker_name, task_id=task.id)
        self.consecutive_errors = 0
        self.outbox.append(
            OutboxMessage(
                type=OutboxMessageType.TASK_COMPLETE,
                task_id=task.id,
                summary=result.summary,
            ),
        )
        logger.info("Task %s completed", task.id)

    def _handle_failure(
        self,
        task: Task,
        error: str,
        *,
        timed_out: bool,
        summary: WorkerRunSummary,
    ) -> None:
        self.consecutive_errors += 1
        self.audit.record(
            AuditEventType.CLI_TIMEOUT if timed_out else AuditEventType.CLI_ERROR,
            self.worker_name,
            task_id=task.id,
            details={"error": error},
        )
        outcome = self.tasks.record_failure(task.id, error)
        if outcome.permanently_failed:
            summary.permanently_failed = 1
            self.audit.record(
                AuditEventType.TASK_PERMANENTLY_FAILED,
                self.worker_name,
                task_id=task.id,
                details={"error": error, "attempts": outcome.retry_count},
            )
            self.outbox.append(
                OutboxMessage(
                    type=OutboxMessageType.ERROR,
                    task_id=task.id,
                    error=(
                        f"Task permanently failed after {outcome.retry_count} attempts: {error}"
                    ),
                ),
            )
            return

        summary.failed = 1
        self.audit.record(
            AuditEventType.TASK_FAILED,
            self.worker_name,
            task_id=task.id,
            details={"error": error, "attempt": outcome.retry_count},
        )
        self.outbox.append(
            OutboxMessage(
                type=OutboxMessageType.TASK_FAILED,
                task_id=task.id,
                error=f"{error} (attempt {outcome.retry_count})",
            ),
        )

    def _permission_allows(self, task: Task) -> bool:
        violations = self.permission_policy.check(task, self.worker_name)
        if not violations:
            return True

        details = {
            "violations": [{"subject": v.subject, "reason": v.reason} for v in violations],
            "mode": "enforce" if self.permission_policy.enforce else "audit",
        }
        if not self.permission_policy.enforce:
            self.audit.record(
                AuditEventType.PERMISSION_AUDIT,
                self.worker_name,
                task_id=task.id,
                details=details,
            )
            logger.warning("Permission audit warning for task %s", task.id)
            return True

        self.audit.record(
            AuditEventType.PERMISSION_VIOLATION,
            self.worker_name,
            task_id=task.id,
            details=details,
        )
        self.tasks.update_task(
            task.id,
            {
                "status": TaskStatus.COMPLETED,
                "metadata": {
                    **task.metadata,
                    PERMANENTLY_FAILED_KEY: True,
                    "error": "Permission violations detected",
                    "permission_violations": details["violations"],
                },
            },
        )
        listing = "; ".join(f"{v.subject}: {v.reason}" for v in violations)
        self.outbox.append(
            OutboxMessage(
                type=OutboxMessageType.ERROR,
                task_id=task.id,
                error=f"Permission violation: {listing}",
            ),
        )
        logger.error("Task %s refused: permission violations", task.id)
        return False

    def _handle_shutdown(self, request: ControlSignal, *, task_id: str | None = None) -> None:
        self.audit.record(
            AuditEventType.SHUTDOWN_RECEIVED,
            self.worker_name,
            task_id=task_id,
            details={"request_id": request.request_id, "reason": request.reason},
        )
        self.outbox.append(
            OutboxMessage(type=OutboxMessageType.SHUTDOWN_ACK, request_id=request.request_id),
        )
        self.audit.record(
            AuditEventType.SHUTDOWN_ACK,
            self.worker_name,
            details={"request_id": request.request_id},
        )
        self._beat(HeartbeatStatus.SHUTDOWN)
        self.heartbeats.delete_heartbeat(self.worker_name)
        self.audit.record(AuditEventType.BRIDGE_SHUTDOWN, self.worker_name)
        self._clear_signal(request)
        self._stopped = True
        logger.info("Worker %s shut down: %s", self.worker_name, request.reason or "requested")

    def _handle_drain(self, request: ControlSignal) -> None:
        self.audit.record(
            AuditEventType.DRAIN_RECEIVED,
            self.worker_name,
            details={"request_id": request.request_id, "reason": request.reason},
        )
        self.outbox.append(
            OutboxMessage(type=OutboxMessageType.DRAIN_ACK, request_id=request.request_id),
        )
        self.audit.record(
            AuditEventType.DRAIN_ACK,
            self.worker_name,
            details={"request_id": request.request_id},
        )
        self.heartbeats.delete_heartbeat(self.worker_name)
        self.audit.record(AuditEventType.BRIDGE_SHUTDOWN, self.worker_name)
        self._clear_signal(request)
        self._stopped = True
        logger.info("Worker %s drained: %s", self.worker_name, request.reason or "requested")

    def _clear_signal(self, request: ControlSignal) -> None:
        if request.request_id:
            self.signals.clear_if_matches(request.kind, self.worker_name, request.request_id)
        else:
            self.signals.clear(request.kind, self.worker_name)

    def _quarantine(self) -> None:
        if not self._quarantine_notified:
            self.outbox.append(
                OutboxMessage(
                    type=OutboxMessageType.ERROR,
                    message=(
                        f"Self-quarantined after {self.consecutive_errors} consecutive errors. "
                        "Awaiting lead intervention or shutdown."
                    ),
                ),
            )
            self.audit.record(
                AuditEventType.WORKER_QUARANTINED,
                self.worker_name,
                details={"consecutive_errors": self.consecutive_errors},
            )
            self._quarantine_notified = True
            logger.error(
                "Worker %s quarantined after %s consecutive errors",
                self.worker_name,
                self.consecutive_errors,
            )
        self._beat(HeartbeatStatus.QUARANTINED)

    def _exit_without_signal(self) -> None:
        if self._stopped or not self._started:
            return
        self.heartbeats.delete_heartbeat(self.worker_name)
        self.audit.record(AuditEventType.BRIDGE_SHUTDOWN, self.worker_name)
        self._stopped = True

    def _collect_context(self) -> None:
        messages = self.inbox.read_new()
        if not messages:
            return
        self._context.extend(messages)
        del self._context[:-MAX_PENDING_CONTEXT]
        logger.debug("Worker %s received %s inbox messages", self.worker_name, len(messages))

    def _rotate_outbox(self) -> None:
        rotation = self.outbox.rotate_if_needed(max_lines=self.outbox_max_lines)
        if rotation is not None:
            self.audit.record(
                AuditEventType.OUTBOX_ROTATED,
                self.worker_name,
                details={
                    "kept_lines": rotation.kept_lines,
                    "dropped_lines": rotation.dropped_lines,
                },
            )

    def _pending_signal(self, kind: SignalKind) -> ControlSignal | None:
        if not self.signals.is_pending(kind, self.worker_name):
            return None
        request = self.signals.read(kind, self.worker_name)
        if request is None:
            # unreadable signal file still counts as a request
            return ControlSignal(kind=kind, request_id="", reason="unreadable signal file")
        return request

    def _should_interrupt(self) -> bool:
        if self._stop_requested:
            return True
        return self.signals.is_pending(SignalKind.SHUTDOWN, self.worker_name)

    def _beat(self, status: HeartbeatStatus, *, current_task_id: str | None = None) -> None:
        self.heartbeats.write_heartbeat(
            Heartbeat(
                worker_name=self.worker_name,
                team_name=self.paths.team,
                pid=os.getpid(),
                last_poll_at=utc_now().isoformat(),
                status=status,
                consecutive_errors=self.consecutive_errors,
                current_task_id=current_task_id,
            ),
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Worker %s received %s, stopping", self.worker_name, name)
            self.request_stop()

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
