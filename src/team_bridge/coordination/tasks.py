"""Task store: one JSON file per task, claims serialised by lock files."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any

from team_bridge.coordination.fsutils import (
    TeamBridgeError,
    atomic_write_json,
    is_temp_file,
    read_json,
    read_json_object,
    remove_file,
    validate_task_id,
)
from team_bridge.coordination.locking import (
    DEFAULT_STALE_LOCK_SECONDS,
    LockHandle,
    ProcessProbe,
    acquire_lock,
    acquire_lock_wait,
    held_lock,
    is_pid_alive,
)
from team_bridge.coordination.models import (
    PERMANENTLY_FAILED_KEY,
    FailureOutcome,
    Task,
    TaskFailure,
    TaskStatus,
    utc_now,
)
from team_bridge.coordination.paths import TeamPaths

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
_CLAIM_KEYS = ("claimed_by", "claimed_at", "claim_pid")


class TaskNotFoundError(TeamBridgeError, LookupError):
    """Raised when a task record is missing or unreadable."""


class TaskExistsError(TeamBridgeError):
    """Raised when creating a task whose id is already taken."""


def task_sort_key(task_id: str) -> tuple[int, int, str]:
    """Numeric ids first in numeric order, then the rest lexicographically."""

    if task_id.isdigit():
        return (0, int(task_id), task_id)
    return (1, 0, task_id)


class TaskStore:
    """Read, claim and mutate the task records of one team."""

    def __init__(  # noqa: PLR0913
        self,
        paths: TeamPaths,
        *,
        stale_lock_seconds: float = DEFAULT_STALE_LOCK_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        lock_wait_attempts: int = 20,
        lock_wait_interval_seconds: float = 0.05,
        is_process_alive: ProcessProbe = is_pid_alive,
    ) -> None:
        self.paths = paths
        self.stale_lock_seconds = stale_lock_seconds
        self.max_retries = max_retries
        self.lock_wait_attempts = lock_wait_attempts
        self.lock_wait_interval_seconds = lock_wait_interval_seconds
        self.is_process_alive = is_process_alive

    def create_task(self, task: Task) -> Task:
        validate_task_id(task.id)
        path = self.paths.task_path(task.id)
        handle = self._wait_for_lock(task.id, worker_name="lead")
        with held_lock(handle):
            if path.exists():
                raise TaskExistsError(f"Task {task.id} already exists")
            atomic_write_json(path, task.to_dict())
        logger.debug("Created task %s", task.id)
        return task

    def read_task(self, task_id: str) -> Task | None:
        return Task.from_dict(read_json(self.paths.task_path(task_id)))

    def list_task_ids(self) -> list[str]:
        directory = self.paths.tasks_dir
        if not directory.is_dir():
            return []
        ids: list[str] = []
        for entry in directory.iterdir():
            name = entry.name
            if is_temp_file(name) or not name.endswith(".json") or name.endswith(".failure.json"):
                continue
            ids.append(name[: -len(".json")])
        return sorted(ids, key=task_sort_key)

    def list_tasks(self) -> list[Task]:
        tasks: list[Task] = []
        for task_id in self.list_task_ids():
            task = self.read_task(task_id)
            if task is not None:
                tasks.append(task)
        return tasks

    def update_task(self, task_id: str, fields: Mapping[str, Any]) -> Task:
        """Merge ``fields`` into the stored record; ``None`` values are skipped."""

        def _merge(record: dict[str, Any]) -> None:
            for key, value in fields.items():
                if value is None:
                    continue
                record[key] = value.value if isinstance(value, Enum) else value

        return self._mutate(task_id, _merge)

    def are_blockers_resolved(self, blocked_by: Iterable[str]) -> bool:
        for blocker_id in blocked_by:
            try:
                blocker = self.read_task(blocker_id)
            except TeamBridgeError:
                return False
            if blocker is None or blocker.status != TaskStatus.COMPLETED:
                return False
        return True

    def find_next_task(self, worker_name: str) -> Task | None:
        """Claim the lowest-id ready task owned by ``worker_name``.

        A task counts as ready when it is pending, or when it is still
        ``in_progress`` under a claim whose process is gone.
        """

        for task_id in self.list_task_ids():
            candidate = self.read_task(task_id)
            if candidate is None or not self._is_claimable(candidate, worker_name):
                continue

            handle = acquire_lock(
                self.paths.task_lock_path(task_id),
                worker_name=worker_name,
                stale_after_seconds=self.stale_lock_seconds,
                is_process_alive=self.is_process_alive,
            )
            if handle is None:
                logger.debug("Task %s is being claimed elsewhere, skipping", task_id)
                continue

            with held_lock(handle):
                raw = read_json_object(self.paths.task_path(task_id))
                current = Task.from_dict(raw)
                if raw is None or current is None:
                    continue
                if not self._is_claimable(current, worker_name):
                    continue
                raw.update(
                    {
                        "status": TaskStatus.IN_PROGRESS.value,
                        "claimed_by": worker_name,
                        "claimed_at": utc_now().isoformat(),
                        "claim_pid": os.getpid(),
                    },
                )
                atomic_write_json(self.paths.task_path(task_id), raw)
            claimed = Task.from_dict(raw)
            logger.info("Worker %s claimed task %s", worker_name, task_id)
            return claimed
        return None

    def release_orphaned_claims(self, worker_name: str) -> list[str]:
        """Put ``in_progress`` tasks whose claimant died back to ``pending``."""

        released: list[str] = []
        for task in self.list_tasks():
            if task.owner != worker_name or not self._is_orphaned(task):
                continue
            self.release_task(task.id)
            released.append(task.id)
            logger.warning("Released orphaned claim on task %s (pid %s)", task.id, task.claim_pid)
        return released

    def release_task(self, task_id: str) -> Task:
        """Return an in-progress task to ``pending`` and clear its claim."""

        def _release(record: dict[str, Any]) -> None:
            if record.get("status") != TaskStatus.IN_PROGRESS.value:
                return
            record["status"] = TaskStatus.PENDING.value
            for key in _CLAIM_KEYS:
                record.pop(key, None)

        return self._mutate(task_id, _release)

    def complete_task(self, task_id: str, summary: str | None = None) -> Task:
        def _complete(record: dict[str, Any]) -> None:
            record["status"] = TaskStatus.COMPLETED.value
            metadata = _metadata(record)
            metadata["completed_at"] = utc_now().isoformat()
            if summary:
                metadata["summary"] = summary

        task = self._mutate(task_id, _complete)
        remove_file(self.paths.failure_path(task_id))
        return task

    def record_failure(self, task_id: str, error: str) -> FailureOutcome:
        """Count one failed attempt and either requeue or give up on the task."""

        previous = self.read_failure(task_id)
        retry_count = (previous.retry_count if previous is not None else 0) + 1
        failure = TaskFailure(
            task_id=task_id,
            last_error=error,
            retry_count=retry_count,
            last_failed_at=utc_now().isoformat(),
        )
        atomic_write_json(self.paths.failure_path(task_id), failure.to_dict())

        exhausted = retry_count >= self.max_retries

        def _apply(record: dict[str, Any]) -> None:
            if exhausted:
                record["status"] = TaskStatus.COMPLETED.value
                metadata = _metadata(record)
                metadata[PERMANENTLY_FAILED_KEY] = True
                metadata["error"] = error
                metadata["failed_attempts"] = retry_count
                return
            record["status"] = TaskStatus.PENDING.value
            for key in _CLAIM_KEYS:
                record.pop(key, None)

        self._mutate(task_id, _apply)
        if exhausted:
            logger.error(
                "Task %s permanently failed after %s attempts: %s",
                task_id,
                retry_count,
                error,
            )
        else:
            logger.warning("Task %s failed (attempt %s): %s", task_id, retry_count, error)
        return FailureOutcome(retry_count=retry_count, permanently_failed=exhausted)

    def read_failure(self, task_id: str) -> TaskFailure | None:
        return TaskFailure.from_dict(read_json(self.paths.failure_path(task_id)))

    def is_retry_exhausted(self, task_id: str) -> bool:
        failure = self.read_failure(task_id)
        return failure is not None and failure.retry_count >= self.max_retries

    def _mutate(self, task_id: str, mutator: Callable[[dict[str, Any]], None]) -> Task:
        path = self.paths.task_path(task_id)
        handle = self._wait_for_lock(task_id, worker_name="")
        if handle is None:
            logger.warning("Could not lock task %s, updating without lock", task_id)
        with held_lock(handle):
            raw = read_json_object(path)
            if raw is None or Task.from_dict(raw) is None:
                raise TaskNotFoundError(f"Task {task_id} not found or unreadable")
            previous_status = raw.get("status")
            mutator(raw)
            if (
                previous_status == TaskStatus.COMPLETED.value
                and raw.get("status") != TaskStatus.COMPLETED.value
            ):
                logger.warning("Ignoring status change on completed task %s", task_id)
                raw["status"] = previous_status
            updated = Task.from_dict(raw)
            if updated is None:
                raise TeamBridgeError(f"Update would leave task {task_id} malformed")
            atomic_write_json(path, raw)
        return updated

    def _wait_for_lock(self, task_id: str, *, worker_name: str) -> LockHandle | None:
        return acquire_lock_wait(
            self.paths.task_lock_path(task_id),
            attempts=self.lock_wait_attempts,
            interval_seconds=self.lock_wait_interval_seconds,
            worker_name=worker_name,
            stale_after_seconds=self.stale_lock_seconds,
            is_process_alive=self.is_process_alive,
        )

    def _is_claimable(self, task: Task, worker_name: str) -> bool:
        if task.owner != worker_name:
            return False
        if task.status == TaskStatus.PENDING:
            return self.are_blockers_resolved(task.blocked_by)
        return self._is_orphaned(task)

    def _is_orphaned(self, task: Task) -> bool:
        if task.status != TaskStatus.IN_PROGRESS or task.claim_pid is None:
            return False
        if task.claim_pid == os.getpid():
            return False
        return not self.is_process_alive(task.claim_pid)


def _metadata(record: dict[str, Any]) -> dict[str, Any]:
    metadata = record.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
        record["metadata"] = metadata
    return metadata
