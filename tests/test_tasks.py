from __future__ import annotations

import json
import multiprocessing
import os
from pathlib import Path

import allure
import pytest

from team_bridge.coordination.locking import acquire_lock, release_lock
from team_bridge.coordination.models import Task, TaskOutcome, TaskStatus
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.tasks import (
    TaskExistsError,
    TaskNotFoundError,
    TaskStore,
    task_sort_key,
)

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Claims, Dependencies & Retries"),
]

DEAD_PID = 999_999_999


def _write_raw(paths: TeamPaths, task_id: str, record: dict) -> None:
    paths.tasks_dir.mkdir(parents=True, exist_ok=True)
    paths.task_path(task_id).write_text(json.dumps(record), "utf-8")


def _hammer(root: str, team: str, index: int, rounds: int) -> None:
    store = TaskStore(
        TeamPaths(root=Path(root), team=team),
        lock_wait_attempts=500,
        lock_wait_interval_seconds=0.002,
    )
    for round_number in range(rounds):
        store.update_task("1", {f"writer_{index}_{round_number}": round_number})


def test_create_and_read_task(store: TaskStore, paths: TeamPaths) -> None:
    store.create_task(Task(id="1", subject="Write docs", owner="w1", blocked_by=["0"]))

    task = store.read_task("1")

    assert task is not None
    assert task.subject == "Write docs"
    assert task.status is TaskStatus.PENDING
    assert task.blocked_by == ["0"]
    record = json.loads(paths.task_path("1").read_text("utf-8"))
    assert record["blocked_by"] == ["0"]
    assert "claimed_by" not in record


def test_create_task_rejects_duplicate_ids(store: TaskStore, make_task) -> None:
    make_task("1")

    with pytest.raises(TaskExistsError):
        store.create_task(Task(id="1"))


def test_task_ids_sort_numerically_and_skip_sidecars(store: TaskStore, paths: TeamPaths) -> None:
    for task_id in ("10", "2", "b", "1", "a"):
        store.create_task(Task(id=task_id))
    (paths.tasks_dir / "3.json.tmp.1.deadbeef").write_text("{}", "utf-8")
    store.record_failure("2", "boom")

    assert store.list_task_ids() == ["1", "2", "10", "a", "b"]
    assert sorted(["b", "10", "9"], key=task_sort_key) == ["9", "10", "b"]


def test_list_tasks_skips_malformed_records(store: TaskStore, paths: TeamPaths, make_task) -> None:
    make_task("1")
    paths.task_path("2").write_text("{broken", "utf-8")
    _write_raw(paths, "3", {"id": "3", "status": "exploded"})

    assert [task.id for task in store.list_tasks()] == ["1"]


def test_unknown_fields_survive_updates(store: TaskStore, paths: TeamPaths) -> None:
    _write_raw(
        paths,
        "1",
        {"id": "1", "subject": "x", "status": "pending", "owner": "w1", "priority": "high"},
    )

    store.update_task("1", {"subject": "renamed", "owner": None})

    record = json.loads(paths.task_path("1").read_text("utf-8"))
    assert record["priority"] == "high"
    assert record["subject"] == "renamed"
    assert record["owner"] == "w1"


def test_update_missing_task_raises(store: TaskStore) -> None:
    with pytest.raises(TaskNotFoundError):
        store.update_task("404", {"subject": "nope"})


def test_non_object_task_record_is_treated_as_missing(
    store: TaskStore,
    paths: TeamPaths,
    make_task,
) -> None:
    make_task("1", owner="w1")
    paths.task_path("1").write_text(json.dumps(["not", "a", "task"]), "utf-8")

    with pytest.raises(TaskNotFoundError):
        store.update_task("1", {"subject": "nope"})
    assert store.find_next_task("w1") is None
    assert json.loads(paths.task_path("1").read_text("utf-8")) == ["not", "a", "task"]


def test_find_next_task_claims_lowest_owned_pending_task(store: TaskStore, make_task) -> None:
    make_task("3", owner="w1")
    make_task("2", owner="w2")
    make_task("10", owner="w1")

    claimed = store.find_next_task("w1")

    assert claimed is not None
    assert claimed.id == "3"
    assert claimed.status is TaskStatus.IN_PROGRESS
    assert claimed.claimed_by == "w1"
    assert claimed.claim_pid == os.getpid()
    assert claimed.claimed_at is not None
    assert store.find_next_task("w1").id == "10"
    assert store.find_next_task("w1") is None


def test_blocked_task_waits_for_its_blocker(store: TaskStore, make_task) -> None:
    make_task("1", owner="w1")
    make_task("2", owner="w1", blocked_by=["1"])

    first = store.find_next_task("w1")
    assert first is not None and first.id == "1"
    assert store.find_next_task("w1") is None

    store.complete_task("1", "done")

    second = store.find_next_task("w1")
    assert second is not None and second.id == "2"


def test_missing_or_unreadable_blocker_keeps_task_blocked(
    store: TaskStore,
    paths: TeamPaths,
    make_task,
) -> None:
    make_task("1", owner="w1", blocked_by=["99"])
    make_task("2", owner="w1", blocked_by=["3"])
    paths.task_path("3").write_text("not json", "utf-8")

    assert not store.are_blockers_resolved(["99"])
    assert not store.are_blockers_resolved(["../x"])
    assert store.find_next_task("w1") is None


def test_crashed_claimant_task_is_reclaimed(store: TaskStore, paths: TeamPaths) -> None:
    _write_raw(
        paths,
        "1",
        {
            "id": "1",
            "status": "in_progress",
            "owner": "w1",
            "claimed_by": "w1",
            "claimed_at": "2026-01-01T00:00:00+00:00",
            "claim_pid": DEAD_PID,
        },
    )

    claimed = store.find_next_task("w1")

    assert claimed is not None
    assert claimed.claim_pid == os.getpid()


def test_release_orphaned_claims_reverts_dead_claims_only(
    store: TaskStore,
    paths: TeamPaths,
) -> None:
    base = {"status": "in_progress", "owner": "w1", "claimed_by": "w1"}
    _write_raw(paths, "1", {"id": "1", **base, "claim_pid": DEAD_PID})
    _write_raw(paths, "2", {"id": "2", **base, "claim_pid": os.getpid()})
    _write_raw(paths, "3", {"id": "3", **base, "owner": "w2", "claim_pid": DEAD_PID})

    released = store.release_orphaned_claims("w1")

    assert released == ["1"]
    task = store.read_task("1")
    assert task.status is TaskStatus.PENDING
    assert task.claimed_by is None and task.claim_pid is None
    assert store.read_task("2").status is TaskStatus.IN_PROGRESS
    assert store.read_task("3").status is TaskStatus.IN_PROGRESS


def test_task_locked_by_live_claimant_is_skipped(
    store: TaskStore,
    paths: TeamPaths,
    make_task,
) -> None:
    make_task("1", owner="w1")
    make_task("2", owner="w1")
    holder = acquire_lock(paths.task_lock_path("1"), worker_name="other")

    claimed = store.find_next_task("w1")

    assert claimed is not None and claimed.id == "2"
    assert holder is not None
    release_lock(holder)


def test_failures_requeue_until_retries_are_exhausted(store: TaskStore, make_task) -> None:
    make_task("1", owner="w1")

    for attempt in (1, 2):
        store.find_next_task("w1")
        outcome = store.record_failure("1", f"error {attempt}")
        assert outcome.retry_count == attempt
        assert not outcome.permanently_failed
        task = store.read_task("1")
        assert task.status is TaskStatus.PENDING
        assert task.claimed_by is None

    store.find_next_task("w1")
    outcome = store.record_failure("1", "error 3")

    assert outcome.permanently_failed
    task = store.read_task("1")
    assert task.status is TaskStatus.COMPLETED
    assert task.outcome is TaskOutcome.FAILED
    assert task.metadata["permanently_failed"] is True
    assert task.metadata["failed_attempts"] == 3
    assert store.is_retry_exhausted("1")
    assert store.read_failure("1").last_error == "error 3"
    assert store.find_next_task("w1") is None


def test_exhausted_retries_report_failed_outcome_without_claiming(
    store: TaskStore,
    make_task,
) -> None:
    make_task("1", owner="w1")
    for _ in range(3):
        store.record_failure("1", "nope")

    assert store.read_task("1").outcome is TaskOutcome.FAILED


def test_complete_task_clears_failure_sidecar(
    store: TaskStore,
    paths: TeamPaths,
    make_task,
) -> None:
    make_task("1", owner="w1")
    store.record_failure("1", "flaky")

    task = store.complete_task("1", "all good")

    assert task.outcome is TaskOutcome.COMPLETED
    assert task.metadata["summary"] == "all good"
    assert not paths.failure_path("1").exists()
    assert store.read_failure("1") is None


def test_completed_task_status_is_never_reverted(store: TaskStore, make_task) -> None:
    make_task("1", owner="w1")
    store.complete_task("1")

    task = store.update_task("1", {"status": TaskStatus.PENDING, "subject": "kept"})

    assert task.status is TaskStatus.COMPLETED
    assert task.subject == "kept"
    assert store.release_task("1").status is TaskStatus.COMPLETED


def test_concurrent_updates_are_never_lost(store: TaskStore, paths: TeamPaths, make_task) -> None:
    make_task("1")
    context = multiprocessing.get_context("fork")
    writers, rounds = 4, 10

    processes = [
        context.Process(target=_hammer, args=(str(paths.root), paths.team, index, rounds))
        for index in range(writers)
    ]
    for process in processes:
        process.start()
    for process in processes:
        process.join(timeout=30)

    assert all(process.exitcode == 0 for process in processes)
    record = json.loads(paths.task_path("1").read_text("utf-8"))
    written = {key for key in record if key.startswith("writer_")}
    assert len(written) == writers * rounds
