from __future__ import annotations

import os
import sys
import time
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from team_bridge.coordination.audit import AuditLog
from team_bridge.coordination.channels import InboxChannel, OutboxChannel
from team_bridge.coordination.heartbeat import HeartbeatMonitor
from team_bridge.coordination.lead import (
    LEAD_NAME,
    LeastLoadedRouter,
    SubprocessSpawner,
    TeamLead,
    WorkerLoad,
)
from team_bridge.coordination.models import (
    AuditEventType,
    Heartbeat,
    HeartbeatStatus,
    InboxMessageType,
    OutboxMessage,
    OutboxMessageType,
    RestartPolicy,
    SignalKind,
    Task,
    WorkerMember,
    utc_now,
)
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.registry import WorkerRegistry
from team_bridge.coordination.restart import RestartSupervisor
from team_bridge.coordination.signals import SignalBoard
from team_bridge.coordination.tasks import TaskStore

pytestmark = [
    allure.epic("Lead Runtime"),
    allure.feature("Dispatch & Supervision"),
]

DEAD_PID = 999_999_999
POLICY = RestartPolicy(
    max_restarts=2,
    backoff_base_seconds=5,
    backoff_max_seconds=60,
    backoff_multiplier=2,
)


class FakeSpawner:
    def __init__(self) -> None:
        self.spawned: list[str] = []

    def spawn(self, member: WorkerMember) -> int | None:
        self.spawned.append(member.name)
        return 4000 + len(self.spawned)


class FixedRouter:
    def __init__(self, name: str) -> None:
        self.name = name

    def choose(self, task: Task, candidates: Sequence[WorkerLoad]) -> str | None:
        return self.name


@pytest.fixture()
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture()
def make_lead(paths: TeamPaths, store: TaskStore, spawner: FakeSpawner):
    def _make(**kwargs) -> TeamLead:
        kwargs.setdefault("spawner", spawner)
        kwargs.setdefault("restart_policy", POLICY)
        kwargs.setdefault("poll_interval_seconds", 0.01)
        return TeamLead(
            paths=paths,
            task_store=store,
            is_process_alive=lambda pid: pid != DEAD_PID,
            **kwargs,
        )

    return _make


def _register(paths: TeamPaths, *names: str) -> None:
    registry = WorkerRegistry(paths)
    for name in names:
        registry.register(WorkerMember(name=name, command=f"team-bridge worker run {name}"))


def _beat(
    paths: TeamPaths,
    name: str,
    *,
    status: HeartbeatStatus = HeartbeatStatus.POLLING,
    pid: int | None = None,
    age_seconds: float = 0,
) -> None:
    HeartbeatMonitor(paths).write_heartbeat(
        Heartbeat(
            worker_name=name,
            team_name=paths.team,
            pid=os.getpid() if pid is None else pid,
            last_poll_at=(utc_now() - timedelta(seconds=age_seconds)).isoformat(),
            status=status,
        ),
    )


def _lead_events(paths: TeamPaths) -> list[AuditEventType]:
    return [event.event_type for event in AuditLog(paths).read(worker_name=LEAD_NAME)]


def test_unassigned_ready_tasks_go_to_least_loaded_worker(
    paths: TeamPaths,
    store: TaskStore,
    make_task,
    make_lead,
) -> None:
    _register(paths, "w1", "w2")
    _beat(paths, "w1")
    _beat(paths, "w2")
    for task_id in ("1", "2", "3"):
        make_task(task_id)
    make_task("4", blocked_by=["1"])

    summary = make_lead().poll_once()

    assert summary.assigned == [("1", "w1"), ("2", "w2"), ("3", "w1")]
    assert store.read_task("4").owner == ""
    assert _lead_events(paths).count(AuditEventType.TASK_ASSIGNED) == 3


def test_existing_load_is_counted_when_routing(
    paths: TeamPaths,
    store: TaskStore,
    make_task,
    make_lead,
) -> None:
    _register(paths, "w1", "w2")
    _beat(paths, "w1")
    _beat(paths, "w2")
    make_task("1", owner="w1")
    make_task("2", owner="w1")
    make_task("3")

    summary = make_lead().poll_once()

    assert summary.assigned == [("3", "w2")]


def test_unavailable_workers_get_no_new_tasks(
    paths: TeamPaths,
    store: TaskStore,
    make_task,
    make_lead,
) -> None:
    _register(paths, "dead", "quarantined", "draining")
    _beat(paths, "dead", age_seconds=120)
    _beat(paths, "quarantined", status=HeartbeatStatus.QUARANTINED)
    _beat(paths, "draining")
    SignalBoard(paths).request_drain("draining")
    make_task("1")

    summary = make_lead().poll_once()

    assert summary.assigned == []
    assert store.read_task("1").owner == ""


def test_router_choice_outside_candidates_is_ignored(
    paths: TeamPaths,
    store: TaskStore,
    make_task,
    make_lead,
) -> None:
    _register(paths, "w1")
    _beat(paths, "w1")
    make_task("1")

    summary = make_lead(router=FixedRouter("ghost")).poll_once()

    assert summary.assigned == []
    assert store.read_task("1").owner == ""


def test_dead_worker_is_restarted_with_backoff(
    paths: TeamPaths,
    spawner: FakeSpawner,
    make_lead,
) -> None:
    _register(paths, "w1")
    lead = make_lead()
    now = utc_now()

    assert lead.poll_once(now=now).restarted == ["w1"]
    assert lead.poll_once(now=now + timedelta(seconds=5)).restarted == []
    assert lead.poll_once(now=now + timedelta(seconds=11)).restarted == ["w1"]

    assert spawner.spawned == ["w1", "w1"]
    state = RestartSupervisor(paths, POLICY).read_restart_state("w1")
    assert state.restart_count == 2
    restarts = AuditLog(paths).read(event_type=AuditEventType.WORKER_RESTARTED)
    assert [event.details["attempt"] for event in restarts] == [1, 2]


def test_restart_budget_exhaustion_is_reported_once(
    paths: TeamPaths,
    spawner: FakeSpawner,
    make_lead,
) -> None:
    _register(paths, "w1")
    lead = make_lead()
    now = utc_now()
    lead.poll_once(now=now)
    lead.poll_once(now=now + timedelta(seconds=11))

    first = lead.poll_once(now=now + timedelta(minutes=10))
    second = lead.poll_once(now=now + timedelta(minutes=20))

    assert first.exhausted == ["w1"] and second.exhausted == ["w1"]
    assert len(spawner.spawned) == 2
    assert _lead_events(paths).count(AuditEventType.WORKER_RESTART_EXHAUSTED) == 1


def test_stale_heartbeat_with_live_process_is_not_restarted(
    paths: TeamPaths,
    spawner: FakeSpawner,
    make_lead,
) -> None:
    _register(paths, "hung", "gone")
    _beat(paths, "hung", age_seconds=300)
    _beat(paths, "gone", age_seconds=300, pid=DEAD_PID)

    summary = make_lead().poll_once()

    assert summary.restarted == ["gone"]
    assert spawner.spawned == ["gone"]


def test_worker_with_pending_signal_is_not_restarted(
    paths: TeamPaths,
    spawner: FakeSpawner,
    make_lead,
) -> None:
    _register(paths, "w1", "w2")
    SignalBoard(paths).request_shutdown("w1")
    SignalBoard(paths).request_drain("w2")

    make_lead().poll_once()

    assert spawner.spawned == []


def test_without_spawner_dead_workers_are_left_alone(paths: TeamPaths, make_lead) -> None:
    _register(paths, "w1")

    summary = make_lead(spawner=None).poll_once()

    assert summary.restarted == []
    assert RestartSupervisor(paths).read_restart_state("w1") is None


def test_shutdown_ack_unregisters_worker_and_clears_signal(
    paths: TeamPaths,
    spawner: FakeSpawner,
    make_lead,
) -> None:
    _register(paths, "w1")
    lead = make_lead()
    request_id = lead.request_shutdown("w1", "done for today")
    OutboxChannel(paths, "w1").append(
        OutboxMessage(type=OutboxMessageType.SHUTDOWN_ACK, request_id=request_id),
    )

    summary = lead.poll_once()

    assert summary.acknowledged == ["w1"]
    assert WorkerRegistry(paths).list_workers() == []
    assert not SignalBoard(paths).is_pending(SignalKind.SHUTDOWN, "w1")
    assert spawner.spawned == []


def test_stale_ack_keeps_newer_signal(paths: TeamPaths, make_lead) -> None:
    _register(paths, "w1")
    lead = make_lead()
    lead.request_drain("w1")
    OutboxChannel(paths, "w1").append(
        OutboxMessage(type=OutboxMessageType.DRAIN_ACK, request_id="old-request"),
    )

    lead.poll_once()

    assert SignalBoard(paths).is_pending(SignalKind.DRAIN, "w1")
    assert [member.name for member in WorkerRegistry(paths).list_workers()] == ["w1"]


def test_ack_after_worker_cleared_its_signal_unregisters(paths: TeamPaths, make_lead) -> None:
    _register(paths, "w1")
    lead = make_lead()
    request_id = lead.request_drain("w1")
    SignalBoard(paths).clear(SignalKind.DRAIN, "w1")
    OutboxChannel(paths, "w1").append(
        OutboxMessage(type=OutboxMessageType.DRAIN_ACK, request_id=request_id),
    )

    summary = lead.poll_once()

    assert summary.acknowledged == ["w1"]
    assert WorkerRegistry(paths).list_workers() == []


def test_task_complete_resets_restart_budget(paths: TeamPaths, make_lead) -> None:
    _register(paths, "w1")
    _beat(paths, "w1")
    supervisor = RestartSupervisor(paths, POLICY)
    supervisor.record_restart("w1")
    OutboxChannel(paths, "w1").append(
        OutboxMessage(type=OutboxMessageType.TASK_COMPLETE, task_id="1", summary="ok"),
    )

    summary = make_lead().poll_once()

    assert [message.type for _, message in summary.messages] == [OutboxMessageType.TASK_COMPLETE]
    assert supervisor.read_restart_state("w1") is None


def test_outbox_messages_are_consumed_once(paths: TeamPaths, make_lead) -> None:
    _register(paths, "w1")
    _beat(paths, "w1")
    outbox = OutboxChannel(paths, "w1")
    outbox.append(OutboxMessage(type=OutboxMessageType.IDLE))
    outbox.append(OutboxMessage(type=OutboxMessageType.TASK_FAILED, task_id="1", error="x"))
    lead = make_lead()

    assert len(lead.poll_once().messages) == 2
    assert lead.poll_once().messages == []


def test_send_message_appends_to_worker_inbox(paths: TeamPaths, make_lead) -> None:
    message = make_lead().send_message("w1", "Focus on tests", InboxMessageType.CONTEXT)

    [received] = InboxChannel(paths, "w1").read_new()
    assert received.type is InboxMessageType.CONTEXT
    assert received.content == "Focus on tests"
    assert received.timestamp == message.timestamp


def test_oversized_inbox_and_audit_are_rotated(paths: TeamPaths, make_lead) -> None:
    _register(paths, "w1")
    _beat(paths, "w1")
    lead = make_lead(inbox_max_bytes=100, audit_max_bytes=200)
    for index in range(5):
        lead.send_message("w1", f"note {index}")
    for _ in range(5):
        AuditLog(paths).record(AuditEventType.WORKER_IDLE, "w1")

    summary = lead.poll_once()

    assert summary.rotated == ["inbox:w1", "audit"]
    assert len(InboxChannel(paths, "w1").read_all()) < 5
    assert AuditEventType.AUDIT_ROTATED in _lead_events(paths)


def test_run_loop_stops_after_max_cycles(paths: TeamPaths, make_lead) -> None:
    cycles = make_lead().run_loop(max_cycles=2)

    assert cycles == 2
    events = _lead_events(paths)
    assert events[0] is AuditEventType.BRIDGE_START
    assert events[-1] is AuditEventType.BRIDGE_SHUTDOWN


def test_least_loaded_router_breaks_ties_by_name() -> None:
    router = LeastLoadedRouter()
    task = Task(id="1")

    assert router.choose(task, []) is None
    assert (
        router.choose(task, [WorkerLoad("b", 0), WorkerLoad("a", 0), WorkerLoad("c", 1)]) == "a"
    )


def test_subprocess_spawner_starts_command(tmp_path: Path) -> None:
    marker = tmp_path / "started"
    spawner = SubprocessSpawner(log_dir=tmp_path / "logs")
    member = WorkerMember(
        name="w1",
        command=f"{sys.executable} -c \"open('{marker}', 'w').write('ok')\"",
    )

    pid = spawner.spawn(member)

    assert isinstance(pid, int)
    deadline = time.monotonic() + 10
    while time.monotonic() < deadline and not (marker.exists() and marker.read_text("utf-8")):
        time.sleep(0.05)
    assert marker.read_text("utf-8") == "ok"
    assert (tmp_path / "logs" / "w1.log").exists()
    assert spawner.spawn(WorkerMember(name="w2", command="")) is None
