from __future__ import annotations

import allure

from team_bridge.coordination.models import SignalKind
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.signals import SignalBoard

pytestmark = [
    allure.epic("Messaging"),
    allure.feature("Shutdown & Drain Signals"),
]


def test_signal_request_is_readable_until_cleared(paths: TeamPaths) -> None:
    board = SignalBoard(paths)

    request = board.request_shutdown("w1", "maintenance")

    assert board.is_pending(SignalKind.SHUTDOWN, "w1")
    assert not board.is_pending(SignalKind.DRAIN, "w1")
    pending = board.read(SignalKind.SHUTDOWN, "w1")
    assert pending is not None
    assert pending.request_id == request.request_id
    assert pending.reason == "maintenance"
    assert board.clear(SignalKind.SHUTDOWN, "w1")
    assert board.read(SignalKind.SHUTDOWN, "w1") is None


def test_request_ids_are_unique(paths: TeamPaths) -> None:
    board = SignalBoard(paths)

    first = board.request_drain("w1")
    second = board.request_drain("w1")

    assert first.request_id != second.request_id
    assert board.read(SignalKind.DRAIN, "w1").request_id == second.request_id


def test_clear_if_matches_ignores_stale_acks(paths: TeamPaths) -> None:
    board = SignalBoard(paths)
    old = board.request_shutdown("w1")
    new = board.request_shutdown("w1")

    assert not board.clear_if_matches(SignalKind.SHUTDOWN, "w1", old.request_id)
    assert not board.clear_if_matches(SignalKind.SHUTDOWN, "w1", None)
    assert board.is_pending(SignalKind.SHUTDOWN, "w1")
    assert board.clear_if_matches(SignalKind.SHUTDOWN, "w1", new.request_id)
    assert not board.is_pending(SignalKind.SHUTDOWN, "w1")


def test_unreadable_signal_file_is_pending_but_not_parsed(paths: TeamPaths) -> None:
    board = SignalBoard(paths)
    paths.signals_dir.mkdir(parents=True)
    paths.drain_signal_path("w1").write_text("{oops", "utf-8")

    assert board.is_pending(SignalKind.DRAIN, "w1")
    assert board.read(SignalKind.DRAIN, "w1") is None
