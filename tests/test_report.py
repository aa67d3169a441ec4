from __future__ import annotations

import re
import stat
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from team_bridge.coordination.audit import AuditLog
from team_bridge.coordination.fsutils import PathEscapeError
from team_bridge.coordination.models import AuditEvent, AuditEventType
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.report import (
    REPORT_TIMELINE_LIMIT,
    build_team_report,
    save_team_report,
)
from team_bridge.coordination.usage import TaskUsage, UsageLog

pytestmark = [
    allure.epic("Reporting"),
    allure.feature("Team Report"),
]

START = datetime(2026, 1, 1, 10, 0, tzinfo=UTC)
NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _event(
    paths: TeamPaths,
    event_type: AuditEventType,
    worker_name: str,
    minute: int,
    task_id: str | None = None,
) -> None:
    AuditLog(paths).log_event(
        AuditEvent(
            timestamp=(START + timedelta(minutes=minute)).isoformat(),
            event_type=event_type,
            team_name=paths.team,
            worker_name=worker_name,
            task_id=task_id,
        ),
    )


def _usage(paths: TeamPaths, worker_name: str, task_id: str, wall_clock_ms: int) -> None:
    UsageLog(paths).record(
        TaskUsage(
            task_id=task_id,
            worker_name=worker_name,
            started_at="2026-01-01T10:00:00+00:00",
            completed_at="2026-01-01T10:02:00+00:00",
            wall_clock_ms=wall_clock_ms,
            prompt_chars=1000,
            response_chars=2000,
        ),
    )


def _section(report: str, title: str) -> str:
    match = re.search(rf"## {title}\n(.*?)\n\n", report, re.DOTALL)
    assert match is not None
    return match.group(1)


def test_empty_team_report(paths: TeamPaths) -> None:
    report = build_team_report(paths, now=NOW)

    assert report.startswith("# Team Report: alpha\n")
    assert "- Workers: 0" in report
    assert "- Tasks: 0 completed, 0 failed" in report
    assert "- Duration: unknown" in report
    assert "(no activity recorded)" in report
    assert "- none recorded" in report
    assert report.rstrip().endswith("*Generated at 2026-01-01T12:00:00.000Z*")


def test_report_has_every_section(paths: TeamPaths) -> None:
    _event(paths, AuditEventType.BRIDGE_START, "w1", 0)
    _event(paths, AuditEventType.TASK_COMPLETED, "w1", 5, task_id="t1")
    _event(paths, AuditEventType.BRIDGE_SHUTDOWN, "w1", 10)
    _usage(paths, "w1", "t1", 240_000)

    report = build_team_report(paths, now=NOW)

    for title in (
        "Summary",
        "Task Results",
        "Worker Performance",
        "Activity Timeline",
        "Usage Totals",
    ):
        assert f"## {title}\n" in report
    assert "- Tasks: 1 completed, 0 failed" in report
    assert "- Duration: 10 minutes" in report
    assert "- Wall clock: 240s" in report


def test_completed_and_failed_tasks_are_distinguished(paths: TeamPaths) -> None:
    _event(paths, AuditEventType.TASK_COMPLETED, "w1", 0, task_id="t1")
    _event(paths, AuditEventType.TASK_PERMANENTLY_FAILED, "w2", 1, task_id="t2")
    _event(paths, AuditEventType.TASK_ASSIGNED, "lead", 2, task_id="t3")

    report = build_team_report(paths, now=NOW)

    assert "- Workers: 2" in report
    assert "- Tasks: 1 completed, 1 failed" in report
    assert "| t1 | w1 | Completed |" in report
    assert "| t2 | w2 | Failed |" in report
    assert "| w1 | 1 | 0 |" in report
    assert "| w2 | 0 | 1 |" in report
    assert "| lead |" not in report


def test_worker_performance_includes_usage(paths: TeamPaths) -> None:
    _usage(paths, "w1", "t1", 120_000)

    performance = _section(build_team_report(paths, now=NOW), "Worker Performance")

    assert "| w1 | 0 | 0 | 120s | 1,000 | 2,000 |" in performance


def test_timeline_keeps_only_the_latest_entries(paths: TeamPaths) -> None:
    for minute in range(REPORT_TIMELINE_LIMIT * 2):
        _event(paths, AuditEventType.WORKER_IDLE, "w1", minute)

    timeline = _section(build_team_report(paths, now=NOW), "Activity Timeline")

    lines = timeline.splitlines()
    assert len(lines) == REPORT_TIMELINE_LIMIT
    assert lines[-1].startswith("[2026-01-01 11:39] w1:")


def test_saved_report_is_private_and_uniquely_named(paths: TeamPaths) -> None:
    _event(paths, AuditEventType.BRIDGE_START, "w1", 0)

    first = save_team_report(paths, now=NOW)
    second = save_team_report(paths, now=NOW + timedelta(milliseconds=5))

    assert first.parent == paths.reports_dir
    assert first.name.startswith("alpha-")
    assert first != second
    assert stat.S_IMODE(first.stat().st_mode) == 0o600
    assert first.read_text("utf-8").startswith("# Team Report: alpha")
    assert second.exists()


def test_saved_report_honours_output_dir(paths: TeamPaths, tmp_path: Path) -> None:
    target = tmp_path / "out"

    path = save_team_report(paths, output_dir=target, now=NOW)

    assert path.parent == target
    assert path.exists()


def test_reports_dir_escaping_the_root_is_rejected(paths: TeamPaths, tmp_path: Path) -> None:
    outside = tmp_path / "elsewhere"
    outside.mkdir()
    paths.root.mkdir(parents=True)
    (paths.root / "reports").symlink_to(outside, target_is_directory=True)

    with pytest.raises(PathEscapeError):
        save_team_report(paths, now=NOW)
