"""Markdown team report built from the audit log and usage records."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from team_bridge.coordination.audit import (
    CLI_ACTOR,
    AuditLog,
    activity_log,
    format_activity_timeline,
)
from team_bridge.coordination.fsutils import atomic_write_text, validate_resolved_path
from team_bridge.coordination.lead import LEAD_NAME
from team_bridge.coordination.models import AuditEvent, AuditEventType, parse_timestamp, utc_now
from team_bridge.coordination.paths import TeamPaths
from team_bridge.coordination.usage import (
    UsageLog,
    UsageReport,
    build_usage_report,
    format_wall_clock,
)

logger = logging.getLogger(__name__)

REPORT_TIMELINE_LIMIT = 50
_NON_WORKER_ACTORS = {LEAD_NAME, CLI_ACTOR}
_TERMINAL_EVENTS = {
    AuditEventType.TASK_COMPLETED: "Completed",
    AuditEventType.TASK_PERMANENTLY_FAILED: "Failed",
}


@dataclass(slots=True)
class TaskResult:
    task_id: str
    worker_name: str
    result: str


@dataclass(slots=True)
class WorkerPerformance:
    worker_name: str
    completed: int = 0
    failed: int = 0


def build_team_report(paths: TeamPaths, *, now: datetime | None = None) -> str:
    """Render the markdown report of everything the audit and usage logs hold."""

    generated_at = now or utc_now()
    audit = AuditLog(paths)
    events = audit.read()
    usage = build_usage_report(UsageLog(paths).read(), team_name=paths.team)

    results = _task_results(events)
    performance = _worker_performance(events, results, usage)
    completed = sum(1 for result in results if result.result == "Completed")
    failed = len(results) - completed
    timeline = format_activity_timeline(activity_log(audit, limit=REPORT_TIMELINE_LIMIT))

    result_lines = [
        f"| {result.task_id} | {result.worker_name} | {result.result} |" for result in results
    ]
    performance_lines = []
    for worker in performance:
        worker_usage = usage.worker(worker.worker_name)
        wall_clock = worker_usage.total_wall_clock_ms if worker_usage else 0
        prompt_chars = worker_usage.total_prompt_chars if worker_usage else 0
        response_chars = worker_usage.total_response_chars if worker_usage else 0
        performance_lines.append(
            f"| {worker.worker_name} | {worker.completed} | {worker.failed} "
            f"| {format_wall_clock(wall_clock)} | {prompt_chars:,} | {response_chars:,} |",
        )

    return "\n".join(
        [
            f"# Team Report: {paths.team}",
            "",
            "## Summary",
            "",
            f"- Workers: {len(performance)}",
            f"- Tasks: {completed} completed, {failed} failed",
            f"- Duration: {_duration(events)}",
            "",
            "## Task Results",
            "",
            *(
                ["| Task | Worker | Result |", "|------|--------|--------|", *result_lines]
                if result_lines
                else ["- none"]
            ),
            "",
            "## Worker Performance",
            "",
            *(
                [
                    "| Worker | Completed | Failed | Wall clock | Prompt chars | Response chars |",
                    "|--------|-----------|--------|------------|--------------|----------------|",
                    *performance_lines,
                ]
                if performance_lines
                else ["- none"]
            ),
            "",
            "## Activity Timeline",
            timeline,
            "",
            "## Usage Totals",
            "",
            *_usage_lines(usage),
            "",
            "---",
            f"*Generated at {generated_at.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3]}Z*",
            "",
        ],
    )


def save_team_report(
    paths: TeamPaths,
    *,
    output_dir: Path | None = None,
    now: datetime | None = None,
) -> Path:
    """Write a fresh report to ``<output_dir>/<team>-<timestamp>.md`` and return its path.

    Without ``output_dir`` the report lands under ``<root>/reports/<team>``. The
    resolved file must stay inside the chosen directory.
    """

    generated_at = now or utc_now()
    directory = output_dir or paths.reports_dir
    if output_dir is None:
        validate_resolved_path(directory, paths.root)
    path = directory / f"{paths.team}-{generated_at.strftime('%Y%m%dT%H%M%S%fZ')}.md"
    validate_resolved_path(path, directory)
    atomic_write_text(path, build_team_report(paths, now=generated_at))
    logger.info("Saved team report to %s", path)
    return path


def _task_results(events: list[AuditEvent]) -> list[TaskResult]:
    latest: dict[str, TaskResult] = {}
    for event in events:
        label = _TERMINAL_EVENTS.get(event.event_type)
        if label is None or not event.task_id:
            continue
        latest.pop(event.task_id, None)
        latest[event.task_id] = TaskResult(event.task_id, event.worker_name, label)
    return list(latest.values())


def _worker_performance(
    events: list[AuditEvent],
    results: list[TaskResult],
    usage: UsageReport,
) -> list[WorkerPerformance]:
    names = {event.worker_name for event in events} | {
        worker.worker_name for worker in usage.workers
    }
    performance = {
        name: WorkerPerformance(name) for name in sorted(names - _NON_WORKER_ACTORS) if name
    }
    for result in results:
        worker = performance.setdefault(result.worker_name, WorkerPerformance(result.worker_name))
        if result.result == "Completed":
            worker.completed += 1
        else:
            worker.failed += 1
    return list(performance.values())


def _duration(events: list[AuditEvent]) -> str:
    starts = _timestamps(events, AuditEventType.BRIDGE_START)
    stops = _timestamps(events, AuditEventType.BRIDGE_SHUTDOWN)
    if not starts or not stops or max(stops) < min(starts):
        return "unknown"
    minutes = (max(stops) - min(starts)).total_seconds() / 60
    return f"{minutes:.0f} minutes"


def _timestamps(events: list[AuditEvent], event_type: AuditEventType) -> list[datetime]:
    stamps = [
        parse_timestamp(event.timestamp) for event in events if event.event_type == event_type
    ]
    return [stamp for stamp in stamps if stamp is not None]


def _usage_lines(usage: UsageReport) -> list[str]:
    if usage.task_count == 0:
        return ["- none recorded"]
    return [
        f"- Tasks measured: {usage.task_count}",
        f"- Wall clock: {format_wall_clock(usage.total_wall_clock_ms)}",
        f"- Prompt chars: {usage.total_prompt_chars:,}",
        f"- Response chars: {usage.total_response_chars:,}",
    ]
