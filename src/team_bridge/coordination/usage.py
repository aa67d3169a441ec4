"""Per-task usage records written by workers and aggregated for reports."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from team_bridge.coordination.fsutils import append_line
from team_bridge.coordination.paths import TeamPaths

logger = logging.getLogger(__name__)


class UsageOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class TaskUsage:
    """Cost of one task attempt as seen from the worker."""

    task_id: str
    worker_name: str
    started_at: str
    completed_at: str
    wall_clock_ms: int
    prompt_chars: int
    response_chars: int
    outcome: UsageOutcome = UsageOutcome.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "worker_name": self.worker_name,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "wall_clock_ms": self.wall_clock_ms,
            "prompt_chars": self.prompt_chars,
            "response_chars": self.response_chars,
            "outcome": self.outcome.value,
        }

    @classmethod
    def from_dict(cls, data: object) -> TaskUsage | None:
        if not isinstance(data, dict):
            return None
        task_id = data.get("task_id")
        worker_name = data.get("worker_name")
        if not isinstance(task_id, str) or not isinstance(worker_name, str):
            return None
        counters = [data.get(key) for key in ("wall_clock_ms", "prompt_chars", "response_chars")]
        if not all(isinstance(value, int) and value >= 0 for value in counters):
            return None
        try:
            outcome = UsageOutcome(data.get("outcome", UsageOutcome.COMPLETED.value))
        except ValueError:
            return None
        wall_clock_ms, prompt_chars, response_chars = counters
        return cls(
            task_id=task_id,
            worker_name=worker_name,
            started_at=str(data.get("started_at", "")),
            completed_at=str(data.get("completed_at", "")),
            wall_clock_ms=wall_clock_ms,
            prompt_chars=prompt_chars,
            response_chars=response_chars,
            outcome=outcome,
        )


@dataclass(slots=True)
class CharCounts:
    prompt_chars: int
    response_chars: int


def measure_char_counts(prompt_path: Path | None, response_path: Path | None) -> CharCounts:
    """Character counts of the prompt and response files; missing files count as 0."""

    return CharCounts(
        prompt_chars=_count_chars(prompt_path),
        response_chars=_count_chars(response_path),
    )


def _count_chars(path: Path | None) -> int:
    if path is None:
        return 0
    try:
        return len(path.read_text("utf-8", errors="replace"))
    except OSError:
        return 0


class UsageLog:
    """Append-only JSONL log of :class:`TaskUsage` records for one team."""

    def __init__(self, paths: TeamPaths) -> None:
        self.paths = paths

    def record(self, usage: TaskUsage) -> None:
        append_line(self.paths.usage_path, json.dumps(usage.to_dict(), ensure_ascii=False))

    def read(self) -> list[TaskUsage]:
        try:
            data = self.paths.usage_path.read_bytes()
        except FileNotFoundError:
            return []

        records: list[TaskUsage] = []
        for raw_line in data.splitlines():
            if not raw_line.strip():
                continue
            try:
                payload = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.debug("Skipping unreadable usage record in %s", self.paths.usage_path)
                continue
            usage = TaskUsage.from_dict(payload)
            if usage is not None:
                records.append(usage)
        return records


@dataclass(slots=True)
class WorkerUsage:
    worker_name: str
    task_count: int = 0
    total_wall_clock_ms: int = 0
    total_prompt_chars: int = 0
    total_response_chars: int = 0

    def add(self, usage: TaskUsage) -> None:
        self.task_count += 1
        self.total_wall_clock_ms += usage.wall_clock_ms
        self.total_prompt_chars += usage.prompt_chars
        self.total_response_chars += usage.response_chars


@dataclass(slots=True)
class UsageReport:
    """Usage totals for a team, overall and per worker."""

    team_name: str
    task_count: int = 0
    total_wall_clock_ms: int = 0
    total_prompt_chars: int = 0
    total_response_chars: int = 0
    outcome_counts: dict[str, int] = field(default_factory=dict)
    workers: list[WorkerUsage] = field(default_factory=list)

    def worker(self, name: str) -> WorkerUsage | None:
        return next((entry for entry in self.workers if entry.worker_name == name), None)


def build_usage_report(records: Iterable[TaskUsage], *, team_name: str) -> UsageReport:
    report = UsageReport(team_name=team_name)
    per_worker: dict[str, WorkerUsage] = {}
    outcomes: dict[str, int] = defaultdict(int)
    for usage in records:
        report.task_count += 1
        report.total_wall_clock_ms += usage.wall_clock_ms
        report.total_prompt_chars += usage.prompt_chars
        report.total_response_chars += usage.response_chars
        outcomes[usage.outcome.value] += 1
        per_worker.setdefault(usage.worker_name, WorkerUsage(usage.worker_name)).add(usage)
    report.outcome_counts = dict(sorted(outcomes.items()))
    report.workers = [per_worker[name] for name in sorted(per_worker)]
    return report


def render_usage_lines(report: UsageReport) -> list[str]:
    """Render operator-facing usage lines for CLI output."""

    outcomes = " ".join(f"{key}={value}" for key, value in report.outcome_counts.items())
    lines = [
        f"Usage: team={report.team_name} tasks={report.task_count} "
        f"wall_clock={format_wall_clock(report.total_wall_clock_ms)} "
        f"prompt_chars={report.total_prompt_chars:,} "
        f"response_chars={report.total_response_chars:,}",
        f"Outcomes: {outcomes or 'none'}",
    ]
    for worker in report.workers:
        lines.append(
            f"  {worker.worker_name} tasks={worker.task_count} "
            f"wall_clock={format_wall_clock(worker.total_wall_clock_ms)} "
            f"prompt_chars={worker.total_prompt_chars:,} "
            f"response_chars={worker.total_response_chars:,}",
        )
    return lines


def format_wall_clock(milliseconds: int) -> str:
    return f"{milliseconds / 1000:.0f}s"
