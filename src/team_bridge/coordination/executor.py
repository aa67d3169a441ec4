"""Task executors: the seam between the worker loop and the agent CLI."""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, NamedTuple, Protocol

from team_bridge.coordination.fsutils import ensure_dir
from team_bridge.coordination.models import InboxMessage, Task

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_SUMMARY_CHARS = 500
_PLACEHOLDERS = ("task_id", "subject", "description", "prompt", "prompt_file", "worker", "team")
MAX_PROMPT_CHARS = 50_000
MAX_CONTEXT_CHARS = 20_000
_DELIMITER_RE = re.compile(
    r"<(/?)(TASK_SUBJECT|TASK_DESCRIPTION|INBOX_MESSAGE)[^>]*>",
    re.IGNORECASE,
)


class _WaitOutcome(NamedTuple):
    exit_code: int
    timed_out: bool
    interrupted: bool


class ExecutorError(RuntimeError):
    """Execution failure; ``timed_out`` separates timeouts from crashes."""

    def __init__(self, message: str, *, timed_out: bool = False, exit_code: int | None = None):
        super().__init__(message)
        self.timed_out = timed_out
        self.exit_code = exit_code


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to execute one task attempt."""

    task: Task
    worker_name: str
    team_name: str
    run_dir: Path
    timeout_seconds: float
    context: list[InboxMessage] = field(default_factory=list)
    should_stop: Callable[[], bool] | None = None
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class ExecutionResult:
    summary: str
    exit_code: int = 0
    interrupted: bool = False
    prompt_path: Path | None = None
    stdout_path: Path | None = None
    stderr_path: Path | None = None


class TaskExecutor(Protocol):
    """Runs one claimed task; raises :class:`ExecutorError` on failure."""

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        """Execute the task and describe the outcome."""


def sanitize_prompt_content(content: str, max_length: int) -> str:
    """Truncate ``content`` and neutralise tags that mimic prompt delimiters."""

    return _DELIMITER_RE.sub(r"[\1\2]", content[:max_length])


def build_prompt(task: Task, context: Sequence[InboxMessage] = ()) -> str:
    subject = sanitize_prompt_content(task.subject, 500)
    description = sanitize_prompt_content(task.description, 10_000)

    context_parts: list[str] = []
    used = 0
    for message in context:
        part = (
            f"[{message.timestamp}] <INBOX_MESSAGE>"
            f"{sanitize_prompt_content(message.content, 5_000)}</INBOX_MESSAGE>"
        )
        if used + len(part) > MAX_CONTEXT_CHARS:
            break
        used += len(part)
        context_parts.append(part)

    def _render(description_text: str) -> str:
        lines = [
            f"TASK {task.id}:",
            f"<TASK_SUBJECT>{subject}</TASK_SUBJECT>",
            "",
            "DESCRIPTION:",
            f"<TASK_DESCRIPTION>{description_text}</TASK_DESCRIPTION>",
        ]
        if context_parts:
            lines.extend(["", "CONTEXT FROM TEAM LEAD:", *context_parts])
        return "\n".join(lines) + "\n"

    prompt = _render(description)
    overflow = len(prompt) - MAX_PROMPT_CHARS
    if overflow > 0:
        prompt = _render(description[: max(0, len(description) - overflow)])
    return prompt


class CommandExecutor:
    """Run a shell-style command template per task.

    Supported placeholders: ``{task_id}``, ``{subject}``, ``{description}``,
    ``{prompt}``, ``{prompt_file}``, ``{worker}`` and ``{team}``. Values are
    shell-quoted before the template is split into argv.
    """

    def __init__(self, command_template: str, *, poll_interval_seconds: float = 0.1) -> None:
        self.command_template = command_template
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: ExecutionRequest) -> ExecutionResult:
        task = request.task
        ensure_dir(request.run_dir)
        prompt = build_prompt(task, request.context)
        prompt_file = request.run_dir / f"{task.id}.prompt.txt"
        prompt_file.write_text(prompt, "utf-8")
        stdout_path = request.run_dir / f"{task.id}.stdout.log"
        stderr_path = request.run_dir / f"{task.id}.stderr.log"

        argv = render_command(
            self.command_template,
            values={
                "task_id": task.id,
                "subject": task.subject,
                "description": task.description,
                "prompt": prompt,
                "prompt_file": str(prompt_file),
                "worker": request.worker_name,
                "team": request.team_name,
            },
        )

        env = os.environ.copy()
        env["TEAM_BRIDGE_TASK_ID"] = task.id
        env["TEAM_BRIDGE_WORKER"] = request.worker_name
        env["TEAM_BRIDGE_TEAM"] = request.team_name

        logger.info("Running task %s: %s", task.id, argv[0])
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                outcome = self._wait(
                    argv=argv,
                    env=env,
                    request=request,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise ExecutorError(f"Command not found: {argv[0]}") from error
        except OSError as error:
            raise ExecutorError(f"Command failed to start: {error}") from error

        if outcome.interrupted:
            return ExecutionResult(
                summary="interrupted by shutdown",
                exit_code=outcome.exit_code,
                interrupted=True,
                prompt_path=prompt_file,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )
        if outcome.timed_out:
            raise ExecutorError(
                f"Task {task.id} timed out after {request.timeout_seconds:g}s",
                timed_out=True,
                exit_code=outcome.exit_code,
            )
        if outcome.exit_code != 0:
            detail = _tail(stderr_path) or _tail(stdout_path) or "no output"
            raise ExecutorError(
                f"Command exited with code {outcome.exit_code}: {detail}",
                exit_code=outcome.exit_code,
            )
        return ExecutionResult(
            summary=_tail(stdout_path) or f"Task {task.id} finished",
            prompt_path=prompt_file,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )

    def _wait(
        self,
        *,
        argv: list[str],
        env: dict[str, str],
        request: ExecutionRequest,
        stdout_handle: IO[str],
        stderr_handle: IO[str],
    ) -> _WaitOutcome:
        process = subprocess.Popen(  # noqa: S603
            argv,
            env=env,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        started = time.monotonic()
        shutdown_deadline: float | None = None

        while True:
            returncode = process.poll()
            if returncode is not None:
                return _WaitOutcome(returncode, timed_out=False, interrupted=False)

            now = time.monotonic()
            if now - started >= request.timeout_seconds:
                _terminate_process(process)
                return _WaitOutcome(TIMEOUT_EXIT_CODE, timed_out=True, interrupted=False)

            if request.should_stop is not None and request.should_stop():
                if shutdown_deadline is None:
                    shutdown_deadline = now + max(0.0, request.graceful_shutdown_seconds)
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    return _WaitOutcome(TIMEOUT_EXIT_CODE, timed_out=False, interrupted=True)

            time.sleep(self.poll_interval_seconds)


def render_command(template: str, *, values: dict[str, str]) -> list[str]:
    stripped = template.strip()
    if not stripped:
        raise ExecutorError("Command template is empty.")
    try:
        rendered = stripped.format(**{key: shlex.quote(values[key]) for key in _PLACEHOLDERS})
    except (KeyError, IndexError) as error:
        raise ExecutorError(f"Unsupported command template placeholder: {error}") from error
    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorError("Command template rendered an empty command.")
    return argv


def _tail(path: Path) -> str:
    try:
        text = path.read_text("utf-8", errors="replace").strip()
    except FileNotFoundError:
        return ""
    return text[-_SUMMARY_CHARS:]


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
