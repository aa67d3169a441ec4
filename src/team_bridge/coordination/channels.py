"""Append-only JSONL channels read through persisted byte-offset cursors.

Each channel has exactly one writer: the lead writes inboxes, a worker
writes its own outbox. Only that writer rotates the log, and rotation and
cursor reads share the channel lock, so the reader cursor can be shifted
back by the number of bytes dropped without re-delivering anything.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, TypeVar

from team_bridge.coordination.fsutils import (
    append_line,
    atomic_write_bytes,
    atomic_write_json,
    read_json_object,
    remove_file,
)
from team_bridge.coordination.locking import (
    ProcessProbe,
    acquire_lock,
    acquire_lock_wait,
    held_lock,
    is_pid_alive,
)
from team_bridge.coordination.models import InboxMessage, OutboxMessage
from team_bridge.coordination.paths import TeamPaths, channel_lock_path, cursor_path

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 10 * 1024 * 1024
CHANNEL_LOCK_STALE_SECONDS = 30.0

MessageT = TypeVar("MessageT", InboxMessage, OutboxMessage)


@dataclass(slots=True)
class RotationResult:
    kept_lines: int
    dropped_lines: int
    dropped_bytes: int
    size_before: int
    size_after: int


def retained_lines(
    lines: list[bytes],
    *,
    size: int,
    max_lines: int | None = None,
    max_bytes: int | None = None,
) -> list[bytes] | None:
    """Pick the newest lines to keep, or ``None`` when no limit is exceeded.

    Over ``max_lines`` the newest ``max_lines // 2`` survive; over ``max_bytes``
    the newest half survives. At least one line is always kept.
    """

    if max_lines is not None and len(lines) > max_lines:
        return lines[-max(1, max_lines // 2) :]
    if max_bytes is not None and size > max_bytes and lines:
        return lines[-max(1, len(lines) // 2) :]
    return None


class Channel(Generic[MessageT]):
    """One JSONL log plus the cursor of its single reader."""

    def __init__(
        self,
        log_path: Path,
        *,
        parse: Callable[[object], MessageT | None],
        stale_lock_seconds: float = CHANNEL_LOCK_STALE_SECONDS,
        is_process_alive: ProcessProbe = is_pid_alive,
    ) -> None:
        self.log_path = log_path
        self.cursor_path = cursor_path(log_path)
        self.lock_path = channel_lock_path(log_path)
        self._parse = parse
        self.stale_lock_seconds = stale_lock_seconds
        self.is_process_alive = is_process_alive

    def append(self, message: MessageT) -> None:
        append_line(self.log_path, json.dumps(message.to_dict(), ensure_ascii=False))

    def read_new(self) -> list[MessageT]:
        """Return complete messages appended since the last call.

        A busy channel lock yields an empty batch; the next poll retries.
        """

        handle = acquire_lock(
            self.lock_path,
            worker_name="reader",
            stale_after_seconds=self.stale_lock_seconds,
            is_process_alive=self.is_process_alive,
        )
        if handle is None:
            logger.debug("Channel %s is locked, skipping read", self.log_path)
            return []
        with held_lock(handle):
            return self._read_new_locked()

    def read_all(self) -> list[MessageT]:
        """Every parseable message; malformed lines are skipped, cursor untouched."""

        try:
            data = self.log_path.read_bytes()
        except FileNotFoundError:
            return []
        messages: list[MessageT] = []
        for line in data.splitlines():
            message = self._decode(line)
            if message is not None:
                messages.append(message)
        return messages

    def tail(self, limit: int) -> list[MessageT]:
        if limit <= 0:
            return []
        return self.read_all()[-limit:]

    def cursor(self) -> int:
        payload = read_json_object(self.cursor_path)
        if payload is None:
            return 0
        value = payload.get("bytes_read")
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            logger.warning("Corrupt cursor %s, restarting from 0", self.cursor_path)
            return 0
        return value

    def reset_cursor(self) -> None:
        self._write_cursor(0)

    def size(self) -> int:
        try:
            return self.log_path.stat().st_size
        except FileNotFoundError:
            return 0

    def rotate_if_needed(
        self,
        *,
        max_lines: int | None = None,
        max_bytes: int | None = None,
    ) -> RotationResult | None:
        """Trim the log to its newest entries; callers record the audit event."""

        handle = acquire_lock_wait(
            self.lock_path,
            attempts=20,
            interval_seconds=0.05,
            worker_name="rotator",
            stale_after_seconds=self.stale_lock_seconds,
            is_process_alive=self.is_process_alive,
        )
        if handle is None:
            logger.debug("Channel %s is locked, skipping rotation", self.log_path)
            return None
        with held_lock(handle):
            try:
                data = self.log_path.read_bytes()
            except FileNotFoundError:
                return None
            lines = data.splitlines(keepends=True)
            kept = retained_lines(lines, size=len(data), max_lines=max_lines, max_bytes=max_bytes)
            if kept is None:
                return None

            new_data = b"".join(kept)
            dropped_bytes = len(data) - len(new_data)
            atomic_write_bytes(self.log_path, new_data)
            if self.cursor_path.exists():
                self._write_cursor(max(0, self.cursor() - dropped_bytes))

        logger.info(
            "Rotated %s: kept %s of %s lines",
            self.log_path,
            len(kept),
            len(lines),
        )
        return RotationResult(
            kept_lines=len(kept),
            dropped_lines=len(lines) - len(kept),
            dropped_bytes=dropped_bytes,
            size_before=len(data),
            size_after=len(new_data),
        )

    def clear(self) -> None:
        remove_file(self.log_path)
        remove_file(self.cursor_path)

    def _read_new_locked(self) -> list[MessageT]:
        offset = self.cursor()
        size = self.size()
        if offset > size:
            logger.warning(
                "Channel %s shrank below cursor (%s > %s), rereading from start",
                self.log_path,
                offset,
                size,
            )
            offset = 0
            self._write_cursor(0)
        if offset == size:
            return []

        with self.log_path.open("rb") as fh:
            fh.seek(offset)
            chunk = fh.read(min(size - offset, MAX_READ_BYTES))

        end = chunk.rfind(b"\n")
        if end < 0:
            return []

        messages: list[MessageT] = []
        consumed = 0
        for raw_line in chunk[: end + 1].split(b"\n")[:-1]:
            line_length = len(raw_line) + 1
            if not raw_line.strip():
                consumed += line_length
                continue
            try:
                payload = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning(
                    "Malformed line in %s at byte %s, stopping read",
                    self.log_path,
                    offset + consumed,
                )
                break
            message = self._parse(payload)
            if message is None:
                logger.warning("Skipping unrecognised message in %s: %r", self.log_path, payload)
            else:
                messages.append(message)
            consumed += line_length

        if consumed:
            self._write_cursor(offset + consumed)
        return messages

    def _decode(self, line: bytes) -> MessageT | None:
        if not line.strip():
            return None
        try:
            payload: Any = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None
        return self._parse(payload)

    def _write_cursor(self, value: int) -> None:
        atomic_write_json(self.cursor_path, {"bytes_read": value})


class InboxChannel(Channel[InboxMessage]):
    """Lead -> worker messages."""

    def __init__(self, paths: TeamPaths, worker_name: str, **kwargs: Any) -> None:
        super().__init__(paths.inbox_path(worker_name), parse=InboxMessage.from_dict, **kwargs)
        self.worker_name = worker_name


class OutboxChannel(Channel[OutboxMessage]):
    """Worker -> lead messages."""

    def __init__(self, paths: TeamPaths, worker_name: str, **kwargs: Any) -> None:
        super().__init__(paths.outbox_path(worker_name), parse=OutboxMessage.from_dict, **kwargs)
        self.worker_name = worker_name


def cleanup_worker_files(paths: TeamPaths, worker_name: str) -> None:
    """Drop a departed worker's channels, cursors and pending signals."""

    InboxChannel(paths, worker_name).clear()
    OutboxChannel(paths, worker_name).clear()
    remove_file(paths.shutdown_signal_path(worker_name))
    remove_file(paths.drain_signal_path(worker_name))
