"""Filesystem primitives shared by every coordination component."""

from __future__ import annotations

import json
import os
import re
import uuid
from pathlib import Path
from typing import Any

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
_TASK_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")
FILE_MODE = 0o600
DIR_MODE = 0o700


class TeamBridgeError(Exception):
    """Base class for coordination errors surfaced to callers."""


class PathEscapeError(TeamBridgeError, ValueError):
    """Raised when a name or path would resolve outside its base directory."""


def validate_name(value: str, *, kind: str = "name") -> str:
    """Return a team/worker name unchanged or reject it."""

    if not isinstance(value, str) or not _NAME_RE.match(value):
        raise PathEscapeError(f"Invalid {kind}: {value!r} contains unsafe characters")
    return value


def validate_task_id(task_id: str) -> str:
    """Return a task id unchanged or reject it."""

    if (
        not isinstance(task_id, str)
        or not _TASK_ID_RE.match(task_id)
        or task_id in {".", ".."}
    ):
        raise PathEscapeError(f"Invalid task ID: {task_id!r} contains unsafe characters")
    return task_id


def validate_resolved_path(path: Path, base: Path) -> Path:
    """Resolve symlinks and ensure ``path`` stays inside ``base``."""

    resolved = path.resolve()
    resolved_base = base.resolve()
    if resolved != resolved_base and not resolved.is_relative_to(resolved_base):
        raise PathEscapeError(
            f"Path traversal detected: {path} resolves outside {resolved_base}",
        )
    return resolved


def ensure_dir(path: Path) -> None:
    path.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to a temp sibling and rename it into place."""

    ensure_dir(path.parent)
    tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}.{uuid.uuid4().hex[:8]}")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def atomic_write_json(path: Path, value: Any) -> None:
    atomic_write_text(path, json.dumps(value, ensure_ascii=False, indent=2) + "\n")


def read_json(path: Path) -> Any | None:
    """Load a JSON document; missing or unparsable files read as ``None``."""

    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError):
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def read_json_object(path: Path) -> dict[str, Any] | None:
    payload = read_json(path)
    if not isinstance(payload, dict):
        return None
    return payload


def append_line(path: Path, line: str) -> None:
    """Append one newline-terminated record with a single write call."""

    ensure_dir(path.parent)
    data = (line.rstrip("\n") + "\n").encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, FILE_MODE)
    try:
        os.write(fd, data)
    finally:
        os.close(fd)


def remove_file(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def is_temp_file(name: str) -> bool:
    return ".tmp." in name
