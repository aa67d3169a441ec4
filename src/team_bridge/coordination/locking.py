"""Exclusive-create lock files.

The lock is a plain file created with ``O_CREAT | O_EXCL``: the kernel lets
exactly one opener succeed, so no application-level arbitration is needed.
A lock whose owner died is reaped once its age passes the stale threshold.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from team_bridge.coordination.fsutils import FILE_MODE, ensure_dir, read_json_object
from team_bridge.coordination.models import utc_now

logger = logging.getLogger(__name__)

ProcessProbe = Callable[[int], bool]

DEFAULT_STALE_LOCK_SECONDS = 30.0


def is_pid_alive(pid: int) -> bool:
    """Probe a process with signal 0; EPERM still means it exists."""

    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as error:
        return error.errno == errno.EPERM
    return True


@dataclass(slots=True)
class LockHandle:
    """Open lock file; pass back to :func:`release_lock`."""

    fd: int
    path: Path


def acquire_lock(
    path: Path,
    *,
    worker_name: str = "",
    stale_after_seconds: float = DEFAULT_STALE_LOCK_SECONDS,
    is_process_alive: ProcessProbe = is_pid_alive,
) -> LockHandle | None:
    """Try once (plus one retry after reaping a stale lock) to create ``path``.

    Returns ``None`` when the lock is held by a live owner, including the case
    where another claimant wins the race right after a stale lock was reaped.
    """

    ensure_dir(path.parent)
    for attempt in range(2):
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, FILE_MODE)
        except FileExistsError:
            if (
                attempt == 0
                and is_lock_stale(
                    path,
                    stale_after_seconds=stale_after_seconds,
                    is_process_alive=is_process_alive,
                )
                and reap_stale_lock(
                    path,
                    stale_after_seconds=stale_after_seconds,
                    is_process_alive=is_process_alive,
                )
            ):
                continue
            return None

        payload = {
            "pid": os.getpid(),
            "worker_name": worker_name,
            "created_at": utc_now().isoformat(),
        }
        os.write(fd, json.dumps(payload).encode("utf-8"))
        return LockHandle(fd=fd, path=path)
    return None


def acquire_lock_wait(
    path: Path,
    *,
    attempts: int,
    interval_seconds: float,
    worker_name: str = "",
    stale_after_seconds: float = DEFAULT_STALE_LOCK_SECONDS,
    is_process_alive: ProcessProbe = is_pid_alive,
) -> LockHandle | None:
    """Bounded retry around :func:`acquire_lock`."""

    for attempt in range(max(1, attempts)):
        handle = acquire_lock(
            path,
            worker_name=worker_name,
            stale_after_seconds=stale_after_seconds,
            is_process_alive=is_process_alive,
        )
        if handle is not None:
            return handle
        if attempt + 1 < attempts:
            time.sleep(interval_seconds)
    return None


def release_lock(handle: LockHandle) -> None:
    try:
        os.close(handle.fd)
    except OSError:
        pass
    handle.path.unlink(missing_ok=True)


@contextmanager
def held_lock(handle: LockHandle | None) -> Iterator[LockHandle | None]:
    """Release ``handle`` (if any) when the block exits."""

    try:
        yield handle
    finally:
        if handle is not None:
            release_lock(handle)


def is_lock_stale(
    path: Path,
    *,
    stale_after_seconds: float,
    is_process_alive: ProcessProbe = is_pid_alive,
) -> bool:
    """A lock is stale when it is old enough AND its owner is not running."""

    try:
        mtime = path.stat().st_mtime
    except FileNotFoundError:
        return False
    if time.time() - mtime < stale_after_seconds:
        return False

    payload = read_json_object(path)
    if payload is not None:
        pid = payload.get("pid")
        if isinstance(pid, int) and is_process_alive(pid):
            return False
    return True


def reap_stale_lock(
    path: Path,
    *,
    stale_after_seconds: float,
    is_process_alive: ProcessProbe = is_pid_alive,
) -> bool:
    """Move a stale lock aside; ``True`` when ``path`` is free to be recreated.

    The lock is renamed to a unique tombstone before it is deleted, so of two
    reapers racing on the same stale lock only one takes it. A reaper that
    finds a fresh lock in its tombstone (a faster reaper already replaced the
    stale one) links it back into place and reports contention.
    """

    tombstone = path.with_name(f"{path.name}.reaped.{os.getpid()}.{uuid.uuid4().hex}")
    try:
        os.rename(path, tombstone)
    except FileNotFoundError:
        return True
    if is_lock_stale(
        tombstone,
        stale_after_seconds=stale_after_seconds,
        is_process_alive=is_process_alive,
    ):
        logger.info("Reaped stale lock %s", path)
        tombstone.unlink(missing_ok=True)
        return True

    try:
        os.link(tombstone, path)
    except FileExistsError:
        logger.warning("Lock %s was re-created while restoring it after a reap race", path)
    tombstone.unlink(missing_ok=True)
    return False
