"""Team membership file and a small caller-owned TTL cache."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from team_bridge.coordination.fsutils import atomic_write_json, read_json, validate_name
from team_bridge.coordination.locking import LockHandle, acquire_lock_wait, held_lock
from team_bridge.coordination.models import WorkerMember
from team_bridge.coordination.paths import TeamPaths

logger = logging.getLogger(__name__)

ValueT = TypeVar("ValueT")


@dataclass(slots=True)
class _CacheEntry(Generic[ValueT]):
    value: ValueT
    expires_at: float


@dataclass(slots=True)
class TtlCache(Generic[ValueT]):
    """Values expire ``ttl_seconds`` after they were stored."""

    ttl_seconds: float
    clock: Callable[[], float] = time.monotonic
    _entries: dict[str, _CacheEntry[ValueT]] = field(default_factory=dict, init=False, repr=False)

    def get(self, key: str) -> ValueT | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.value

    def put(self, key: str, value: ValueT) -> None:
        self._entries[key] = _CacheEntry(value=value, expires_at=self.clock() + self.ttl_seconds)

    def get_or_load(self, key: str, loader: Callable[[], ValueT]) -> ValueT:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.put(key, value)
        return value

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)


class WorkerRegistry:
    """Registered workers of one team, stored as ``state/{team}/workers.json``."""

    def __init__(self, paths: TeamPaths) -> None:
        self.paths = paths

    def list_workers(self) -> list[WorkerMember]:
        payload = read_json(self.paths.registry_path)
        if not isinstance(payload, dict):
            return []
        raw_workers = payload.get("workers")
        if not isinstance(raw_workers, list):
            return []
        members = [WorkerMember.from_dict(item) for item in raw_workers]
        return sorted((member for member in members if member is not None), key=lambda m: m.name)

    def get(self, name: str) -> WorkerMember | None:
        for member in self.list_workers():
            if member.name == name:
                return member
        return None

    def register(self, member: WorkerMember) -> WorkerMember:
        validate_name(member.name, kind="worker name")
        with self._locked():
            members = {existing.name: existing for existing in self.list_workers()}
            members[member.name] = member
            self._write(list(members.values()))
        logger.info("Registered worker %s", member.name)
        return member

    def unregister(self, name: str) -> bool:
        with self._locked():
            members = self.list_workers()
            remaining = [member for member in members if member.name != name]
            if len(remaining) == len(members):
                return False
            self._write(remaining)
        logger.info("Unregistered worker %s", name)
        return True

    def _write(self, members: list[WorkerMember]) -> None:
        atomic_write_json(
            self.paths.registry_path,
            {"workers": [member.to_dict() for member in sorted(members, key=lambda m: m.name)]},
        )

    def _locked(self) -> AbstractContextManager[LockHandle | None]:
        handle = acquire_lock_wait(
            self.paths.registry_lock_path,
            attempts=20,
            interval_seconds=0.05,
            worker_name="registry",
        )
        if handle is None:
            logger.warning("Could not lock worker registry, writing without lock")
        return held_lock(handle)
