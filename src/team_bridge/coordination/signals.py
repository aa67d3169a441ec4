"""Shutdown and drain request files.

A signal stays on disk until it has been fully processed: the worker deletes
it after acting, or the lead removes it when the matching ack arrives.
"""

from __future__ import annotations

import uuid
from pathlib import Path

from team_bridge.coordination.fsutils import atomic_write_json, read_json, remove_file
from team_bridge.coordination.models import ControlSignal, SignalKind
from team_bridge.coordination.paths import TeamPaths


class SignalBoard:
    def __init__(self, paths: TeamPaths) -> None:
        self.paths = paths

    def request(self, kind: SignalKind, worker_name: str, reason: str) -> ControlSignal:
        signal = ControlSignal(kind=kind, request_id=uuid.uuid4().hex, reason=reason)
        atomic_write_json(self._path(kind, worker_name), signal.to_dict())
        return signal

    def request_shutdown(self, worker_name: str, reason: str = "") -> ControlSignal:
        return self.request(SignalKind.SHUTDOWN, worker_name, reason)

    def request_drain(self, worker_name: str, reason: str = "") -> ControlSignal:
        return self.request(SignalKind.DRAIN, worker_name, reason)

    def read(self, kind: SignalKind, worker_name: str) -> ControlSignal | None:
        """Pending signal, or ``None``. An unreadable file is not a signal."""

        return ControlSignal.from_dict(read_json(self._path(kind, worker_name)), kind=kind)

    def is_pending(self, kind: SignalKind, worker_name: str) -> bool:
        return self._path(kind, worker_name).exists()

    def clear(self, kind: SignalKind, worker_name: str) -> bool:
        return remove_file(self._path(kind, worker_name))

    def clear_if_matches(self, kind: SignalKind, worker_name: str, request_id: str | None) -> bool:
        """Remove a pending signal only when its request id matches the ack."""

        pending = self.read(kind, worker_name)
        if pending is None or request_id is None or pending.request_id != request_id:
            return False
        return self.clear(kind, worker_name)

    def _path(self, kind: SignalKind, worker_name: str) -> Path:
        if kind == SignalKind.SHUTDOWN:
            return self.paths.shutdown_signal_path(worker_name)
        return self.paths.drain_signal_path(worker_name)
