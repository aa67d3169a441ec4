"""Per-worker heartbeat files; liveness is decided fail-closed."""

from __future__ import annotations

import logging
from datetime import datetime

from team_bridge.coordination.fsutils import (
    atomic_write_json,
    is_temp_file,
    read_json,
    remove_file,
)
from team_bridge.coordination.models import Heartbeat, utc_now
from team_bridge.coordination.paths import TeamPaths

logger = logging.getLogger(__name__)

_SUFFIX = ".heartbeat.json"


class HeartbeatMonitor:
    """Workers write their own heartbeat; the lead only reads."""

    def __init__(self, paths: TeamPaths) -> None:
        self.paths = paths

    def write_heartbeat(self, heartbeat: Heartbeat) -> None:
        atomic_write_json(self.paths.heartbeat_path(heartbeat.worker_name), heartbeat.to_dict())

    def read_heartbeat(self, worker_name: str) -> Heartbeat | None:
        return Heartbeat.from_dict(read_json(self.paths.heartbeat_path(worker_name)))

    def delete_heartbeat(self, worker_name: str) -> bool:
        return remove_file(self.paths.heartbeat_path(worker_name))

    def heartbeat_age(self, worker_name: str, *, now: datetime | None = None) -> float | None:
        """Seconds since the last poll, or ``None`` when unknown."""

        heartbeat = self.read_heartbeat(worker_name)
        if heartbeat is None:
            return None
        last_poll = heartbeat.last_poll_time
        if last_poll is None:
            return None
        return ((now or utc_now()) - last_poll).total_seconds()

    def is_worker_alive(
        self,
        worker_name: str,
        max_age_seconds: float,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Missing, corrupt or unparsable heartbeats count as dead.

        A timestamp slightly in the future (clock skew) still counts as alive.
        """

        if max_age_seconds <= 0:
            return False
        age = self.heartbeat_age(worker_name, now=now)
        if age is None:
            logger.debug("No usable heartbeat for %s", worker_name)
            return False
        return age < max_age_seconds

    def list_heartbeats(self) -> list[Heartbeat]:
        directory = self.paths.state_dir
        if not directory.is_dir():
            return []
        heartbeats: list[Heartbeat] = []
        for entry in sorted(directory.iterdir()):
            if is_temp_file(entry.name) or not entry.name.endswith(_SUFFIX):
                continue
            heartbeat = Heartbeat.from_dict(read_json(entry))
            if heartbeat is not None:
                heartbeats.append(heartbeat)
        return heartbeats
