"""Restart bookkeeping for workers that died, with exponential backoff."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from team_bridge.coordination.fsutils import atomic_write_json, read_json, remove_file
from team_bridge.coordination.locking import ProcessProbe, is_pid_alive
from team_bridge.coordination.models import (
    Heartbeat,
    RestartPolicy,
    RestartState,
    parse_timestamp,
    utc_now,
)
from team_bridge.coordination.paths import TeamPaths

logger = logging.getLogger(__name__)


def compute_backoff(policy: RestartPolicy, restart_count: int) -> float:
    """``min(base * multiplier ** count, max)`` in seconds."""

    delay = policy.backoff_base_seconds * policy.backoff_multiplier**restart_count
    return float(min(delay, policy.backoff_max_seconds))


class RestartSupervisor:
    """Decides whether a dead worker may be respawned and when."""

    def __init__(
        self,
        paths: TeamPaths,
        policy: RestartPolicy | None = None,
        *,
        is_process_alive: ProcessProbe = is_pid_alive,
    ) -> None:
        self.paths = paths
        self.policy = policy or RestartPolicy()
        self.is_process_alive = is_process_alive

    def read_restart_state(self, worker_name: str) -> RestartState | None:
        return RestartState.from_dict(read_json(self.paths.restart_path(worker_name)))

    def should_restart(self, worker_name: str) -> float | None:
        """Backoff delay before the next restart, or ``None`` once exhausted."""

        state = self.read_restart_state(worker_name)
        count = state.restart_count if state is not None else 0
        if count >= self.policy.max_restarts:
            return None
        return compute_backoff(self.policy, count)

    def record_restart(self, worker_name: str, *, now: datetime | None = None) -> RestartState:
        previous = self.read_restart_state(worker_name)
        count = (previous.restart_count if previous is not None else 0) + 1
        state = RestartState(
            worker_name=worker_name,
            restart_count=count,
            last_restart_at=(now or utc_now()).isoformat(),
            next_backoff_seconds=compute_backoff(self.policy, count),
        )
        atomic_write_json(self.paths.restart_path(worker_name), state.to_dict())
        logger.info("Recorded restart %s for worker %s", count, worker_name)
        return state

    def clear_restart_state(self, worker_name: str) -> bool:
        return remove_file(self.paths.restart_path(worker_name))

    def is_restart_due(self, worker_name: str, *, now: datetime | None = None) -> bool:
        state = self.read_restart_state(worker_name)
        if state is None:
            return True
        last = parse_timestamp(state.last_restart_at)
        if last is None:
            return True
        return (now or utc_now()) >= last + timedelta(seconds=state.next_backoff_seconds)

    def needs_restart(self, heartbeat: Heartbeat | None, *, alive: bool) -> bool:
        """A worker needs a restart when its heartbeat is dead and its process gone."""

        if alive:
            return False
        if heartbeat is None:
            return True
        return not self.is_process_alive(heartbeat.pid)
