"""Coordination primitives shared by the lead and its workers.

Everything lives under one root directory on a shared filesystem:
task records guarded by ``O_EXCL`` lock files, per-worker heartbeats,
append-only inbox/outbox channels read through byte-offset cursors,
shutdown/drain signal files and a team-wide audit log. No daemon owns
the tree; any process may crash at any point and the others recover
from what is on disk.
"""
