"""
Snapshot module for relgraph - time travel over the event log.

This module handles:
- Backfilling the raw event log into resumable page files
- Replaying pages into interval-spaced graph snapshots
- Nearest-snapshot lookup by instant
- Leaderboards between two snapshots

Snapshots are derived data: deleting the snapshot directory and running
a bootstrap rebuilds it from the event log.
"""

from .backfill import BackfillResult, EventLogBackfill
from .delta import Leaderboard, RankedUser, compute_leaderboard, network_strength
from .store import (
    GraphSnapshot,
    ReplayResult,
    SnapshotError,
    SnapshotStore,
    format_snapshot_name,
    parse_snapshot_name,
    parse_timestamp,
)

__all__ = [
    "EventLogBackfill",
    "BackfillResult",
    "SnapshotStore",
    "GraphSnapshot",
    "ReplayResult",
    "SnapshotError",
    "format_snapshot_name",
    "parse_snapshot_name",
    "parse_timestamp",
    "Leaderboard",
    "RankedUser",
    "compute_leaderboard",
    "network_strength",
]
