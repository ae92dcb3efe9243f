"""
CLI tools for relgraph administration.

This module provides command-line tools for:
- snapshot: Backfill, replay and query time-travel snapshots

Invariants:
    - Tools work offline (no running processor required)
    - Operations are idempotent where possible
"""

from .snapshot_cli import SnapshotCLI

__all__ = ["SnapshotCLI"]
