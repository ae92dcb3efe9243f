"""
Persistence module for relgraph - the durable side of the Processor.

This module handles:
- The flattened user projection (bulk upsert by name)
- Per-partition checkpoints for restart/rebalance resume
- The raw event log feeding snapshot backfill and replay

The stored users are a derived view of the event log and can be rebuilt
by replaying it.

Invariants:
    - Duplicate raw events are ignored (idempotent append)
    - Write failures are logged, never raised to the Processor
"""

from .base import (
    Checkpoint,
    PersistenceGateway,
    StorageConnectionError,
    StorageError,
    StoredEvent,
)
from .memory import InMemoryGateway
from .sqlite_store import SqliteGateway

__all__ = [
    "PersistenceGateway",
    "Checkpoint",
    "StoredEvent",
    "StorageError",
    "StorageConnectionError",
    "SqliteGateway",
    "InMemoryGateway",
]
