"""
relgraph - Event-sourced social relationship graph.

This package maintains a graph of users, referrals and friendships built
from a relationship event log:
- Events as the only input (register, referral, addfriend, unfriend)
- Kafka/Redpanda log as the source of truth
- An in-memory GraphEngine as the single mutable copy of the graph
- SQLite as the durable projection (users, checkpoints, raw events)
- JSON files on disk for time-travel snapshots

Architecture:
    ┌─────────────┐     ┌─────────────────────────────────────────┐
    │  Producers  │────▶│          Event Log (Kafka/Redpanda)     │
    └─────────────┘     └────────────────────┬────────────────────┘
                                             │
                                             ▼
                                       ┌───────────┐     ┌─────────────┐
                                       │ Processor │────▶│ GraphEngine │
                                       └─────┬─────┘     └─────────────┘
                                             │
                                             ▼
                                       ┌───────────┐     ┌─────────────┐
                                       │  SQLite   │────▶│  Backfill   │
                                       │ (gateway) │     │   pages     │
                                       └───────────┘     └──────┬──────┘
                                                                │
                                                                ▼
                                                         ┌─────────────┐
                                                         │  Snapshots  │
                                                         │  (replay)   │
                                                         └─────────────┘

Invariants:
    - The event log is the source of truth
    - SQLite users and snapshot files are derived views that can be rebuilt
    - The log offset is the only conflict-resolution key (seq)
    - Exactly one Processor mutates the graph

How to change safely:
    - New event types need a parser entry and an engine handler
    - Keep stored user and snapshot formats backward compatible
"""

from ._version import __version__

__all__ = ["__version__"]
