"""
Graph module for relgraph - the in-memory relationship graph.

This module handles:
- Parsing connection events (register, referral, addfriend, unfriend)
- Applying sequenced events idempotently to user nodes
- Referral point propagation up the referral chain
- Dirty tracking for incremental persistence
- Full export/import for bootstrap and snapshots

The engine is pure logic with no I/O. It can be rebuilt at any time by
replaying the raw event log.

Invariants:
    - The log-derived seq is the only conflict-resolution key
    - Rejections are results, never exceptions
"""

from .engine import DEFAULT_REFERRAL_POINT_DEPTH, GraphEngine
from .events import (
    EVENT_TYPES,
    AddFriendEvent,
    ConnectionEvent,
    EventParseError,
    ReferralEvent,
    RegisterEvent,
    SequencedEvent,
    UnfriendEvent,
    UnknownEvent,
    event_from_dict,
    parse_event,
)
from .types import IngestResult, PersistableUserNode, UserNode

__all__ = [
    "GraphEngine",
    "DEFAULT_REFERRAL_POINT_DEPTH",
    "IngestResult",
    "PersistableUserNode",
    "UserNode",
    "ConnectionEvent",
    "SequencedEvent",
    "RegisterEvent",
    "ReferralEvent",
    "AddFriendEvent",
    "UnfriendEvent",
    "UnknownEvent",
    "EventParseError",
    "EVENT_TYPES",
    "event_from_dict",
    "parse_event",
]
