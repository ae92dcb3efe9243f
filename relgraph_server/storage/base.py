"""
Base protocol and types for the persistence gateway.

The gateway is the durable side of the Processor: it stores the flattened
user projection, per-partition checkpoints and the raw event log used for
snapshot replay.

Invariants:
    - Raw events are unique per (topic, partition, offset); re-appending a
      duplicate is a silent no-op
    - Write failures are logged by the gateway and never raised to the
      Processor
    - The gateway only ever sees immutable projections

How to change safely:
    - Protocol changes require updating all implementations
    - StoredEvent.to_dict() is the backfill page format; keep keys stable
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..graph.types import PersistableUserNode


class StorageError(Exception):
    """Base exception for persistence operations."""

    pass


class StorageConnectionError(StorageError):
    """The backing store could not be opened."""

    pass


@dataclass(frozen=True)
class Checkpoint:
    """Last durably applied offset of a partition."""

    topic: str
    partition: int
    offset: int

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass(frozen=True)
class StoredEvent:
    """A raw event as appended to the durable event log.

    Attributes:
        topic: Source topic
        partition: Source partition
        offset: Offset within the partition (the event's seq)
        type: Event type from the payload
        event_timestamp: created_at from the payload, as sent
        ingested_at: ISO-8601 time the Processor saw the event
        payload: The decoded event payload
    """

    topic: str
    partition: int
    offset: int
    type: str
    event_timestamp: str | None
    ingested_at: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "type": self.type,
            "event_timestamp": self.event_timestamp,
            "ingested_at": self.ingested_at,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoredEvent:
        return cls(
            topic=data["topic"],
            partition=data["partition"],
            offset=data["offset"],
            type=data.get("type", ""),
            event_timestamp=data.get("event_timestamp"),
            ingested_at=data.get("ingested_at", ""),
            payload=data.get("payload") or {},
        )


@runtime_checkable
class PersistenceGateway(Protocol):
    """Protocol for the durable store behind the Processor."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the store and create its schema.

        Raises:
            StorageConnectionError: If the store cannot be opened
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def get_checkpoint(self, topic: str, partition: int) -> int | None:
        """Get the last checkpointed offset, or None if never saved."""
        ...

    @abstractmethod
    async def save_checkpoint(self, topic: str, partition: int, offset: int) -> None:
        ...

    @abstractmethod
    async def load_all_users(self) -> list[PersistableUserNode]:
        ...

    @abstractmethod
    async def upsert_users(self, nodes: Sequence[PersistableUserNode]) -> None:
        """Bulk upsert by name. Order is not significant."""
        ...

    @abstractmethod
    async def append_raw_events(self, events: Sequence[StoredEvent]) -> int:
        """Append raw events, ignoring duplicates.

        Returns:
            Number of events actually inserted
        """
        ...

    @abstractmethod
    async def count_raw_events(self) -> int:
        ...

    @abstractmethod
    async def load_raw_events(self, skip: int, limit: int) -> list[StoredEvent]:
        """Page through raw events in insertion order."""
        ...
