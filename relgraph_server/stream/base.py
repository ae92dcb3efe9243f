"""
Base protocol and types for the broker client abstraction.

The Processor consumes the relationship event log through this protocol.
Implementations deliver ordered per-partition batches and let the caller
choose start offsets on every partition assignment.

Invariants:
    - Messages within a MessageBatch are in offset order
    - Batches for a partition are delivered in offset order
    - Offsets are never committed automatically; the caller checkpoints
      through the persistence gateway
    - Unrecoverable consumer errors surface as BrokerFatalError

How to change safely:
    - Protocol changes require updating all implementations
    - Keep seek() usable from inside the assignment callback
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import KafkaConfig


class BrokerError(Exception):
    """Base exception for broker operations."""

    pass


class BrokerConnectionError(BrokerError):
    """Connection to the broker failed."""

    pass


class BrokerFatalError(BrokerError):
    """The consumer hit an error it cannot recover from in-process."""

    pass


@dataclass(frozen=True)
class StreamMessage:
    """One message from the log.

    Attributes:
        offset: Offset within the partition
        value: Raw payload (None or empty for tombstones/noise)
        key: Optional message key
        timestamp_ms: Broker timestamp in milliseconds
    """

    offset: int
    value: bytes | None
    key: bytes | None = None
    timestamp_ms: int | None = None


@dataclass
class MessageBatch:
    """An ordered slice of one partition."""

    topic: str
    partition: int
    messages: list[StreamMessage] = field(default_factory=list)

    @property
    def last_offset(self) -> int | None:
        return self.messages[-1].offset if self.messages else None

    def __len__(self) -> int:
        return len(self.messages)

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}[{len(self.messages)}]"


# Called with (topic, partitions) whenever partitions are assigned to us.
AssignmentCallback = Callable[[str, list[int]], Awaitable[None]]


@runtime_checkable
class BrokerClient(Protocol):
    """Protocol for log consumers.

    Example:
        >>> broker = KafkaBrokerClient(config)
        >>> await broker.connect()
        >>> earliest = await broker.fetch_earliest_offsets("events")
        >>> await broker.subscribe("events", on_assign)
        >>> async for batch in broker.batches():
        ...     handle(batch)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the broker.

        Raises:
            BrokerConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop consuming and release resources."""
        ...

    @abstractmethod
    async def fetch_earliest_offsets(self, topic: str) -> dict[int, int]:
        """Get the earliest retained offset for every partition of a topic."""
        ...

    @abstractmethod
    async def subscribe(self, topic: str, on_assign: AssignmentCallback) -> None:
        """Join the consumer group for a topic.

        No automatic offset reset is configured: on_assign must seek every
        assigned partition before consumption starts.
        """
        ...

    @abstractmethod
    def seek(self, topic: str, partition: int, offset: int) -> None:
        """Set the next offset to be delivered for a partition."""
        ...

    @abstractmethod
    def batches(self) -> AsyncIterator[MessageBatch]:
        """Yield per-partition batches until closed.

        Raises:
            BrokerFatalError: On unrecoverable consumer errors
        """
        ...

    @abstractmethod
    def acknowledge(self, topic: str, partition: int, offset: int) -> None:
        """Mark a message as resolved by the caller."""
        ...

    @abstractmethod
    async def heartbeat(self) -> None:
        """Signal liveness to the group coordinator."""
        ...

    @abstractmethod
    def is_assigned(self, topic: str, partition: int) -> bool:
        """Whether the partition is still assigned to this consumer."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the broker."""
        ...


def create_broker_client(config: KafkaConfig) -> BrokerClient:
    """Factory function to create a broker client from configuration."""
    from .kafka import KafkaBrokerClient

    return KafkaBrokerClient(config)
