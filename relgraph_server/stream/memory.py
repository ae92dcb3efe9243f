"""
In-memory broker client implementation for testing.

This module provides a simple in-memory log for:
- Unit tests
- Integration tests
- Local development without a Kafka cluster

Invariants:
    - All data is lost on process exit
    - Same delivery contract as KafkaBrokerClient: ordered per-partition
      batches, explicit positioning on assignment, no auto reset
    - A partition without a position when consumption starts is a fatal error

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the BrokerClient protocol
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .base import (
    AssignmentCallback,
    BrokerConnectionError,
    BrokerFatalError,
    MessageBatch,
    StreamMessage,
)

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    """In-memory partition storage."""

    messages: list[StreamMessage] = field(default_factory=list)
    earliest: int = 0
    next_offset: int = 0


class InMemoryBrokerClient:
    """In-memory implementation of BrokerClient for testing.

    Example:
        >>> broker = InMemoryBrokerClient(num_partitions=2)
        >>> broker.produce("events", 0, b'{"type": "register", "name": "alice"}')
        >>> await broker.connect()
    """

    def __init__(self, num_partitions: int = 1, max_batch_size: int = 100) -> None:
        """Initialize in-memory broker.

        Args:
            num_partitions: Number of partitions per topic
            max_batch_size: Maximum messages per delivered batch
        """
        self.num_partitions = num_partitions
        self.max_batch_size = max_batch_size
        self._topics: dict[str, dict[int, InMemoryPartition]] = {}
        self._positions: dict[tuple[str, int], int] = {}
        self._acknowledged: dict[tuple[str, int], int] = {}
        self._assigned: set[tuple[str, int]] = set()
        self._subscription: tuple[str, AssignmentCallback] | None = None
        self._pending_assignment = False
        self._connected = False
        self._closed = False
        self._fatal: Exception | None = None
        self._new_messages = asyncio.Event()
        self.heartbeats = 0
        self.seeks: list[tuple[str, int, int]] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        self._closed = False
        logger.debug("InMemoryBrokerClient connected")

    async def close(self) -> None:
        self._closed = True
        self._connected = False
        self._assigned.clear()
        self._new_messages.set()
        logger.debug("InMemoryBrokerClient closed")

    def _partitions(self, topic: str) -> dict[int, InMemoryPartition]:
        if topic not in self._topics:
            self._topics[topic] = {i: InMemoryPartition() for i in range(self.num_partitions)}
        return self._topics[topic]

    async def fetch_earliest_offsets(self, topic: str) -> dict[int, int]:
        if not self._connected:
            raise BrokerConnectionError("Not connected")
        return {p: part.earliest for p, part in self._partitions(topic).items()}

    async def subscribe(self, topic: str, on_assign: AssignmentCallback) -> None:
        if not self._connected:
            raise BrokerConnectionError("Not connected")
        self._subscription = (topic, on_assign)
        self._pending_assignment = True

    def seek(self, topic: str, partition: int, offset: int) -> None:
        self._positions[(topic, partition)] = offset
        self.seeks.append((topic, partition, offset))

    async def _assign(self) -> None:
        assert self._subscription is not None
        topic, on_assign = self._subscription
        partitions = sorted(self._partitions(topic))
        self._assigned = {(topic, p) for p in partitions}
        self._pending_assignment = False
        await on_assign(topic, partitions)

    async def batches(self) -> AsyncIterator[MessageBatch]:
        if not self._connected or self._subscription is None:
            raise BrokerConnectionError("Not subscribed")

        while not self._closed:
            if self._fatal is not None:
                error, self._fatal = self._fatal, None
                raise BrokerFatalError(str(error)) from error

            if self._pending_assignment:
                await self._assign()

            delivered = False
            for topic, partition in sorted(self._assigned):
                batch = self._next_batch(topic, partition)
                if batch is None:
                    continue
                delivered = True
                yield batch
                if self._closed or self._pending_assignment:
                    break

            if not delivered and not self._closed:
                self._new_messages.clear()
                try:
                    await asyncio.wait_for(self._new_messages.wait(), timeout=0.05)
                except asyncio.TimeoutError:
                    pass

    def _next_batch(self, topic: str, partition: int) -> MessageBatch | None:
        key = (topic, partition)
        if key not in self._positions:
            raise BrokerFatalError(f"No position for {topic}:{partition} and no offset reset policy")

        part = self._partitions(topic)[partition]
        position = self._positions[key]
        if position < part.earliest:
            raise BrokerFatalError(f"Offset {position} out of range for {topic}:{partition}")

        start = position - part.earliest
        messages = part.messages[start : start + self.max_batch_size]
        if not messages:
            return None

        self._positions[key] = messages[-1].offset + 1
        return MessageBatch(topic=topic, partition=partition, messages=list(messages))

    def acknowledge(self, topic: str, partition: int, offset: int) -> None:
        self._acknowledged[(topic, partition)] = offset

    async def heartbeat(self) -> None:
        self.heartbeats += 1

    def is_assigned(self, topic: str, partition: int) -> bool:
        return (topic, partition) in self._assigned

    # Testing helpers

    def produce(self, topic: str, partition: int, value: bytes | str | None) -> int:
        """Append a message to a partition and return its offset."""
        if isinstance(value, str):
            value = value.encode("utf-8")
        part = self._partitions(topic)[partition]
        offset = part.next_offset
        part.messages.append(
            StreamMessage(offset=offset, value=value, timestamp_ms=int(time.time() * 1000))
        )
        part.next_offset += 1
        self._new_messages.set()
        return offset

    def expire_before(self, topic: str, partition: int, offset: int) -> None:
        """Drop messages below offset, as retention would."""
        part = self._partitions(topic)[partition]
        drop = max(0, min(offset, part.next_offset) - part.earliest)
        del part.messages[:drop]
        part.earliest += drop

    def acknowledged(self, topic: str, partition: int) -> int | None:
        return self._acknowledged.get((topic, partition))

    def revoke(self, topic: str, partition: int) -> None:
        """Simulate losing a partition in a rebalance."""
        self._assigned.discard((topic, partition))

    def rebalance(self) -> None:
        """Reassign all partitions on the next fetch."""
        self._pending_assignment = True
        self._new_messages.set()

    def inject_fatal(self, error: Exception) -> None:
        """Make the next fetch raise BrokerFatalError."""
        self._fatal = error
        self._new_messages.set()

    async def wait_until_acknowledged(
        self, topic: str, partition: int, offset: int, timeout: float = 5.0
    ) -> bool:
        """Wait until a partition is acknowledged up to offset."""
        start = time.time()
        while time.time() - start < timeout:
            acked = self._acknowledged.get((topic, partition))
            if acked is not None and acked >= offset:
                return True
            await asyncio.sleep(0.01)
        return False
