"""
In-memory persistence gateway for testing.

Same contract as SqliteGateway: duplicate raw events are ignored, write
failures are logged and swallowed. Failures can be injected with
fail_next() to exercise the Processor's error handling.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..graph.types import PersistableUserNode
from .base import StorageError, StoredEvent

logger = logging.getLogger(__name__)


class InMemoryGateway:
    """In-memory implementation of the PersistenceGateway protocol."""

    def __init__(self) -> None:
        self.users: dict[str, PersistableUserNode] = {}
        self.checkpoints: dict[tuple[str, int], int] = {}
        self.raw_events: list[StoredEvent] = []
        self._raw_keys: set[tuple[str, int, int]] = set()
        self._connected = False
        self._failures: set[str] = set()
        self.upsert_calls = 0

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    def fail_next(self, operation: str) -> None:
        """Make the next call of the named write operation fail."""
        self._failures.add(operation)

    def _should_fail(self, operation: str) -> bool:
        if operation in self._failures:
            self._failures.discard(operation)
            return True
        return False

    async def get_checkpoint(self, topic: str, partition: int) -> int | None:
        return self.checkpoints.get((topic, partition))

    async def save_checkpoint(self, topic: str, partition: int, offset: int) -> None:
        if self._should_fail("save_checkpoint"):
            logger.error(
                "save_checkpoint failed: injected failure",
                extra={"topic": topic, "partition": partition, "offset": offset},
            )
            return
        self.checkpoints[(topic, partition)] = offset

    async def load_all_users(self) -> list[PersistableUserNode]:
        return [self.users[name] for name in sorted(self.users)]

    async def upsert_users(self, nodes: Sequence[PersistableUserNode]) -> None:
        if not nodes:
            return
        if self._should_fail("upsert_users"):
            logger.error("upsert_users failed: injected failure", extra={"count": len(nodes)})
            return
        self.upsert_calls += 1
        for node in nodes:
            self.users[node.name] = node

    async def append_raw_events(self, events: Sequence[StoredEvent]) -> int:
        if self._should_fail("append_raw_events"):
            logger.error("append_raw_events failed: injected failure", extra={"count": len(events)})
            return 0

        inserted = 0
        for event in events:
            key = (event.topic, event.partition, event.offset)
            if key in self._raw_keys:
                continue
            self._raw_keys.add(key)
            self.raw_events.append(event)
            inserted += 1
        return inserted

    async def count_raw_events(self) -> int:
        return len(self.raw_events)

    async def load_raw_events(self, skip: int, limit: int) -> list[StoredEvent]:
        if skip < 0 or limit < 0:
            raise StorageError("skip and limit must be non-negative")
        return self.raw_events[skip : skip + limit]
