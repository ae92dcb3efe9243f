"""
Event processor for relgraph.

The Processor consumes relationship events from the broker, applies them
to the in-memory GraphEngine and persists the result through the
gateway. It ensures:
- Resume from per-partition checkpoints, clamped to retained offsets
- Idempotent application (the log offset is the event's seq)
- Incremental persistence (only dirty nodes are flushed)

Invariants:
    - Batches are handled strictly one at a time
    - Messages within a batch are applied in offset order
    - A message is acknowledged only after it was applied, skipped or
      found unparseable
    - The checkpoint never moves past the last acknowledged message
    - Persistence failures are logged and never stop the loop

How to change safely:
    - Keep the flush order: raw events, heartbeat, dirty users, checkpoint
    - Test resume with checkpoints older than the retention window
    - Monitor the stats log line for stalls
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ..graph.engine import GraphEngine
from ..graph.events import EVENT_TYPES, EventParseError, SequencedEvent, parse_event
from ..storage.base import Checkpoint, PersistenceGateway, StoredEvent
from ..stream.base import BrokerClient, BrokerFatalError, MessageBatch

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    """Result of handling one batch.

    Attributes:
        topic: Source topic
        partition: Source partition
        acknowledged: Messages acknowledged
        applied: Events that changed graph state
        empty: Messages skipped for an empty payload
        parse_errors: Messages skipped because they could not be parsed
        flushed_users: Dirty users handed to the gateway
        checkpoint: Offset saved as the partition checkpoint, if any
        interrupted: Whether the batch stopped early on a liveness check
    """

    topic: str
    partition: int
    acknowledged: int = 0
    applied: int = 0
    empty: int = 0
    parse_errors: int = 0
    flushed_users: int = 0
    checkpoint: int | None = None
    interrupted: bool = False


class Processor:
    """Consumes the event log and maintains the relationship graph.

    The Processor is the core processing loop that:
    1. Hydrates the engine from the persisted users
    2. Positions every assigned partition (checkpoint or earliest)
    3. Applies each message of a batch to the engine
    4. Appends raw events and flushes dirty users
    5. Saves the partition checkpoint

    Thread safety:
        The Processor is designed to run as a single task. Exactly one
        instance may own graph mutation.

    Example:
        >>> processor = Processor(broker, gateway, GraphEngine(), topic="events")
        >>> await processor.start()
        >>> await processor.run()  # Runs until stopped
    """

    def __init__(
        self,
        broker: BrokerClient,
        gateway: PersistenceGateway,
        engine: GraphEngine,
        topic: str,
        resume: bool = False,
        stats_interval_seconds: float = 5.0,
    ) -> None:
        """Initialize the processor.

        Args:
            broker: Broker client to consume from
            gateway: Durable store for users, checkpoints and raw events
            engine: Graph engine to mutate
            topic: Topic carrying relationship events
            resume: Seek to stored checkpoints instead of the earliest offset
            stats_interval_seconds: Interval between stats log lines
        """
        self.broker = broker
        self.gateway = gateway
        self.engine = engine
        self.topic = topic
        self.resume = resume
        self.stats_interval_seconds = stats_interval_seconds

        self._running = False
        self._started = False
        self._stats_task: asyncio.Task | None = None
        self._batch_lock = asyncio.Lock()
        self._earliest_offsets: dict[int, int] = {}

        self._batch_count = 0
        self._applied_total = 0
        self._applied_interval = 0
        self._parse_errors = 0
        self._latest_offset = -1
        self._type_counts: dict[str, int] = {t: 0 for t in EVENT_TYPES}

    async def start(self) -> None:
        """Hydrate the engine, join the consumer group and start metrics.

        Raises:
            StorageConnectionError: If the gateway cannot be opened
            BrokerConnectionError: If the broker cannot be reached
        """
        if self._started:
            logger.warning("Processor already started")
            return

        await self.gateway.connect()
        users = await self.gateway.load_all_users()
        self.engine.hydrate(users)
        logger.info("Hydrated graph", extra={"users": len(users)})

        await self.broker.connect()
        self._earliest_offsets = await self.broker.fetch_earliest_offsets(self.topic)
        logger.info(
            "Fetched earliest offsets",
            extra={"topic": self.topic, "earliest": self._earliest_offsets},
        )

        await self.broker.subscribe(self.topic, self._handle_assignment)

        self._started = True
        self._running = True
        self._stats_task = asyncio.create_task(self._stats_loop())
        logger.info("Started processor", extra={"topic": self.topic, "resume": self.resume})

    async def run(self) -> None:
        """Consume batches until stopped.

        Raises:
            BrokerFatalError: If the consumer fails unrecoverably
        """
        if not self._started:
            raise RuntimeError("Processor not started")

        try:
            async for batch in self.broker.batches():
                if not self._running:
                    break
                async with self._batch_lock:
                    await self.handle_batch(batch)

        except asyncio.CancelledError:
            logger.info("Processor cancelled")
            raise
        except BrokerFatalError as e:
            logger.error(f"Broker consumer crashed: {e}", exc_info=True)
            raise

    async def stop(self) -> None:
        """Stop consuming and release the broker and gateway.

        A batch in flight stops at its next liveness check and is flushed
        and checkpointed before the broker and gateway are closed.
        """
        if not self._started:
            return
        self._started = False
        self._running = False

        if self._stats_task is not None:
            self._stats_task.cancel()
            try:
                await self._stats_task
            except asyncio.CancelledError:
                pass
            self._stats_task = None

        async with self._batch_lock:
            pass

        try:
            await self.broker.close()
        except Exception as e:
            logger.error(f"Error closing broker client: {e}", exc_info=True)

        await self.gateway.close()
        logger.info("Processor stopped", extra=self.stats)

    async def _handle_assignment(self, topic: str, partitions: list[int]) -> None:
        for partition in partitions:
            if partition not in self._earliest_offsets:
                self._earliest_offsets = await self.broker.fetch_earliest_offsets(topic)
            earliest = self._earliest_offsets.get(partition, 0)

            offset = earliest
            if self.resume:
                stored = await self.gateway.get_checkpoint(topic, partition)
                if stored is not None:
                    offset = max(stored + 1, earliest)
                    logger.info(
                        "Resuming partition from checkpoint",
                        extra={
                            "checkpoint": str(Checkpoint(topic, partition, stored)),
                            "earliest": earliest,
                            "seek": offset,
                        },
                    )

            self.broker.seek(topic, partition, offset)
            logger.debug(
                "Positioned partition",
                extra={"topic": topic, "partition": partition, "offset": offset},
            )

    async def handle_batch(self, batch: MessageBatch) -> BatchOutcome:
        """Apply one batch and persist its effects.

        Args:
            batch: Ordered messages of a single partition

        Returns:
            BatchOutcome describing what happened to the batch
        """
        topic, partition = batch.topic, batch.partition
        outcome = BatchOutcome(topic=topic, partition=partition)
        self._batch_count += 1

        highest_applied = -1
        highest_seen = -1
        events: list[StoredEvent] = []

        for message in batch.messages:
            if not (self._running and self.broker.is_assigned(topic, partition)):
                outcome.interrupted = True
                logger.info(
                    "Stopped batch early",
                    extra={"topic": topic, "partition": partition, "offset": message.offset},
                )
                break

            highest_seen = max(highest_seen, message.offset)
            self._latest_offset = max(self._latest_offset, message.offset)

            if not message.value:
                self.broker.acknowledge(topic, partition, message.offset)
                outcome.acknowledged += 1
                outcome.empty += 1
                continue

            try:
                payload, event = parse_event(message.value)
            except EventParseError as e:
                self._parse_errors += 1
                outcome.parse_errors += 1
                logger.error(
                    f"Failed to parse event: {e}",
                    extra={"topic": topic, "partition": partition, "offset": message.offset},
                )
                self.broker.acknowledge(topic, partition, message.offset)
                outcome.acknowledged += 1
                continue

            seq = message.offset
            events.append(
                StoredEvent(
                    topic=topic,
                    partition=partition,
                    offset=message.offset,
                    type=event.type,
                    event_timestamp=event.created_at,
                    ingested_at=datetime.now(timezone.utc).isoformat(),
                    payload=payload,
                )
            )

            result = self.engine.ingest(SequencedEvent(event=event, seq=seq))
            if result.applied:
                self._applied_total += 1
                self._applied_interval += 1
                self._type_counts[event.type] = self._type_counts.get(event.type, 0) + 1
                outcome.applied += 1
                highest_applied = max(highest_applied, seq)

            self.broker.acknowledge(topic, partition, message.offset)
            outcome.acknowledged += 1

        if events:
            await self.gateway.append_raw_events(events)

        await self.broker.heartbeat()

        dirty = self.engine.drain_dirty_nodes()
        if dirty:
            await self.gateway.upsert_users(dirty)
            outcome.flushed_users = len(dirty)

        checkpoint = highest_applied if highest_applied >= 0 else highest_seen
        if checkpoint >= 0:
            await self.gateway.save_checkpoint(topic, partition, checkpoint)
            outcome.checkpoint = checkpoint

        return outcome

    async def _stats_loop(self) -> None:
        while True:
            await asyncio.sleep(self.stats_interval_seconds)
            self._log_stats()

    def _log_stats(self) -> None:
        logger.info(
            "Processor stats",
            extra={
                "applied_interval": self._applied_interval,
                "rate_per_second": round(self._applied_interval / self.stats_interval_seconds, 2),
                "applied_total": self._applied_total,
                "latest_offset": self._latest_offset,
                "avg_applied_per_batch": self._average_per_batch(),
                **{f"applied_{t}": n for t, n in self._type_counts.items()},
            },
        )
        self._applied_interval = 0

    def _average_per_batch(self) -> float:
        if not self._batch_count:
            return 0.0
        return round(self._applied_total / self._batch_count, 2)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, Any]:
        """Get processor statistics."""
        return {
            "running": self._running,
            "batches": self._batch_count,
            "applied_total": self._applied_total,
            "parse_errors": self._parse_errors,
            "latest_offset": self._latest_offset,
            "avg_applied_per_batch": self._average_per_batch(),
            "applied_by_type": dict(self._type_counts),
            "users": len(self.engine),
        }
