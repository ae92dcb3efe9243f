"""
Kafka/Redpanda broker client implementation.

This module consumes the relationship event log with aiokafka. It works with:
- Apache Kafka
- Amazon MSK
- Redpanda
- Any Kafka API-compatible system

Invariants:
    - enable_auto_commit=False: offsets are checkpointed by the Processor
      through the persistence gateway, never committed to the group
    - auto_offset_reset="none": every assigned partition is positioned
      explicitly by the assignment callback
    - Errors raised by the fetch loop are treated as fatal

How to change safely:
    - Test rebalances against a real cluster with more than one consumer
    - Keep the assignment callback fast; it runs inside the rebalance
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any

from aiokafka import AIOKafkaConsumer, ConsumerRebalanceListener
from aiokafka.errors import ConsumerStoppedError, KafkaConnectionError, KafkaError
from aiokafka.structs import TopicPartition

from .base import (
    AssignmentCallback,
    BrokerConnectionError,
    BrokerError,
    BrokerFatalError,
    MessageBatch,
    StreamMessage,
)

logger = logging.getLogger(__name__)


class _AssignmentListener(ConsumerRebalanceListener):
    """Forwards partition assignments to the caller's callback."""

    def __init__(self, on_assign: AssignmentCallback) -> None:
        self._on_assign = on_assign

    async def on_partitions_revoked(self, revoked: Any) -> None:
        if revoked:
            logger.info(
                "Partitions revoked",
                extra={"partitions": sorted(f"{tp.topic}:{tp.partition}" for tp in revoked)},
            )

    async def on_partitions_assigned(self, assigned: Any) -> None:
        by_topic: dict[str, list[int]] = defaultdict(list)
        for tp in assigned:
            by_topic[tp.topic].append(tp.partition)

        for topic, partitions in by_topic.items():
            await self._on_assign(topic, sorted(partitions))


class KafkaBrokerClient:
    """Kafka implementation of the BrokerClient protocol.

    Attributes:
        config: KafkaConfig with connection and consumer settings

    Example:
        >>> broker = KafkaBrokerClient(KafkaConfig(brokers="localhost:19092"))
        >>> await broker.connect()
        >>> await broker.subscribe(config.topic, on_assign)
        >>> async for batch in broker.batches():
        ...     ...
    """

    def __init__(self, config: Any) -> None:
        """Initialize Kafka broker client.

        Args:
            config: KafkaConfig instance with connection settings
        """
        self.config = config
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False
        self._closed = False
        self._acknowledged: dict[tuple[str, int], int] = {}

    @property
    def is_connected(self) -> bool:
        """Whether connected to Kafka."""
        return self._connected and self._consumer is not None

    def _security_config(self) -> dict[str, Any]:
        config: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            config["security_protocol"] = self.config.security_protocol

        if self.config.sasl_mechanism:
            config["sasl_mechanism"] = self.config.sasl_mechanism
            config["sasl_plain_username"] = self.config.sasl_username
            config["sasl_plain_password"] = self.config.sasl_password

        if self.config.ssl_cafile:
            config["ssl_cafile"] = self.config.ssl_cafile
        return config

    async def connect(self) -> None:
        """Create and start the group consumer.

        Raises:
            BrokerConnectionError: If connection fails
        """
        if self._connected:
            return

        try:
            self._consumer = AIOKafkaConsumer(
                bootstrap_servers=self.config.brokers,
                client_id=self.config.client_id,
                group_id=self.config.group_id,
                enable_auto_commit=False,
                auto_offset_reset="none",
                max_poll_records=self.config.max_poll_records,
                session_timeout_ms=self.config.session_timeout_ms,
                heartbeat_interval_ms=self.config.heartbeat_interval_ms,
                **self._security_config(),
            )
            await self._consumer.start()
            self._connected = True
            self._closed = False

            logger.info(
                "Connected to Kafka",
                extra={"brokers": self.config.brokers, "group_id": self.config.group_id},
            )

        except Exception as e:
            self._connected = False
            raise BrokerConnectionError(f"Failed to connect to Kafka: {e}") from e

    async def close(self) -> None:
        """Stop the consumer."""
        self._closed = True
        if self._consumer:
            try:
                await self._consumer.stop()
            except Exception as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        self._connected = False
        logger.info("Kafka consumer closed")

    async def fetch_earliest_offsets(self, topic: str) -> dict[int, int]:
        """Get the low watermark of every partition.

        Uses a temporary group-less consumer so the group is not joined
        before the caller is ready to handle assignments.
        """
        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=self.config.brokers,
            enable_auto_commit=False,
            **self._security_config(),
        )
        try:
            await consumer.start()
            partitions = consumer.partitions_for_topic(topic) or set()
            tps = [TopicPartition(topic, p) for p in sorted(partitions)]
            offsets = await consumer.beginning_offsets(tps) if tps else {}
        except KafkaError as e:
            raise BrokerError(f"Failed to fetch earliest offsets for {topic}: {e}") from e
        finally:
            await consumer.stop()

        earliest = {tp.partition: offset for tp, offset in offsets.items()}
        logger.info(
            "Earliest offsets",
            extra={"topic": topic, "offsets": ", ".join(f"{p}:{o}" for p, o in sorted(earliest.items()))},
        )
        return earliest

    async def subscribe(self, topic: str, on_assign: AssignmentCallback) -> None:
        """Subscribe the group consumer with a rebalance listener."""
        if not self._consumer:
            raise BrokerConnectionError("Not connected to Kafka")

        self._consumer.subscribe([topic], listener=_AssignmentListener(on_assign))
        logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": self.config.group_id})

    def seek(self, topic: str, partition: int, offset: int) -> None:
        if not self._consumer:
            raise BrokerConnectionError("Not connected to Kafka")
        self._consumer.seek(TopicPartition(topic, partition), offset)

    async def batches(self) -> AsyncIterator[MessageBatch]:
        """Yield one batch per partition from each fetch.

        Raises:
            BrokerFatalError: If the consumer reports an error
        """
        if not self._consumer:
            raise BrokerConnectionError("Not connected to Kafka")

        while not self._closed:
            try:
                fetched = await self._consumer.getmany(
                    timeout_ms=self.config.fetch_timeout_ms,
                    max_records=self.config.max_poll_records,
                )
            except ConsumerStoppedError:
                if self._closed:
                    return
                raise BrokerFatalError("Kafka consumer stopped unexpectedly") from None
            except KafkaConnectionError as e:
                raise BrokerFatalError(f"Kafka connection lost: {e}") from e
            except KafkaError as e:
                raise BrokerFatalError(f"Consumer error: {e}") from e

            for tp, records in fetched.items():
                if not records:
                    continue
                yield MessageBatch(
                    topic=tp.topic,
                    partition=tp.partition,
                    messages=[
                        StreamMessage(
                            offset=msg.offset,
                            value=msg.value,
                            key=msg.key,
                            timestamp_ms=msg.timestamp,
                        )
                        for msg in records
                    ],
                )

    def acknowledge(self, topic: str, partition: int, offset: int) -> None:
        self._acknowledged[(topic, partition)] = offset

    def acknowledged(self, topic: str, partition: int) -> int | None:
        """Last acknowledged offset for a partition (diagnostics)."""
        return self._acknowledged.get((topic, partition))

    async def heartbeat(self) -> None:
        # aiokafka sends group heartbeats from its coordinator task;
        # yielding lets it run between synchronous persistence steps.
        await asyncio.sleep(0)

    def is_assigned(self, topic: str, partition: int) -> bool:
        if not self._consumer:
            return False
        return TopicPartition(topic, partition) in self._consumer.assignment()
