"""
Broker client abstraction for the relationship event log.

This module provides a pluggable consumer interface supporting:
- Kafka/Redpanda (production)
- In-memory (for testing)

The log is the source of truth. The graph and its persisted projection
are derived views that can be rebuilt by replaying it.

Invariants:
    - Batches are ordered within a partition
    - No cross-partition ordering guarantee
    - Offsets are checkpointed by the caller, not by the broker

How to change safely:
    - New backends must implement the BrokerClient protocol
    - Verify resume semantics with the processor integration tests
"""

from .base import (
    AssignmentCallback,
    BrokerClient,
    BrokerConnectionError,
    BrokerError,
    BrokerFatalError,
    MessageBatch,
    StreamMessage,
    create_broker_client,
)
from .kafka import KafkaBrokerClient
from .memory import InMemoryBrokerClient

__all__ = [
    # Protocol and types
    "BrokerClient",
    "MessageBatch",
    "StreamMessage",
    "AssignmentCallback",
    "BrokerError",
    "BrokerConnectionError",
    "BrokerFatalError",
    # Factory
    "create_broker_client",
    # Implementations
    "KafkaBrokerClient",
    "InMemoryBrokerClient",
]
