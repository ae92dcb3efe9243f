"""
Processor module for relgraph - the single writer of the graph.

This module handles:
- Joining the consumer group and positioning partitions
- Applying batches of events to the GraphEngine
- Persisting raw events, dirty users and checkpoints
- Periodic throughput stats
"""

from .processor import BatchOutcome, Processor

__all__ = [
    "Processor",
    "BatchOutcome",
]
