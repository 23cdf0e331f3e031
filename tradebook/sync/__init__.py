"""Outbox queue and sync processor."""

from tradebook.sync.outbox import OutboxQueue
from tradebook.sync.processor import SyncProcessor
from tradebook.sync.state import SyncReport, SyncState

__all__ = [
    # Queue
    "OutboxQueue",
    # Processor
    "SyncProcessor",
    "SyncReport",
    "SyncState",
]
