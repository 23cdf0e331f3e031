"""Ledger consistency: atomic multi-record operations."""

from tradebook.ledger.manager import (
    AdvanceRecording,
    LedgerConsistencyManager,
    PaymentRecording,
    StockRecording,
    TransferRecording,
)

__all__ = [
    "LedgerConsistencyManager",
    # Results
    "AdvanceRecording",
    "PaymentRecording",
    "StockRecording",
    "TransferRecording",
]
