"""
Lifecycle models.

Usage:
    from app.models import Event, SettlementQueueItem
"""
from app.models.models import (
    Base,
    Event,
    JobLock,
    Market,
    Position,
    SettlementQueueItem,
    SettlementReceipt,
    TreasuryLedgerEntry,
)

__all__ = [
    "Base",
    "Event",
    "JobLock",
    "Market",
    "Position",
    "SettlementQueueItem",
    "SettlementReceipt",
    "TreasuryLedgerEntry",
]
