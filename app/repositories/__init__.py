"""
Repository layer for lifecycle data access.
"""
from app.repositories.base import BaseRepository
from app.repositories.market_repository import MarketRepository
from app.repositories.settlement_repository import (
    SettlementQueueRepository,
    SettlementReceiptRepository,
    TreasuryLedgerRepository,
)

__all__ = [
    "BaseRepository",
    "MarketRepository",
    "SettlementQueueRepository",
    "SettlementReceiptRepository",
    "TreasuryLedgerRepository",
]
