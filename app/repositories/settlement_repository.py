"""
Repositories for settlement queue, receipts and treasury ledger data access.

Usage:
    queue = SettlementQueueRepository(db)
    item = queue.find_by_game_id(event.id)
    stats = queue.stats()

    treasury = TreasuryLedgerRepository(db)
    balance = treasury.balance()
"""
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import desc, func, or_

from app.models import SettlementQueueItem, SettlementReceipt, TreasuryLedgerEntry
from app.models.enums import QueueStatus
from app.repositories.base import BaseRepository


class SettlementQueueRepository(BaseRepository[SettlementQueueItem]):
    """Repository for settlement queue items."""

    def __init__(self, db):
        super().__init__(SettlementQueueItem, db)

    def find_by_game_id(self, game_id: str) -> Optional[SettlementQueueItem]:
        return self.where_first(SettlementQueueItem.game_id == game_id)

    def list_items(
        self,
        status: Optional[str] = None,
        league: Optional[str] = None,
        limit: int = 50,
    ) -> List[SettlementQueueItem]:
        """Newest first, optionally filtered by status and league."""
        query = self.query()
        if status:
            query = query.filter(SettlementQueueItem.status == status.upper())
        if league:
            query = query.filter(SettlementQueueItem.league == league.lower())
        return query.order_by(desc(SettlementQueueItem.created_at)).limit(limit).all()

    def stats(self) -> Dict[str, int]:
        """Per-status counts plus total."""
        counts = {s.value.lower(): 0 for s in QueueStatus}
        for status, count in self.group_by_and_count("status"):
            counts[str(status).lower()] = count
        counts["total"] = sum(counts.values())
        return counts

    def next_queued(self, now: datetime) -> Optional[SettlementQueueItem]:
        """Oldest QUEUED item that is due."""
        return (
            self.query()
            .filter(
                SettlementQueueItem.status == QueueStatus.QUEUED.value,
                or_(
                    SettlementQueueItem.next_attempt_at.is_(None),
                    SettlementQueueItem.next_attempt_at <= now,
                ),
            )
            .order_by(SettlementQueueItem.created_at)
            .first()
        )

    def failed_items(
        self,
        limit: int,
        now: Optional[datetime] = None,
    ) -> List[SettlementQueueItem]:
        """FAILED items oldest first; only those due at ``now`` when given."""
        query = self.query().filter(SettlementQueueItem.status == QueueStatus.FAILED.value)
        if now is not None:
            query = query.filter(
                or_(
                    SettlementQueueItem.next_attempt_at.is_(None),
                    SettlementQueueItem.next_attempt_at <= now,
                )
            )
        return query.order_by(SettlementQueueItem.created_at).limit(limit).all()

    def claim(self, item_id: str, worker_id: str, now: datetime) -> bool:
        """
        Move an item from QUEUED/FAILED to PROCESSING.

        The conditional update is the claim: of two concurrent callers only
        one sees a row count of 1.
        """
        updated = (
            self.query()
            .filter(
                SettlementQueueItem.id == item_id,
                SettlementQueueItem.status.in_([QueueStatus.QUEUED.value, QueueStatus.FAILED.value]),
            )
            .update(
                {
                    SettlementQueueItem.status: QueueStatus.PROCESSING.value,
                    SettlementQueueItem.locked_by: worker_id,
                    SettlementQueueItem.locked_at: now,
                    SettlementQueueItem.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    def stale_processing(self, cutoff: datetime) -> List[SettlementQueueItem]:
        """PROCESSING items claimed before ``cutoff``."""
        return (
            self.query()
            .filter(
                SettlementQueueItem.status == QueueStatus.PROCESSING.value,
                or_(SettlementQueueItem.locked_at.is_(None), SettlementQueueItem.locked_at < cutoff),
            )
            .order_by(SettlementQueueItem.locked_at)
            .all()
        )


class SettlementReceiptRepository(BaseRepository[SettlementReceipt]):
    """Repository for per-user payout/refund receipts."""

    def __init__(self, db):
        super().__init__(SettlementReceipt, db)

    def exists_for_game(self, game_id: str) -> bool:
        return self.exists_where(SettlementReceipt.game_id == game_id)

    def find_for_game(self, game_id: str) -> List[SettlementReceipt]:
        return self.where(SettlementReceipt.game_id == game_id)


class TreasuryLedgerRepository(BaseRepository[TreasuryLedgerEntry]):
    """Repository for the append-only treasury ledger."""

    def __init__(self, db):
        super().__init__(TreasuryLedgerEntry, db)

    def exists_for_game(self, game_id: str) -> bool:
        return self.exists_where(TreasuryLedgerEntry.game_id == game_id)

    def count_for_game(self, game_id: str) -> int:
        return self.count(TreasuryLedgerEntry.game_id == game_id)

    def balance(self) -> float:
        total = self.db.query(func.coalesce(func.sum(TreasuryLedgerEntry.amount), 0.0)).scalar()
        return round(float(total or 0.0), 6)

    def recent(self, limit: int = 50) -> List[TreasuryLedgerEntry]:
        return self.query().order_by(desc(TreasuryLedgerEntry.created_at)).limit(limit).all()
