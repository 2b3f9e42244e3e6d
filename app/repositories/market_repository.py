"""
Market Repository for prediction market data access.

Usage:
    repo = MarketRepository(db)
    markets = repo.find_for_event(event.id)
    locked = repo.lock_for_event(event.id, reason="GAME_FINAL", now=utcnow())
"""
from datetime import datetime
from typing import List

from app.models import Market, Position
from app.models.enums import MarketStatus
from app.repositories.base import BaseRepository


class MarketRepository(BaseRepository[Market]):
    """Repository for markets and their positions."""

    def __init__(self, db):
        super().__init__(Market, db)

    def find_for_event(self, event_id: str) -> List[Market]:
        return self.query().filter(Market.event_id == event_id).order_by(Market.created_at).all()

    def count_for_event(self, event_id: str) -> int:
        return self.count(Market.event_id == event_id)

    def lock_for_event(self, event_id: str, reason: str, now: datetime) -> int:
        """
        Lock every unlocked market of an event for trading.

        Returns:
            Number of markets newly locked
        """
        return (
            self.query()
            .filter(Market.event_id == event_id, Market.is_locked.is_(False))
            .update(
                {
                    Market.is_locked: True,
                    Market.lock_reason: reason,
                    Market.locked_at: now,
                    Market.status: MarketStatus.LOCKED.value,
                },
                synchronize_session=False,
            )
        )

    def positions_for_market(self, market_id: str) -> List[Position]:
        return (
            self.db.query(Position)
            .filter(Position.market_id == market_id)
            .order_by(Position.created_at)
            .all()
        )
