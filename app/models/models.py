"""
Database models for the game lifecycle service.

Tables:
- events: one sporting contest tracked from discovery to settlement
- job_locks: named TTL leases giving one worker the right to run a job
- markets / positions: prediction markets and the stakes placed on them
- settlement_queue: durable settlement work, one row per event
- settlement_receipts: per-user payout/refund records (idempotency marker)
- treasury_ledger: platform fees, at most one entry per event
"""
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from app.utils.timezone import utcnow

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class Event(Base):
    """A sporting contest, identified by (league, external_id)."""
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_id)
    league = Column(String(20), nullable=False, index=True)  # lowercase: nfl, nba, nhl, mlb, soccer
    external_id = Column(String(100), nullable=False)  # provider game/fixture id
    provider = Column(String(50), nullable=False, default="api-sports")
    season = Column(Integer, nullable=True, index=True)
    starts_at = Column(DateTime, nullable=False, index=True)
    status_raw = Column(String(100), nullable=True)
    status_norm = Column(String(20), nullable=False, default="SCHEDULED", index=True)
    home_team = Column(String(255), nullable=True)
    away_team = Column(String(255), nullable=True)
    home_score = Column(Integer, nullable=True)
    away_score = Column(Integer, nullable=True)
    finalized_at = Column(DateTime, nullable=True, index=True)
    winner_side = Column(String(10), nullable=True)  # HOME, AWAY, DRAW
    settled_at = Column(DateTime, nullable=True)
    is_placeholder = Column(Boolean, nullable=False, default=False)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    markets = relationship("Market", back_populates="event")

    __table_args__ = (
        UniqueConstraint("league", "external_id", name="uq_events_league_external_id"),
        Index("ix_events_league_starts_at", "league", "starts_at"),
    )


class JobLock(Base):
    """TTL lease row; at most one live lease per job name."""
    __tablename__ = "job_locks"

    job_name = Column(String(50), primary_key=True)
    locked_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    locked_by = Column(String(255), nullable=False)
    meta = Column(JSON, nullable=True)


class Market(Base):
    """A prediction market on the outcome of one event."""
    __tablename__ = "markets"

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default="OPEN")  # OPEN, LOCKED, SETTLED, VOID
    is_locked = Column(Boolean, nullable=False, default=False)
    lock_reason = Column(String(50), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    resolved_outcome = Column(String(20), nullable=True)
    settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    event = relationship("Event", back_populates="markets")
    positions = relationship("Position", back_populates="market", cascade="all, delete-orphan")


class Position(Base):
    """A user's stake on one side of a market."""
    __tablename__ = "positions"

    id = Column(String(36), primary_key=True, default=new_id)
    market_id = Column(String(36), ForeignKey("markets.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    side = Column(String(10), nullable=False)  # HOME, AWAY, DRAW
    stake = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    market = relationship("Market", back_populates="positions")


class SettlementQueueItem(Base):
    """Durable settlement task; unique per event."""
    __tablename__ = "settlement_queue"

    id = Column(String(36), primary_key=True, default=new_id)
    game_id = Column(String(36), ForeignKey("events.id"), nullable=False, unique=True)
    league = Column(String(20), nullable=False, index=True)
    external_id = Column(String(100), nullable=False)
    provider = Column(String(50), nullable=False, default="api-sports")
    status = Column(String(20), nullable=False, default="QUEUED", index=True)
    outcome = Column(String(20), nullable=False)  # HOME, AWAY, DRAW, CANCELED
    reason = Column(String(50), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    locked_by = Column(String(255), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    event = relationship("Event")


class SettlementReceipt(Base):
    """Payout or refund credited to one user for one market."""
    __tablename__ = "settlement_receipts"

    id = Column(String(36), primary_key=True, default=new_id)
    queue_item_id = Column(String(36), ForeignKey("settlement_queue.id"), nullable=True, index=True)
    game_id = Column(String(36), ForeignKey("events.id"), nullable=False, index=True)
    market_id = Column(String(36), ForeignKey("markets.id"), nullable=False)
    user_id = Column(String(100), nullable=False)
    kind = Column(String(10), nullable=False)  # PAYOUT, REFUND
    stake = Column(Float, nullable=False)
    amount = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("market_id", "user_id", "kind", name="uq_receipts_market_user_kind"),
    )


class TreasuryLedgerEntry(Base):
    """Platform fee skimmed from one event's losing pools."""
    __tablename__ = "treasury_ledger"

    id = Column(String(36), primary_key=True, default=new_id)
    game_id = Column(String(36), ForeignKey("events.id"), nullable=False, unique=True)
    amount = Column(Float, nullable=False)
    losing_pool = Column(Float, nullable=False)
    gross_pool = Column(Float, nullable=False, default=0.0)
    fee_rate = Column(Float, nullable=False)
    entry_type = Column(String(30), nullable=False, default="SETTLEMENT_FEE")
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
