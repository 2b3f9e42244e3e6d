"""
Settlement queue processing and treasury accounting.

One queue item per finalized event. Processing an item settles every market
of the event in a single transaction:

- winners get their stake back plus a pro-rata share of the losing pool
  net of the platform fee;
- CANCELED / POSTPONED outcomes (and markets with no winning stake) refund
  every stake with no fee;
- one treasury ledger entry per event records the fee (possibly zero) and
  doubles as the idempotency marker, together with per-user receipts.

Items move QUEUED -> PROCESSING -> DONE | FAILED | SKIPPED. FAILED items are
retried with backoff; processing the same item again is a no-op.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core import metrics
from app.core.logging import get_logger
from app.models import Market, SettlementQueueItem, SettlementReceipt, TreasuryLedgerEntry
from app.models.enums import (
    CANCELED_OUTCOME,
    REFUND_OUTCOMES,
    LifecycleState,
    MarketStatus,
    QueueStatus,
    ReceiptKind,
)
from app.repositories import (
    MarketRepository,
    SettlementQueueRepository,
    SettlementReceiptRepository,
    TreasuryLedgerRepository,
)
from app.services.lifecycle.event_store import EventStore, StoredEvent, probe_events_schema
from app.services.lifecycle.payloads import PROVIDER_NAME
from app.services.lifecycle.status import coerce_state
from app.utils.timezone import utcnow

logger = get_logger(__name__)

PLATFORM_FEE_RATE = 0.03

# Minutes to wait before attempt N+1 after N failures
RETRY_BACKOFF_MINUTES = [1, 5, 30, 120, 720]

MONEY_PLACES = 6


def _money(value: float) -> float:
    return round(value, MONEY_PLACES)


# ============================================================================
# Distribution math
# ============================================================================

@dataclass
class UserPayout:
    user_id: str
    kind: str
    stake: float
    amount: float


@dataclass
class MarketDistribution:
    market_id: str
    outcome: str
    gross_pool: float
    winning_pool: float
    losing_pool: float
    fee: float
    net_distributed: float
    refund: bool
    payouts: List[UserPayout] = field(default_factory=list)

    @property
    def total_paid(self) -> float:
        return _money(sum(p.amount for p in self.payouts))


def _stakes_by_user(positions: Sequence[Any], side: Optional[str] = None) -> Dict[str, float]:
    stakes: Dict[str, float] = {}
    for position in positions:
        if side is not None and position.side != side:
            continue
        stakes[position.user_id] = stakes.get(position.user_id, 0.0) + float(position.stake)
    return stakes


def compute_distribution(
    market_id: str,
    outcome: str,
    positions: Sequence[Any],
    fee_rate: float = PLATFORM_FEE_RATE,
) -> MarketDistribution:
    """
    Pool math for one market.

    Args:
        market_id: Market being settled
        outcome: HOME / AWAY / DRAW, or CANCELED / POSTPONED for a refund
        positions: Objects with user_id, side and stake
        fee_rate: Share of the losing pool kept by the platform

    Examples:
        100 on HOME vs 100 on AWAY, HOME wins: fee 3.0, net 97.0, HOME payout 197.0
    """
    gross_pool = _money(sum(float(p.stake) for p in positions))
    winning_stakes = _stakes_by_user(positions, side=outcome)
    winning_pool = _money(sum(winning_stakes.values()))

    if outcome in REFUND_OUTCOMES or winning_pool <= 0:
        refunds = [
            UserPayout(user_id=user, kind=ReceiptKind.REFUND.value, stake=_money(stake), amount=_money(stake))
            for user, stake in _stakes_by_user(positions).items()
        ]
        return MarketDistribution(
            market_id=market_id,
            outcome=outcome,
            gross_pool=gross_pool,
            winning_pool=winning_pool,
            losing_pool=0.0,
            fee=0.0,
            net_distributed=0.0,
            refund=True,
            payouts=refunds,
        )

    losing_pool = _money(gross_pool - winning_pool)
    fee = _money(losing_pool * fee_rate)
    net_distributed = _money(losing_pool - fee)

    payouts = [
        UserPayout(
            user_id=user,
            kind=ReceiptKind.PAYOUT.value,
            stake=_money(stake),
            amount=_money(stake + net_distributed * (stake / winning_pool)),
        )
        for user, stake in winning_stakes.items()
    ]
    return MarketDistribution(
        market_id=market_id,
        outcome=outcome,
        gross_pool=gross_pool,
        winning_pool=winning_pool,
        losing_pool=losing_pool,
        fee=fee,
        net_distributed=net_distributed,
        refund=False,
        payouts=payouts,
    )


@dataclass
class SettlementPlan:
    game_id: str
    outcome: str
    markets: List[MarketDistribution] = field(default_factory=list)

    @property
    def gross_pool(self) -> float:
        return _money(sum(m.gross_pool for m in self.markets))

    @property
    def losing_pool(self) -> float:
        return _money(sum(m.losing_pool for m in self.markets))

    @property
    def fee(self) -> float:
        return _money(sum(m.fee for m in self.markets))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "game_id": self.game_id,
            "outcome": self.outcome,
            "gross_pool": self.gross_pool,
            "losing_pool": self.losing_pool,
            "fee": self.fee,
            "total_paid": _money(sum(m.total_paid for m in self.markets)),
            "markets": [asdict(m) for m in self.markets],
        }


def settlement_outcome(state: Any, winner_side: Optional[str]) -> Tuple[str, Optional[str]]:
    """
    (outcome, reason) for an event reaching a terminal state.

    A FINAL event without a determinable winner is refunded like a cancellation.
    """
    if coerce_state(state) == LifecycleState.CANCELED:
        return CANCELED_OUTCOME, "CANCELED"
    if winner_side:
        return str(winner_side), None
    return CANCELED_OUTCOME, "NO_RESULT"


@dataclass
class SettlementOutcome:
    """What happened to one queue item."""

    item_id: Optional[str]
    game_id: Optional[str]
    status: str  # done, skipped, failed, already_processed, in_progress, not_found
    outcome: Optional[str] = None
    gross_pool: float = 0.0
    fee: float = 0.0
    payouts: int = 0
    refunds: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def queue_item_to_dict(item: SettlementQueueItem) -> Dict[str, Any]:
    def _iso(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    return {
        "id": item.id,
        "game_id": item.game_id,
        "league": item.league,
        "external_id": item.external_id,
        "provider": item.provider,
        "status": item.status,
        "outcome": item.outcome,
        "reason": item.reason,
        "attempts": item.attempts,
        "last_error": item.last_error,
        "next_attempt_at": _iso(item.next_attempt_at),
        "locked_by": item.locked_by,
        "processed_at": _iso(item.processed_at),
        "created_at": _iso(item.created_at),
    }


# ============================================================================
# Service
# ============================================================================

class SettlementService:
    """
    Settlement queue, processor and treasury queries.

    Usage:
        service = SettlementService(db, worker_id=worker_id)
        service.enqueue(event_id, "nba", "12345", outcome="HOME")
        results = service.process_all(max_items=50)
    """

    def __init__(
        self,
        db: Session,
        worker_id: str,
        fee_rate: float = PLATFORM_FEE_RATE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.worker_id = worker_id
        self.fee_rate = fee_rate
        self._clock = clock
        self.queue = SettlementQueueRepository(db)
        self.receipts = SettlementReceiptRepository(db)
        self.treasury = TreasuryLedgerRepository(db)
        self.markets = MarketRepository(db)

    # ========================================================================
    # Enqueue
    # ========================================================================

    def enqueue(
        self,
        game_id: str,
        league: str,
        external_id: str,
        outcome: str,
        reason: Optional[str] = None,
        provider: str = PROVIDER_NAME,
    ) -> bool:
        """
        Queue settlement for an event.

        Returns:
            False when an item already exists for the event (no-op)
        """
        if self.queue.find_by_game_id(game_id) is not None:
            return False

        now = self._clock()
        self.queue.create(
            game_id=game_id,
            league=league.lower(),
            external_id=str(external_id),
            provider=provider,
            status=QueueStatus.QUEUED.value,
            outcome=outcome,
            reason=reason,
            attempts=0,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            self.db.commit()
        except IntegrityError:
            # Concurrent enqueue for the same event won the unique constraint
            self.db.rollback()
            return False

        logger.info(f"📥 Enqueued settlement for {league}/{external_id} (outcome={outcome}, reason={reason})")
        return True

    def enqueue_for_event(self, event: StoredEvent, state: Any = None) -> bool:
        """Queue settlement from a stored event's terminal state and winner."""
        outcome, reason = settlement_outcome(state or event.status_norm, event.winner_side)
        return self.enqueue(
            game_id=str(event.id),
            league=event.league,
            external_id=event.external_id,
            outcome=outcome,
            reason=reason,
        )

    # ========================================================================
    # Queue inspection
    # ========================================================================

    def list_queue(
        self,
        status: Optional[str] = None,
        league: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        return [queue_item_to_dict(i) for i in self.queue.list_items(status=status, league=league, limit=limit)]

    def get_queue_stats(self) -> Dict[str, int]:
        return self.queue.stats()

    def is_settlement_processed(self, game_id: str) -> bool:
        if self.treasury.exists_for_game(game_id):
            return True
        item = self.queue.find_by_game_id(game_id)
        return item is not None and item.status in (QueueStatus.DONE.value, QueueStatus.SKIPPED.value)

    # ========================================================================
    # Processing
    # ========================================================================

    def _build_plan(self, game_id: str, outcome: str, lock_markets: bool) -> SettlementPlan:
        plan = SettlementPlan(game_id=game_id, outcome=outcome)
        for market in self.markets.find_for_event(game_id):
            if lock_markets and not market.is_locked:
                market.is_locked = True
                market.lock_reason = "SETTLEMENT_SAFETY"
                market.locked_at = self._clock()
                market.status = MarketStatus.LOCKED.value
            positions = self.markets.positions_for_market(market.id)
            plan.markets.append(compute_distribution(market.id, outcome, positions, self.fee_rate))
        return plan

    def _write_settlement(self, item: SettlementQueueItem, plan: SettlementPlan, now: datetime) -> None:
        markets_by_id = {m.id: m for m in self.markets.find_for_event(item.game_id)}

        for distribution in plan.markets:
            for payout in distribution.payouts:
                self.db.add(SettlementReceipt(
                    queue_item_id=item.id,
                    game_id=item.game_id,
                    market_id=distribution.market_id,
                    user_id=payout.user_id,
                    kind=payout.kind,
                    stake=payout.stake,
                    amount=payout.amount,
                    created_at=now,
                ))
            market: Market = markets_by_id[distribution.market_id]
            market.status = MarketStatus.VOID.value if distribution.refund else MarketStatus.SETTLED.value
            market.resolved_outcome = distribution.outcome
            market.settled_at = now

        self.db.add(TreasuryLedgerEntry(
            game_id=item.game_id,
            amount=plan.fee,
            losing_pool=plan.losing_pool,
            gross_pool=plan.gross_pool,
            fee_rate=self.fee_rate,
            created_at=now,
        ))

        store = EventStore(self.db, probe_events_schema(self.db))
        if store.schema.has_settled_at:
            store.update_event(item.game_id, {"settled_at": now}, commit=False)

        item.status = QueueStatus.DONE.value
        item.processed_at = now
        item.last_error = None
        item.locked_by = None
        item.updated_at = now

    def _mark_failed(self, item_id: str, error: str) -> None:
        item = self.queue.find_by_id(item_id)
        if item is None:
            return
        now = self._clock()
        item.attempts = (item.attempts or 0) + 1
        backoff = RETRY_BACKOFF_MINUTES[min(item.attempts, len(RETRY_BACKOFF_MINUTES)) - 1]
        item.status = QueueStatus.FAILED.value
        item.last_error = error[:2000]
        item.next_attempt_at = now + timedelta(minutes=backoff)
        item.locked_by = None
        item.locked_at = None
        item.updated_at = now
        self.db.commit()

    def _mark_already_processed(self, item: SettlementQueueItem) -> None:
        if item.status != QueueStatus.DONE.value:
            item.status = QueueStatus.DONE.value
            item.processed_at = item.processed_at or self._clock()
            item.locked_by = None
            self.db.commit()

    def process_item(self, item_id: str) -> SettlementOutcome:
        """
        Settle one queue item.

        Safe to call repeatedly or concurrently: a DONE/SKIPPED item, an
        event that already has a ledger entry or receipts, or an item another
        worker has claimed all short-circuit without writing payouts.
        """
        item = self.queue.find_by_id(item_id)
        if item is None:
            return SettlementOutcome(item_id=item_id, game_id=None, status="not_found")

        result = SettlementOutcome(item_id=item.id, game_id=item.game_id, status="done", outcome=item.outcome)

        if item.status in (QueueStatus.DONE.value, QueueStatus.SKIPPED.value):
            result.status = "already_processed"
            metrics.record_settlement(result.status)
            return result

        if self.treasury.exists_for_game(item.game_id) or self.receipts.exists_for_game(item.game_id):
            logger.info(f"Settlement for game {item.game_id} already recorded - marking item DONE")
            self._mark_already_processed(item)
            result.status = "already_processed"
            metrics.record_settlement(result.status)
            return result

        now = self._clock()
        claimed = self.queue.claim(item.id, self.worker_id, now)
        self.db.commit()
        if not claimed:
            result.status = "in_progress"
            return result
        self.db.refresh(item)

        try:
            plan = self._build_plan(item.game_id, item.outcome, lock_markets=True)
            if not plan.markets:
                item.status = QueueStatus.SKIPPED.value
                item.reason = item.reason or "NO_MARKETS"
                item.processed_at = now
                item.locked_by = None
                item.updated_at = now
                self.db.commit()
                result.status = "skipped"
                metrics.record_settlement(result.status)
                logger.info(f"⏭️  No markets for game {item.game_id} - settlement skipped")
                return result

            self._write_settlement(item, plan, now)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.exception(f"❌ Settlement failed for game {item.game_id}: {e}")
            self._mark_failed(item_id, str(e))
            result.status = "failed"
            result.error = str(e)
            metrics.record_settlement(result.status)
            return result

        result.gross_pool = plan.gross_pool
        result.fee = plan.fee
        result.payouts = sum(1 for m in plan.markets for p in m.payouts if p.kind == ReceiptKind.PAYOUT.value)
        result.refunds = sum(1 for m in plan.markets for p in m.payouts if p.kind == ReceiptKind.REFUND.value)
        metrics.record_settlement(result.status, fee=plan.fee)
        logger.info(
            f"✅ Settled game {item.game_id}: outcome={item.outcome} gross={plan.gross_pool} "
            f"fee={plan.fee} payouts={result.payouts} refunds={result.refunds}"
        )
        return result

    def process_all(self, max_items: int = 50) -> List[SettlementOutcome]:
        """Drain due QUEUED items, oldest first."""
        outcomes: List[SettlementOutcome] = []
        seen = set()
        while len(outcomes) < max_items:
            item = self.queue.next_queued(self._clock())
            if item is None or item.id in seen:
                break
            seen.add(item.id)
            outcomes.append(self.process_item(item.id))
        return outcomes

    def retry_failed(self, max_items: int = 50, respect_backoff: bool = False) -> List[SettlementOutcome]:
        """
        Re-attempt FAILED items.

        Args:
            respect_backoff: Only retry items whose next_attempt_at has passed
        """
        now = self._clock() if respect_backoff else None
        return [self.process_item(item.id) for item in self.queue.failed_items(limit=max_items, now=now)]

    # ========================================================================
    # Preview & treasury
    # ========================================================================

    def preview(self, game_id: str) -> Dict[str, Any]:
        """Distribution the processor would write for an event, without writing anything."""
        item = self.queue.find_by_game_id(game_id)
        if item is not None:
            outcome, reason = item.outcome, item.reason
        else:
            event = EventStore(self.db, probe_events_schema(self.db)).get_event(game_id)
            if event is None:
                return {"game_id": game_id, "found": False}
            outcome, reason = settlement_outcome(event.status_norm, event.winner_side)

        plan = self._build_plan(game_id, outcome, lock_markets=False)
        preview = plan.to_dict()
        preview.update({
            "found": True,
            "reason": reason,
            "queue_item": queue_item_to_dict(item) if item else None,
            "already_processed": self.is_settlement_processed(game_id),
            "fee_rate": self.fee_rate,
        })
        return preview

    def get_treasury_balance(self) -> float:
        return self.treasury.balance()

    def get_treasury_ledger(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [
            {
                "id": entry.id,
                "game_id": entry.game_id,
                "amount": entry.amount,
                "losing_pool": entry.losing_pool,
                "gross_pool": entry.gross_pool,
                "fee_rate": entry.fee_rate,
                "entry_type": entry.entry_type,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in self.treasury.recent(limit)
        ]
