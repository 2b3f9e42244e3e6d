"""
Closed vocabularies stored as strings in lifecycle tables.

The enums subclass ``str`` so members compare equal to the stored values
and serialize directly in API responses.
"""
from enum import Enum


class LifecycleState(str, Enum):
    """Canonical event lifecycle state (events.status_norm)."""
    SCHEDULED = "SCHEDULED"
    LIVE = "LIVE"
    FINAL = "FINAL"
    POSTPONED = "POSTPONED"
    CANCELED = "CANCELED"


class WinnerSide(str, Enum):
    HOME = "HOME"
    AWAY = "AWAY"
    DRAW = "DRAW"


class QueueStatus(str, Enum):
    """Settlement queue item state."""
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class MarketStatus(str, Enum):
    OPEN = "OPEN"
    LOCKED = "LOCKED"
    SETTLED = "SETTLED"
    VOID = "VOID"


class ReceiptKind(str, Enum):
    PAYOUT = "PAYOUT"
    REFUND = "REFUND"


# Settlement outcome when no side wins
CANCELED_OUTCOME = "CANCELED"

# Outcomes settled by refunding every stake
REFUND_OUTCOMES = frozenset({"CANCELED", "POSTPONED"})


class JobName(str, Enum):
    """Named jobs that take a lease in job_locks."""
    DISCOVER = "discover"
    SYNC = "sync"
    FINALIZE = "finalize"
    SETTLE = "settle"
    BACKFILL = "backfill"
    HEALTH = "health"
