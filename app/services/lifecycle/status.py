"""
Status normalization and lifecycle transitions.

This module is the single source of truth for an event's canonical state:
every job classifies provider statuses through ``normalize_status`` and
decides what a fresh observation may change through ``resolve_transition``.

Provides:
- normalize_status: provider status text (+ scores, start time) -> LifecycleState
- determine_winner: score comparison -> WinnerSide
- resolve_transition: previous state + finalized_at + proposed state -> Transition
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from app.models.enums import LifecycleState, WinnerSide
from app.utils.timezone import to_naive_utc, utcnow

# Past this much time after the scheduled start, an unrecognized status with
# scores is treated as a finished game.
EXPECTED_GAME_DURATION = timedelta(hours=4)

_FINAL = LifecycleState.FINAL
_LIVE = LifecycleState.LIVE
_CANCELED = LifecycleState.CANCELED
_POSTPONED = LifecycleState.POSTPONED
_SCHEDULED = LifecycleState.SCHEDULED

# Provider-neutral wording
GENERIC_STATUS_MAP: Dict[str, LifecycleState] = {
    "final": _FINAL,
    "f": _FINAL,
    "f/ot": _FINAL,
    "f/so": _FINAL,
    "finished": _FINAL,
    "ended": _FINAL,
    "full time": _FINAL,
    "match finished": _FINAL,
    "game finished": _FINAL,
    "after over time": _FINAL,
    "after overtime": _FINAL,
    "after penalties": _FINAL,
    "after extra time": _FINAL,
    "live": _LIVE,
    "in progress": _LIVE,
    "inprogress": _LIVE,
    "in play": _LIVE,
    "halftime": _LIVE,
    "half time": _LIVE,
    "break time": _LIVE,
    "overtime": _LIVE,
    "canceled": _CANCELED,
    "cancelled": _CANCELED,
    "abandoned": _CANCELED,
    "postponed": _POSTPONED,
    "scheduled": _SCHEDULED,
    "not started": _SCHEDULED,
    "time to be defined": _SCHEDULED,
}

# api-sports short codes (football v3 and the v1 sport APIs)
API_SPORTS_STATUS_MAP: Dict[str, LifecycleState] = {
    "ft": _FINAL,
    "aet": _FINAL,
    "pen": _FINAL,
    "aot": _FINAL,
    "ap": _FINAL,
    "awd": _FINAL,
    "wo": _FINAL,
    "1h": _LIVE,
    "2h": _LIVE,
    "ht": _LIVE,
    "et": _LIVE,
    "bt": _LIVE,
    "p": _LIVE,
    "ot": _LIVE,
    "so": _LIVE,
    "susp": _LIVE,
    "int": _LIVE,
    "canc": _CANCELED,
    "abd": _CANCELED,
    "pst": _POSTPONED,
    "post": _POSTPONED,
    "ns": _SCHEDULED,
    "tbd": _SCHEDULED,
}

PROVIDER_STATUS_MAPS: Dict[str, Dict[str, LifecycleState]] = {
    "api-sports": {**GENERIC_STATUS_MAP, **API_SPORTS_STATUS_MAP},
}

# Period codes: quarters, hockey periods, baseball innings
_PERIOD_PATTERN = re.compile(r"^(q[1-4]|p[1-3]|in[1-9]|\d+(st|nd|rd|th)( (quarter|period|half|inning))?)$")


def _status_key(raw_status: Any) -> str:
    if raw_status is None:
        return ""
    try:
        return " ".join(str(raw_status).strip().lower().split())
    except Exception:
        return ""


def _coerce_score(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _coerce_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, str) and value:
        try:
            return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def normalize_status(
    provider: Optional[str],
    raw_status: Any,
    home_score: Any = None,
    away_score: Any = None,
    starts_at: Any = None,
    now: Optional[datetime] = None,
) -> LifecycleState:
    """
    Classify a provider status into one canonical lifecycle state.

    Deterministic and total: any input maps to a state and nothing raises.
    Unrecognized statuses fall back to SCHEDULED, unless both scores are
    present, in which case elapsed time since the scheduled start decides
    between SCHEDULED, LIVE and FINAL.

    Examples:
        >>> normalize_status("api-sports", "FT")
        <LifecycleState.FINAL: 'FINAL'>
        >>> normalize_status("api-sports", "Q3")
        <LifecycleState.LIVE: 'LIVE'>
        >>> normalize_status("api-sports", "???")
        <LifecycleState.SCHEDULED: 'SCHEDULED'>
    """
    key = _status_key(raw_status)
    status_map = PROVIDER_STATUS_MAPS.get(_status_key(provider), GENERIC_STATUS_MAP)

    state = status_map.get(key)
    if state is not None:
        return state
    if key and _PERIOD_PATTERN.match(key):
        return _LIVE

    home = _coerce_score(home_score)
    away = _coerce_score(away_score)
    if home is None or away is None:
        return _SCHEDULED

    start = _coerce_datetime(starts_at)
    if start is None:
        return _LIVE

    try:
        elapsed = (to_naive_utc(now) if now else utcnow()) - start
    except (TypeError, AttributeError):
        return _LIVE
    if elapsed >= EXPECTED_GAME_DURATION:
        return _FINAL
    if elapsed >= timedelta(0):
        return _LIVE
    return _SCHEDULED


def determine_winner(home_score: Any, away_score: Any) -> Optional[WinnerSide]:
    """Higher score wins; equal scores are a DRAW; a missing score gives None."""
    home = _coerce_score(home_score)
    away = _coerce_score(away_score)
    if home is None or away is None:
        return None
    if home > away:
        return WinnerSide.HOME
    if away > home:
        return WinnerSide.AWAY
    return WinnerSide.DRAW


def coerce_state(value: Any) -> Optional[LifecycleState]:
    """Stored status_norm value -> LifecycleState (None for missing/unknown)."""
    if isinstance(value, LifecycleState):
        return value
    try:
        return LifecycleState(str(value).upper())
    except ValueError:
        return None


def is_frozen(state: Any, finalized_at: Optional[datetime]) -> bool:
    """An event finalized as FINAL or CANCELED no longer changes state or scores."""
    return finalized_at is not None and coerce_state(state) in (_FINAL, _CANCELED)


@dataclass(frozen=True)
class Transition:
    """Outcome of applying a fresh observation to a stored event."""

    previous: Optional[LifecycleState]
    state: LifecycleState
    frozen: bool = False
    became_final: bool = False
    became_canceled: bool = False

    @property
    def reached_terminal(self) -> bool:
        return self.became_final or self.became_canceled


def resolve_transition(
    current_state: Any,
    finalized_at: Optional[datetime],
    proposed: LifecycleState,
) -> Transition:
    """
    Decide what a freshly normalized state may do to a stored event.

    - A frozen event keeps its stored state whatever is proposed.
    - A not-yet-finalized event moving to FINAL or CANCELED is flagged so
      the caller stamps finalized_at and enqueues settlement exactly once.
    - Anything else takes the proposed state.

    Args:
        current_state: Stored status_norm, or None for an event not yet stored
        finalized_at: Stored finalized_at
        proposed: State computed by normalize_status from the fresh payload
    """
    previous = coerce_state(current_state) if current_state is not None else None

    if is_frozen(previous, finalized_at):
        return Transition(previous=previous, state=previous, frozen=True)

    return Transition(
        previous=previous,
        state=proposed,
        became_final=proposed == _FINAL,
        became_canceled=proposed == _CANCELED,
    )
