"""
Provider payload parsing.

api-sports returns two record shapes, picked by sport family:

- American sports (NFL/NBA/NHL/MLB v1 APIs): a flat game record, sometimes
  wrapped in ``game``; scores under ``scores.home.total`` or ``scores.home``.
- Soccer (football v3 API): a ``fixture`` record with goals under
  ``goals.home`` or ``score.fulltime.home``.

Each shape has its own parser class; both produce the same ``ProviderEvent``.
The variant is selected explicitly from the league, never by probing fields.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Union

from app.services.lifecycle.placeholders import is_placeholder_game
from app.utils.timezone import to_naive_utc, utcnow

PROVIDER_NAME = "api-sports"

DEFAULT_STATUS = "NS"

_INVALID_IDS = frozenset({"", "undefined", "null", "none"})


class SportFamily(str, Enum):
    AMERICAN = "american"
    SOCCER = "soccer"


LEAGUE_FAMILIES: Dict[str, SportFamily] = {
    "nfl": SportFamily.AMERICAN,
    "nba": SportFamily.AMERICAN,
    "nhl": SportFamily.AMERICAN,
    "mlb": SportFamily.AMERICAN,
    "soccer": SportFamily.SOCCER,
}


@dataclass(frozen=True)
class ProviderEvent:
    """A provider record reduced to the fields the lifecycle consumes."""

    external_id: str
    starts_at: datetime
    status_raw: str
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    start_resolved: bool = True
    provider: str = PROVIDER_NAME

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder_game(self.home_team, self.away_team)


# ============================================================================
# Field helpers
# ============================================================================

def _dig(record: Any, *path: str) -> Any:
    current = record
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def clean_external_id(value: Any) -> Optional[str]:
    """Provider id as text, or None for missing/'undefined'/'null' ids."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if text.lower() in _INVALID_IDS:
        return None
    return text


def _from_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError):
        return None


def _from_iso(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace("Z", "+00:00")
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_start_time(value: Any) -> Optional[datetime]:
    """
    Resolve a provider date field to naive UTC.

    Accepts a unix timestamp, an ISO string, or a mapping with
    ``timestamp`` / ``date`` + ``time`` / ``date`` keys.
    """
    if isinstance(value, Mapping):
        resolved = _from_timestamp(value.get("timestamp"))
        if resolved:
            return resolved
        day, clock = value.get("date"), value.get("time")
        if isinstance(day, str) and isinstance(clock, str):
            resolved = _from_iso(f"{day}T{clock}")
            if resolved:
                return resolved
        return parse_start_time(day) if day is not None else None
    return _from_timestamp(value) or _from_iso(value)


def _score(value: Any) -> Optional[int]:
    if isinstance(value, Mapping):
        value = value.get("total")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _status_text(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        return value.get("short") or value.get("long")
    if isinstance(value, str) and value.strip():
        return value
    return None


def _team_name(record: Any, side: str) -> Optional[str]:
    name = _dig(record, "teams", side, "name")
    return name.strip() if isinstance(name, str) and name.strip() else None


# ============================================================================
# Variants
# ============================================================================

@dataclass(frozen=True)
class AmericanGamePayload:
    """NFL / NBA / NHL / MLB game record."""

    raw: Mapping[str, Any] = field(repr=False)
    family: ClassVar[SportFamily] = SportFamily.AMERICAN

    @property
    def _game(self) -> Mapping[str, Any]:
        game = self.raw.get("game")
        return game if isinstance(game, Mapping) else {}

    def external_id(self) -> Optional[str]:
        return clean_external_id(self._game.get("id", self.raw.get("id")))

    def start_time(self) -> Optional[datetime]:
        return (
            parse_start_time(self._game.get("date"))
            or parse_start_time(self.raw.get("date"))
            or _from_timestamp(self.raw.get("timestamp"))
        )

    def status(self) -> str:
        return (
            _status_text(self._game.get("status"))
            or _status_text(self.raw.get("status"))
            or DEFAULT_STATUS
        )

    def scores(self) -> tuple:
        return (
            _score(_dig(self.raw, "scores", "home")),
            _score(_dig(self.raw, "scores", "away")),
        )


@dataclass(frozen=True)
class SoccerFixturePayload:
    """Football (soccer) fixture record."""

    raw: Mapping[str, Any] = field(repr=False)
    family: ClassVar[SportFamily] = SportFamily.SOCCER

    @property
    def _fixture(self) -> Mapping[str, Any]:
        fixture = self.raw.get("fixture")
        return fixture if isinstance(fixture, Mapping) else {}

    def external_id(self) -> Optional[str]:
        return clean_external_id(self._fixture.get("id", self.raw.get("id")))

    def start_time(self) -> Optional[datetime]:
        fixture = self._fixture
        return (
            _from_timestamp(fixture.get("timestamp"))
            or parse_start_time(fixture.get("date"))
            or parse_start_time(self.raw.get("date"))
        )

    def status(self) -> str:
        return _status_text(self._fixture.get("status")) or DEFAULT_STATUS

    def scores(self) -> tuple:
        home = _score(_dig(self.raw, "goals", "home"))
        away = _score(_dig(self.raw, "goals", "away"))
        if home is None or away is None:
            home = _score(_dig(self.raw, "score", "fulltime", "home"))
            away = _score(_dig(self.raw, "score", "fulltime", "away"))
        return home, away


ProviderPayload = Union[AmericanGamePayload, SoccerFixturePayload]

_VARIANTS = {
    SportFamily.AMERICAN: AmericanGamePayload,
    SportFamily.SOCCER: SoccerFixturePayload,
}


def family_for_league(league: str) -> SportFamily:
    try:
        return LEAGUE_FAMILIES[league.lower()]
    except KeyError:
        raise ValueError(f"Unknown league: {league}. Must be one of: {sorted(LEAGUE_FAMILIES)}")


def parse_payload(league: str, raw: Mapping[str, Any]) -> ProviderPayload:
    """Wrap a raw provider record in the variant for the league's sport family."""
    return _VARIANTS[family_for_league(league)](raw if isinstance(raw, Mapping) else {})


def to_provider_event(payload: ProviderPayload, now: Optional[datetime] = None) -> Optional[ProviderEvent]:
    """
    Reduce a parsed payload to a ProviderEvent.

    Returns None when the record has no usable identifier. An unresolvable
    start time defaults to ``now`` and is flagged via ``start_resolved``.
    """
    external_id = payload.external_id()
    if external_id is None:
        return None

    starts_at = payload.start_time()
    home_score, away_score = payload.scores()
    return ProviderEvent(
        external_id=external_id,
        starts_at=starts_at or (now or utcnow()),
        start_resolved=starts_at is not None,
        status_raw=payload.status(),
        home_team=_team_name(payload.raw, "home"),
        away_team=_team_name(payload.raw, "away"),
        home_score=home_score,
        away_score=away_score,
    )


def normalize_record(league: str, raw: Mapping[str, Any], now: Optional[datetime] = None) -> Optional[ProviderEvent]:
    """Parse and reduce one raw provider record for ``league``."""
    return to_provider_event(parse_payload(league, raw), now=now)
