"""
Time utilities for the lifecycle service.

All instants are stored as naive UTC datetimes. Provider timestamps are
converted with ``to_naive_utc`` before they reach the store.
"""
from datetime import date, datetime, timezone, timedelta
from typing import List, Optional

UTC = timezone.utc


# =============================================================================
# SEASON RULES
# =============================================================================

# Month in which a league's season begins. Games before that month belong to
# the season that started the previous calendar year.
SEASON_START_MONTH = {
    "nfl": 3,      # Season label runs Mar - Feb (Super Bowl belongs to prior year)
    "nba": 10,     # Oct - Jun, labelled by starting year
    "nhl": 10,     # Oct - Jun, labelled by starting year
    "mlb": 1,      # Calendar year
    "soccer": 7,   # Jul - Jun (European calendar)
}


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def season_for_date(league: str, when: Optional[datetime] = None) -> int:
    """
    Compute the integer season for a league from a start instant.

    Examples:
        >>> season_for_date('nba', datetime(2025, 1, 15))
        2024
        >>> season_for_date('nfl', datetime(2025, 2, 9))
        2024
        >>> season_for_date('mlb', datetime(2025, 4, 1))
        2025
    """
    when = when or utcnow()
    start_month = SEASON_START_MONTH.get(league.lower(), 1)
    if when.month >= start_month:
        return when.year
    return when.year - 1


def date_range(start: datetime, end: datetime) -> List[str]:
    """
    Every calendar date (YYYY-MM-DD) touched by ``[start, end]``, oldest first.

    Examples:
        >>> date_range(datetime(2025, 1, 1, 22), datetime(2025, 1, 3, 1))
        ['2025-01-01', '2025-01-02', '2025-01-03']
    """
    if end < start:
        return []
    dates = []
    current: date = start.date()
    while current <= end.date():
        dates.append(current.isoformat())
        current += timedelta(days=1)
    return dates


def days_ago(days: int, now: Optional[datetime] = None) -> List[str]:
    """Dates for the last ``days`` days ending yesterday, oldest first."""
    now = now or utcnow()
    return [
        (now - timedelta(days=offset)).date().isoformat()
        for offset in range(days, 0, -1)
    ]
