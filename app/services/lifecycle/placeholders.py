"""
Placeholder / exhibition fixture detection.

All-star games, Pro Bowls and fixtures whose opponents are not decided yet
(TBD, "Team 1") are ingested but tagged, and Sync does not drive them
through settlement.
"""
import re
from typing import Optional

PLACEHOLDER_TEAM_NAMES = frozenset(name.lower() for name in (
    "NFC",
    "AFC",
    "TBD",
    "TBA",
    "All-Stars",
    "All Stars",
    "All-Star",
    "All Star",
    "Conference",
    "Unknown",
    "Team",
    "Team 1",
    "Team 2",
    "Home",
    "Away",
    "East",
    "West",
    "North",
    "South",
    "National",
    "American",
    "Pro Bowl",
    "Pro-Bowl",
    "Skills Challenge",
))

_PLACEHOLDER_PATTERNS = (
    re.compile(r"^team\s+\d+$"),
    re.compile(r"^team\s+unknown$"),
    re.compile(r"\ball[\s-]?stars?\b"),
    re.compile(r"\bpro[\s-]?bowl\b"),
)


def is_placeholder_team(name: Optional[str]) -> bool:
    """True for a missing, too-short or known placeholder team name."""
    if not name:
        return True
    normalized = " ".join(name.strip().lower().split())
    if len(normalized) < 2:
        return True
    if normalized in PLACEHOLDER_TEAM_NAMES:
        return True
    return any(pattern.search(normalized) for pattern in _PLACEHOLDER_PATTERNS)


def is_placeholder_game(home_team: Optional[str], away_team: Optional[str]) -> bool:
    """A game is a placeholder when either side is a placeholder team."""
    return is_placeholder_team(home_team) or is_placeholder_team(away_team)
