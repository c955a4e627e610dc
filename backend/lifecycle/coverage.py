"""League coverage classification."""
from __future__ import annotations

from typing import Optional

from shared.models.enums import LeagueCoverage

MAJOR_LEAGUE_PATTERNS = (
    "premier league",
    "serie a",
    "la liga",
    "bundesliga",
    "ligue 1",
    "eredivisie",
    "primeira liga",
    "champions league",
    "europa league",
    "uefa",
    "fifa world cup",
    "nba",
    "nfl",
    "mlb",
    "nhl",
)


def coverage_for_league_name(name: Optional[str]) -> LeagueCoverage:
    """Major when the name contains a well-covered competition, regional otherwise."""
    if not name:
        return LeagueCoverage.REGIONAL
    lowered = name.lower()
    if any(pattern in lowered for pattern in MAJOR_LEAGUE_PATTERNS):
        return LeagueCoverage.MAJOR
    return LeagueCoverage.REGIONAL
