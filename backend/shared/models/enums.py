"""Domain enumerations for Fixture Hub."""
from __future__ import annotations

from enum import Enum


class LifecycleStatus(str, Enum):
    PREMATCH = "prematch"
    LIVE = "live"
    FINISHED = "finished"
    SOFT_FINISHED = "soft_finished"

    @property
    def is_open(self) -> bool:
        return self in (LifecycleStatus.PREMATCH, LifecycleStatus.LIVE)


class EventStatus(str, Enum):
    """Provider-reported fixture state after code normalisation."""
    PREMATCH = "prematch"
    LIVE = "live"
    FINISHED = "finished"
    POSTPONED = "postponed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.FINISHED, EventStatus.POSTPONED, EventStatus.CANCELLED)


class BettingAvailability(str, Enum):
    AVAILABLE_FOR_BETTING = "available_for_betting"
    LIVE_BETTING = "live_betting"
    UNAVAILABLE = "unavailable"


class LeagueCoverage(str, Enum):
    MAJOR = "major"
    REGIONAL = "regional"


class RiskLevel(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def severity(self) -> int:
        return _RISK_SEVERITY[self]


_RISK_SEVERITY = {
    RiskLevel.CRITICAL: 3,
    RiskLevel.HIGH: 2,
    RiskLevel.MEDIUM: 1,
    RiskLevel.LOW: 0,
}


class MarketCategory(str, Enum):
    MONEY_LINE = "money_line"
    TOTALS = "totals"
    SPREADS = "spreads"
    PLAYER_PROPS = "player_props"
    OTHER = "other"


class ResolutionMethod(str, Enum):
    CACHE = "cache"
    PROVIDER_ID = "provider_id"
    NAME = "name"
    FUZZY = "fuzzy"
    CREATED = "created"


class LifecycleLayer(str, Enum):
    PROVIDER_STATUS = "provider_status"
    PRIMARY_MARKETS = "primary_markets"
    TIME_CLEANUP = "time_cleanup"
    STALENESS_PURGE = "staleness_purge"
    COMPREHENSIVE = "comprehensive"


class TransitionSource(str, Enum):
    PROVIDER_STATUS = "provider_status"
    PRIMARY_MARKETS = "primary_markets"
    TIME_CLEANUP = "time_cleanup"
    STALENESS_PURGE = "staleness_purge"
    AGGREGATION = "aggregation"
    ADMIN = "admin"
