"""
Pydantic v2 domain models shared across Fixture Hub services.
These are the canonical internal representations, NOT ORM models.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shared.models.enums import (
    BettingAvailability,
    EventStatus,
    LeagueCoverage,
    LifecycleStatus,
    MarketCategory,
    ResolutionMethod,
    RiskLevel,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Reference entities ──────────────────────────────────────────────────
class League(DomainModel):
    id: int
    sport_id: int
    name: str
    coverage: LeagueCoverage = LeagueCoverage.REGIONAL

    @field_validator("coverage", mode="before")
    @classmethod
    def _missing_coverage_is_regional(cls, value: Any) -> Any:
        return LeagueCoverage.REGIONAL if value in (None, "") else value


class Team(DomainModel):
    id: int
    sport_id: int
    league_id: Optional[int] = None
    name: str
    aliases: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True


class ProviderTeamMapping(DomainModel):
    id: Optional[int] = None
    team_id: int
    provider: str
    provider_team_id: Optional[str] = None
    provider_team_name: str
    normalized_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    is_primary: bool = False
    method: ResolutionMethod = ResolutionMethod.NAME
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Resolution(DomainModel):
    """Outcome of a successful team lookup."""
    team_id: int
    confidence: float = Field(ge=0.0, le=1.0)
    method: ResolutionMethod
    created: bool = False


# ── Provider input ──────────────────────────────────────────────────────
class MarketOffer(DomainModel):
    market_type: str
    selection: str
    price: float = Field(gt=1.0)
    line: Optional[float] = None
    period: str = "game"


class RawEvent(DomainModel):
    """One provider's view of a fixture, as fetched."""
    provider: str
    provider_event_id: str
    sport_id: int
    league_id: Optional[int] = None
    league_name: Optional[str] = None
    home_team: str
    away_team: str
    home_team_id: Optional[str] = None
    away_team_id: Optional[str] = None
    scheduled_start: datetime
    status_code: Optional[Union[str, int]] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    period: Optional[str] = None
    clock: Optional[str] = None
    has_open_markets: Optional[bool] = None
    markets: list[MarketOffer] = Field(default_factory=list)
    received_at: datetime = Field(default_factory=utcnow)

    @field_validator("scheduled_start", "received_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def offers_markets(self) -> bool:
        """Explicit flag when the provider sends one, else whether any market came through."""
        return self.has_open_markets if self.has_open_markets is not None else bool(self.markets)


# ── Canonical output ────────────────────────────────────────────────────
class AggregatedOdds(DomainModel):
    category: MarketCategory
    selection: str
    price: float
    line: Optional[float] = None
    period: str = "game"
    providers: list[str] = Field(default_factory=list)


class CanonicalMatch(DomainModel):
    """The single merged record for a real-world fixture."""
    event_id: str
    sport_id: int
    league_id: Optional[int] = None
    league_name: Optional[str] = None
    home_team_id: Optional[int] = None
    away_team_id: Optional[int] = None
    home_team: str
    away_team: str
    scheduled_start: datetime
    status: LifecycleStatus = LifecycleStatus.PREMATCH
    event_status: EventStatus = EventStatus.UNKNOWN
    betting_availability: BettingAvailability = BettingAvailability.UNAVAILABLE
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    period: Optional[str] = None
    clock: Optional[str] = None
    markets: dict[MarketCategory, list[AggregatedOdds]] = Field(default_factory=dict)
    providers: list[str]
    provider_event_ids: dict[str, str] = Field(default_factory=dict)
    has_open_markets: bool = False
    # sync-time only, not persisted
    open_market_providers: list[str] = Field(default_factory=list)
    join_key: str = ""
    version: int = 0
    last_updated: datetime = Field(default_factory=utcnow)
    status_reason: Optional[str] = None

    @field_validator("scheduled_start", "last_updated")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _has_provider(self) -> "CanonicalMatch":
        if not self.providers:
            raise ValueError("a canonical match needs at least one contributing provider")
        return self

    @property
    def is_resolved(self) -> bool:
        return self.home_team_id is not None and self.away_team_id is not None


# ── Lifecycle ───────────────────────────────────────────────────────────
class TransitionDecision(DomainModel):
    """What a layer wants to do with one match."""
    to_status: LifecycleStatus
    reason: str
    evidence: dict[str, Any] = Field(default_factory=dict)


class TransitionRecord(DomainModel):
    event_id: str
    from_status: LifecycleStatus
    to_status: LifecycleStatus
    source: str
    reason: str
    evidence: dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class RiskAssessment(DomainModel):
    event_id: str
    risk: RiskLevel
    status: LifecycleStatus
    hours_since_update: float
    hours_past_start: float
    reasons: list[str] = Field(default_factory=list)


class LayerReport(DomainModel):
    """Summary of one lifecycle layer run."""
    layer: str
    evaluated: int = 0
    transitioned: int = 0
    failed: int = 0
    skipped: bool = False
    transitions: list[TransitionRecord] = Field(default_factory=list)


class SyncReport(DomainModel):
    sport_id: int
    providers_ok: list[str] = Field(default_factory=list)
    providers_failed: list[str] = Field(default_factory=list)
    matches: int = 0
    written: int = 0
    restored: int = 0
    conflicts: int = 0
    skipped: bool = False
