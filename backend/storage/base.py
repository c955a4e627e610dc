"""
Persistence capabilities used by resolution, aggregation and lifecycle code.

Implementations must make upsert_match/update_status conditional on the
stored version, bumping version and last_updated together on success.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from shared.models.domain import (
    CanonicalMatch,
    League,
    ProviderTeamMapping,
    Team,
    TransitionRecord,
)
from shared.models.enums import LifecycleStatus


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    CONFLICT = "conflict"


@dataclass
class MatchFilter:
    sport_id: Optional[int] = None
    statuses: list[LifecycleStatus] = field(default_factory=list)
    event_ids: list[str] = field(default_factory=list)
    start_from: Optional[datetime] = None
    start_to: Optional[datetime] = None
    limit: Optional[int] = None


class MatchRepository(ABC):
    @abstractmethod
    async def load_matches(self, flt: MatchFilter) -> list[CanonicalMatch]:
        ...

    @abstractmethod
    async def get_match(self, event_id: str) -> Optional[CanonicalMatch]:
        ...

    @abstractmethod
    async def upsert_match(
        self, match: CanonicalMatch, expected_version: Optional[int]
    ) -> tuple[UpsertOutcome, Optional[CanonicalMatch]]:
        """
        Insert when expected_version is None, otherwise update only if the stored
        version still equals expected_version. Returns the stored row on success.
        """

    @abstractmethod
    async def update_status(
        self,
        event_id: str,
        expected_version: int,
        status: LifecycleStatus,
        reason: str,
        at: datetime,
    ) -> Optional[CanonicalMatch]:
        """Conditional status write; None when the version no longer matches."""

    @abstractmethod
    async def record_transition(self, record: TransitionRecord) -> None:
        ...

    @abstractmethod
    async def delete_match(self, event_id: str) -> bool:
        ...


class TeamRepository(ABC):
    @abstractmethod
    async def sport_exists(self, sport_id: int) -> bool:
        ...

    @abstractmethod
    async def get_league(self, league_id: int) -> Optional[League]:
        ...

    @abstractmethod
    async def load_teams(self, sport_id: int, league_id: Optional[int] = None) -> list[Team]:
        """Active teams of a sport, optionally narrowed to a league."""

    @abstractmethod
    async def find_mapping_by_provider_id(
        self, provider: str, sport_id: int, provider_team_id: str
    ) -> Optional[ProviderTeamMapping]:
        ...

    @abstractmethod
    async def find_mapping_by_name(
        self, provider: str, sport_id: int, normalized_name: str
    ) -> Optional[ProviderTeamMapping]:
        ...

    @abstractmethod
    async def upsert_mapping(self, mapping: ProviderTeamMapping, sport_id: int) -> ProviderTeamMapping:
        """Insert or update by (provider, sport, normalized name); confidence never decreases."""

    @abstractmethod
    async def create_team(self, sport_id: int, league_id: Optional[int], name: str) -> Team:
        ...
