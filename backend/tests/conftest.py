"""
Shared fixtures: in-memory repositories and a Redis stand-in that honour the
same contracts as the SQL/Redis implementations (conditional writes on
version, monotonic mapping confidence, job markers with owner tokens).
"""
from __future__ import annotations

import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from shared.config import Settings
from shared.models.domain import (
    CanonicalMatch,
    League,
    MarketOffer,
    ProviderTeamMapping,
    RawEvent,
    Team,
    TransitionRecord,
)
from shared.models.enums import BettingAvailability, LeagueCoverage, LifecycleStatus
from shared.utils.redis_manager import FAILURE_COUNT_KEY, MATCH_CACHE_KEY, MATCH_LIST_KEY
from storage.base import MatchFilter, MatchRepository, TeamRepository, UpsertOutcome

NOW = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ── Redis ───────────────────────────────────────────────────────────────
class FakeRedis:
    def __init__(self) -> None:
        self.cache: dict[str, str] = {}
        self.jobs: dict[str, str] = {}
        self.leaders: dict[str, str] = {}
        self.review: list[dict[str, Any]] = []
        self.failures: list[dict[str, Any]] = []
        self.failure_counts: dict[str, int] = {}
        self.invalidated: list[str] = []
        self.cache_down = False
        self.review_down = False

    async def cache_get(self, key: str) -> Optional[dict[str, Any]]:
        if self.cache_down:
            raise ConnectionError("redis unavailable")
        raw = self.cache.get(key)
        return json.loads(raw) if raw else None

    async def cache_set(self, key: str, value: dict[str, Any], ttl_s: int) -> None:
        if self.cache_down:
            raise ConnectionError("redis unavailable")
        self.cache[key] = json.dumps(value, default=str)

    async def cache_delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.cache.pop(key, None) is not None)

    async def invalidate_match(self, event_id: str, sport_id: int) -> None:
        self.invalidated.append(event_id)
        await self.cache_delete(
            MATCH_CACHE_KEY.format(event_id=event_id),
            MATCH_LIST_KEY.format(sport_id=sport_id),
        )

    async def try_acquire_job(self, job: str, token: str, ttl_s: int) -> bool:
        if job in self.jobs:
            return False
        self.jobs[job] = token
        return True

    async def release_job(self, job: str, token: str) -> bool:
        if self.jobs.get(job) != token:
            return False
        del self.jobs[job]
        return True

    async def try_acquire_leader(self, role: str, instance_id: str, ttl_s: int = 30) -> bool:
        if self.leaders.get(role, instance_id) != instance_id:
            return False
        self.leaders[role] = instance_id
        return True

    async def renew_leader(self, role: str, instance_id: str, ttl_s: int = 30) -> bool:
        return self.leaders.get(role) == instance_id

    async def release_leader(self, role: str, instance_id: str) -> bool:
        if self.leaders.get(role) != instance_id:
            return False
        del self.leaders[role]
        return True

    async def push_review(self, entry: dict[str, Any]) -> None:
        if self.review_down:
            raise ConnectionError("redis unavailable")
        self.review.insert(0, json.loads(json.dumps(entry, default=str)))

    async def list_review(self, limit: int = 100) -> list[dict[str, Any]]:
        return self.review[:limit]

    async def record_failure(self, entry: dict[str, Any]) -> int:
        self.failures.insert(0, json.loads(json.dumps(entry, default=str)))
        key = FAILURE_COUNT_KEY.format(event_id=entry["event_id"])
        self.failure_counts[key] = self.failure_counts.get(key, 0) + 1
        return self.failure_counts[key]

    async def reset_failures(self, event_id: str) -> None:
        self.failure_counts.pop(FAILURE_COUNT_KEY.format(event_id=event_id), None)

    async def list_failures(self, limit: int = 100) -> list[dict[str, Any]]:
        return self.failures[:limit]


# ── Repositories ────────────────────────────────────────────────────────
class FakeMatchRepository(MatchRepository):
    def __init__(self) -> None:
        self.rows: dict[str, CanonicalMatch] = {}
        self.transitions: list[TransitionRecord] = []
        self.load_error: Optional[Exception] = None
        # Number of upcoming conditional writes that lose to a simulated concurrent writer
        self.inject_conflicts = 0
        self.broken_ids: set[str] = set()

    def add(self, match: CanonicalMatch) -> CanonicalMatch:
        stored = match.model_copy(update={"version": match.version or 1}, deep=True)
        self.rows[stored.event_id] = stored
        return stored

    def _concurrent_write(self, event_id: str) -> bool:
        if self.inject_conflicts <= 0 or event_id not in self.rows:
            return False
        self.inject_conflicts -= 1
        row = self.rows[event_id]
        self.rows[event_id] = row.model_copy(update={"version": row.version + 1})
        return True

    async def load_matches(self, flt: MatchFilter) -> list[CanonicalMatch]:
        if self.load_error is not None:
            raise self.load_error
        rows = sorted(self.rows.values(), key=lambda m: (m.scheduled_start, m.event_id))
        if flt.sport_id is not None:
            rows = [m for m in rows if m.sport_id == flt.sport_id]
        if flt.statuses:
            rows = [m for m in rows if m.status in flt.statuses]
        if flt.event_ids:
            rows = [m for m in rows if m.event_id in flt.event_ids]
        if flt.start_from is not None:
            rows = [m for m in rows if m.scheduled_start >= flt.start_from]
        if flt.start_to is not None:
            rows = [m for m in rows if m.scheduled_start <= flt.start_to]
        if flt.limit is not None:
            rows = rows[: flt.limit]
        return [m.model_copy(deep=True) for m in rows]

    async def get_match(self, event_id: str) -> Optional[CanonicalMatch]:
        row = self.rows.get(event_id)
        return row.model_copy(deep=True) if row else None

    async def upsert_match(
        self, match: CanonicalMatch, expected_version: Optional[int]
    ) -> tuple[UpsertOutcome, Optional[CanonicalMatch]]:
        if expected_version is None:
            if match.event_id in self.rows:
                return UpsertOutcome.CONFLICT, None
            stored = match.model_copy(update={"version": 1}, deep=True)
            self.rows[match.event_id] = stored
            return UpsertOutcome.INSERTED, stored.model_copy(deep=True)

        if self._concurrent_write(match.event_id):
            return UpsertOutcome.CONFLICT, None
        current = self.rows.get(match.event_id)
        if current is None or current.version != expected_version:
            return UpsertOutcome.CONFLICT, None
        stored = match.model_copy(update={"version": expected_version + 1}, deep=True)
        self.rows[match.event_id] = stored
        return UpsertOutcome.UPDATED, stored.model_copy(deep=True)

    async def update_status(
        self,
        event_id: str,
        expected_version: int,
        status: LifecycleStatus,
        reason: str,
        at: datetime,
    ) -> Optional[CanonicalMatch]:
        if event_id in self.broken_ids:
            raise RuntimeError(f"row {event_id} cannot be decoded")
        if self._concurrent_write(event_id):
            return None
        current = self.rows.get(event_id)
        if current is None or current.version != expected_version:
            return None
        update: dict[str, Any] = {
            "status": status,
            "status_reason": reason,
            "version": current.version + 1,
            "last_updated": at,
        }
        if not status.is_open:
            update["betting_availability"] = BettingAvailability.UNAVAILABLE
        stored = current.model_copy(update=update)
        self.rows[event_id] = stored
        return stored.model_copy(deep=True)

    async def record_transition(self, record: TransitionRecord) -> None:
        self.transitions.append(record)

    async def delete_match(self, event_id: str) -> bool:
        return self.rows.pop(event_id, None) is not None


class FakeTeamRepository(TeamRepository):
    def __init__(self, sports: tuple[int, ...] = (1, 3, 4)) -> None:
        self.sports = set(sports)
        self.leagues: dict[int, League] = {}
        self.teams: dict[int, Team] = {}
        self.mappings: list[tuple[int, ProviderTeamMapping]] = []
        self.load_calls = 0
        self._ids = itertools.count(1000)

    def add_league(
        self, league_id: int, name: str, sport_id: int = 1, coverage: LeagueCoverage = LeagueCoverage.REGIONAL
    ) -> League:
        league = League(id=league_id, sport_id=sport_id, name=name, coverage=coverage)
        self.leagues[league_id] = league
        return league

    def add_team(
        self,
        team_id: int,
        name: str,
        sport_id: int = 1,
        league_id: Optional[int] = None,
        aliases: Optional[dict[str, str]] = None,
        is_active: bool = True,
    ) -> Team:
        team = Team(
            id=team_id, sport_id=sport_id, league_id=league_id, name=name,
            aliases=aliases or {}, is_active=is_active,
        )
        self.teams[team_id] = team
        return team

    def mapping_for(self, provider: str, sport_id: int, normalized_name: str) -> Optional[ProviderTeamMapping]:
        for mapped_sport, mapping in self.mappings:
            if (mapped_sport, mapping.provider, mapping.normalized_name) == (sport_id, provider, normalized_name):
                return mapping
        return None

    async def sport_exists(self, sport_id: int) -> bool:
        return sport_id in self.sports

    async def get_league(self, league_id: int) -> Optional[League]:
        return self.leagues.get(league_id)

    async def load_teams(self, sport_id: int, league_id: Optional[int] = None) -> list[Team]:
        self.load_calls += 1
        return [
            t
            for t in self.teams.values()
            if t.sport_id == sport_id and t.is_active and (league_id is None or t.league_id == league_id)
        ]

    async def find_mapping_by_provider_id(
        self, provider: str, sport_id: int, provider_team_id: str
    ) -> Optional[ProviderTeamMapping]:
        for mapped_sport, mapping in self.mappings:
            if (mapped_sport, mapping.provider, mapping.provider_team_id) == (sport_id, provider, provider_team_id):
                return mapping
        return None

    async def find_mapping_by_name(
        self, provider: str, sport_id: int, normalized_name: str
    ) -> Optional[ProviderTeamMapping]:
        return self.mapping_for(provider, sport_id, normalized_name)

    async def upsert_mapping(self, mapping: ProviderTeamMapping, sport_id: int) -> ProviderTeamMapping:
        for index, (mapped_sport, existing) in enumerate(self.mappings):
            if (mapped_sport, existing.provider, existing.normalized_name) != (
                sport_id, mapping.provider, mapping.normalized_name,
            ):
                continue
            if existing.confidence > mapping.confidence:
                return existing
            merged = mapping.model_copy(
                update={"id": existing.id, "provider_team_id": mapping.provider_team_id or existing.provider_team_id}
            )
            self.mappings[index] = (sport_id, merged)
            return merged
        stored = mapping.model_copy(update={"id": next(self._ids)})
        self.mappings.append((sport_id, stored))
        return stored

    async def create_team(self, sport_id: int, league_id: Optional[int], name: str) -> Team:
        return self.add_team(next(self._ids), name, sport_id=sport_id, league_id=league_id)


# ── Builders ────────────────────────────────────────────────────────────
def make_event(
    provider: str,
    event_id: str,
    home: str,
    away: str,
    start: datetime = NOW,
    sport_id: int = 1,
    **fields: Any,
) -> RawEvent:
    return RawEvent(
        provider=provider,
        provider_event_id=event_id,
        sport_id=sport_id,
        home_team=home,
        away_team=away,
        scheduled_start=start,
        received_at=fields.pop("received_at", NOW),
        **fields,
    )


def money_line(home: float, away: float, draw: Optional[float] = None) -> list[MarketOffer]:
    offers = [
        MarketOffer(market_type="moneyline", selection="home", price=home),
        MarketOffer(market_type="moneyline", selection="away", price=away),
    ]
    if draw is not None:
        offers.append(MarketOffer(market_type="moneyline", selection="draw", price=draw))
    return offers


def make_match(event_id: str = "m-1", **fields: Any) -> CanonicalMatch:
    defaults: dict[str, Any] = {
        "event_id": event_id,
        "sport_id": 1,
        "home_team_id": 1,
        "away_team_id": 2,
        "home_team": "Arsenal",
        "away_team": "Chelsea",
        "scheduled_start": NOW - timedelta(hours=1),
        "providers": ["pinnacle"],
        "provider_event_ids": {"pinnacle": f"pin-{event_id}"},
        "last_updated": NOW,
        "version": 1,
    }
    defaults.update(fields)
    return CanonicalMatch(**defaults)


# ── Fixtures ────────────────────────────────────────────────────────────
@pytest.fixture
def settings() -> Settings:
    return Settings(
        provider_allow_list=["pinnacle", "odds_feed", "odds_api", "api_football"],
        provider_priority=["pinnacle", "odds_feed", "odds_api", "api_football"],
        primary_provider="pinnacle",
        authoritative_provider="pinnacle",
        scheduler_sport_ids=[1],
        sync_deadline_s=5,
        metrics_enabled=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def match_repo() -> FakeMatchRepository:
    return FakeMatchRepository()


@pytest.fixture
def team_repo() -> FakeTeamRepository:
    repo = FakeTeamRepository()
    repo.add_league(10, "Premier League", coverage=LeagueCoverage.MAJOR)
    repo.add_league(20, "Isthmian League", coverage=LeagueCoverage.REGIONAL)
    repo.add_team(1, "Arsenal", league_id=10, aliases={"short": "Arsenal FC"})
    repo.add_team(2, "Chelsea", league_id=10)
    repo.add_team(3, "Manchester United", league_id=10, aliases={"short": "Man Utd"})
    repo.add_team(4, "Manchester City", league_id=10, aliases={"short": "Man City"})
    repo.add_team(5, "Tottenham Hotspur", league_id=10, aliases={"short": "Spurs"})
    repo.add_team(6, "Liverpool", league_id=10)
    repo.add_team(30, "Boston Celtics", sport_id=3)
    repo.add_team(31, "Los Angeles Lakers", sport_id=3)
    return repo
