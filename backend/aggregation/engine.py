"""
Match Aggregation Engine.

Joins per-provider event lists into one CanonicalMatch per real-world fixture:

  1. resolve home/away names to canonical team ids (unresolved sides keep their
     names and join on the normalised name instead)
  2. key each event by sport + unordered pair of sides
  3. within a pair, cluster events whose start times lie within the tolerance
     window of the cluster's earliest event
  4. merge each cluster onto the highest-priority provider's record

Grouping depends only on the event set, never on input order.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from shared.config import Settings, get_settings
from shared.errors import FixtureHubError
from shared.models.domain import AggregatedOdds, CanonicalMatch, RawEvent
from shared.models.enums import (
    BettingAvailability,
    EventStatus,
    LifecycleStatus,
    MarketCategory,
)
from shared.utils.logging import get_logger
from shared.utils.metrics import AGGREGATED_MATCHES
from resolution.service import TeamResolutionService
from resolution.similarity import compact

from aggregation.markets import categories_of, merge_offers
from aggregation.status import normalize_status

logger = get_logger(__name__)

_EVENT_ID_NAMESPACE = uuid.UUID("6f1c3a52-0d7e-4f7b-9a59-2f0f4a8e8c11")


def side_key(team_id: Optional[int], name: str) -> str:
    return f"team:{team_id}" if team_id is not None else f"name:{compact(name)}"


def pair_key(sport_id: int, home_key: str, away_key: str) -> str:
    first, second = sorted((home_key, away_key))
    return f"{sport_id}|{first}|{second}"


@dataclass
class ResolvedEvent:
    event: RawEvent
    home_team_id: Optional[int]
    away_team_id: Optional[int]
    priority: int

    @property
    def home_key(self) -> str:
        return side_key(self.home_team_id, self.event.home_team)

    @property
    def away_key(self) -> str:
        return side_key(self.away_team_id, self.event.away_team)

    @property
    def pair(self) -> str:
        return pair_key(self.event.sport_id, self.home_key, self.away_key)

    @property
    def unresolved_sides(self) -> int:
        return (self.home_team_id is None) + (self.away_team_id is None)

    @property
    def sort_key(self) -> tuple[datetime, int, str, str]:
        ev = self.event
        return (ev.scheduled_start, self.priority, ev.provider, ev.provider_event_id)


class MatchAggregationEngine:
    def __init__(
        self,
        resolver: TeamResolutionService,
        settings: Settings | None = None,
        max_concurrency: int = 16,
    ) -> None:
        self._settings = settings or get_settings()
        self._resolver = resolver
        self._window = timedelta(minutes=self._settings.aggregation_window_minutes)
        self._semaphore = asyncio.Semaphore(max_concurrency)

    def priority_of(self, provider: str) -> int:
        order = self._settings.provider_priority
        return order.index(provider) if provider in order else len(order)

    async def aggregate(self, provider_event_lists: Iterable[Sequence[RawEvent]]) -> list[CanonicalMatch]:
        events = [event for events in provider_event_lists for event in events]
        resolved = await self.resolve_events(events)
        matches = [self._merge(cluster) for cluster in self.group(resolved)]

        for match in matches:
            AGGREGATED_MATCHES.labels(sport=str(match.sport_id), providers=str(len(match.providers))).inc()
        logger.info(
            "aggregation_complete",
            events=len(events),
            matches=len(matches),
            multi_provider=sum(1 for m in matches if len(m.providers) > 1),
        )
        return matches

    # ── Resolution ──────────────────────────────────────────────────────
    async def resolve_events(self, events: Sequence[RawEvent]) -> list[ResolvedEvent]:
        return list(await asyncio.gather(*(self._resolve_event(event) for event in events)))

    async def _resolve_event(self, event: RawEvent) -> ResolvedEvent:
        async with self._semaphore:
            home_id = await self._resolve_side(event, event.home_team, event.home_team_id)
            away_id = await self._resolve_side(event, event.away_team, event.away_team_id)
        if home_id is not None and home_id == away_id:
            logger.warning(
                "event_sides_resolved_to_same_team",
                provider=event.provider,
                provider_event_id=event.provider_event_id,
                team_id=home_id,
            )
            home_id = away_id = None
        return ResolvedEvent(event, home_id, away_id, self.priority_of(event.provider))

    async def _resolve_side(self, event: RawEvent, name: str, provider_team_id: Optional[str]) -> Optional[int]:
        try:
            resolution = await self._resolver.resolve(
                event.provider,
                name,
                event.sport_id,
                provider_team_id=provider_team_id,
                league_id=event.league_id,
            )
        except FixtureHubError as exc:
            logger.info(
                "team_unresolved",
                provider=event.provider,
                provider_event_id=event.provider_event_id,
                name=name,
                error=type(exc).__name__,
                detail=str(exc),
            )
            return None
        except Exception:
            logger.exception(
                "team_resolution_error",
                provider=event.provider,
                provider_event_id=event.provider_event_id,
                name=name,
            )
            return None
        return resolution.team_id

    # ── Grouping ────────────────────────────────────────────────────────
    def group(self, resolved: Iterable[ResolvedEvent]) -> list[list[ResolvedEvent]]:
        by_pair: dict[str, list[ResolvedEvent]] = {}
        for item in resolved:
            by_pair.setdefault(item.pair, []).append(item)

        clusters: list[list[ResolvedEvent]] = []
        for pair in sorted(by_pair):
            current: list[ResolvedEvent] = []
            for item in sorted(by_pair[pair], key=lambda r: r.sort_key):
                joinable = (
                    current
                    and item.event.scheduled_start - current[0].event.scheduled_start <= self._window
                    and all(member.event.provider != item.event.provider for member in current)
                )
                if joinable:
                    current.append(item)
                else:
                    if current:
                        clusters.append(current)
                    current = [item]
            if current:
                clusters.append(current)
        return clusters

    # ── Merge ───────────────────────────────────────────────────────────
    def _merge(self, cluster: list[ResolvedEvent]) -> CanonicalMatch:
        base = min(
            cluster,
            key=lambda r: (r.priority, r.unresolved_sides, r.event.scheduled_start, r.event.provider_event_id),
        )
        members = sorted(cluster, key=lambda r: (r.priority, r.event.provider))
        anchor = min(r.event.scheduled_start for r in cluster)
        ev = base.event

        markets: dict[MarketCategory, list[AggregatedOdds]] = {}
        merge_offers(markets, ev.provider, ev.markets)
        base_categories = categories_of(ev.markets)
        for member in members:
            if member is base:
                continue
            merge_offers(
                markets,
                member.event.provider,
                member.event.markets,
                allowed=base_categories,
                swap_sides=self._is_swapped(base, member),
            )

        event_status = EventStatus.UNKNOWN
        home_score = away_score = None
        period = clock = None
        league_id, league_name = ev.league_id, ev.league_name
        for member in members:
            m = member.event
            if event_status == EventStatus.UNKNOWN:
                event_status = normalize_status(m.status_code)
            if home_score is None and m.home_score is not None and m.away_score is not None:
                if self._is_swapped(base, member):
                    home_score, away_score = m.away_score, m.home_score
                else:
                    home_score, away_score = m.home_score, m.away_score
            period = period or m.period
            clock = clock or m.clock
            league_id = league_id if league_id is not None else m.league_id
            league_name = league_name or m.league_name

        open_market_providers = sorted({m.event.provider for m in members if m.event.offers_markets})
        has_open_markets = bool(open_market_providers)
        status = LifecycleStatus.LIVE if event_status == EventStatus.LIVE else LifecycleStatus.PREMATCH
        join_key = f"{base.pair}|{anchor.isoformat()}"

        return CanonicalMatch(
            event_id=str(uuid.uuid5(_EVENT_ID_NAMESPACE, f"{ev.provider}:{ev.provider_event_id}")),
            sport_id=ev.sport_id,
            league_id=league_id,
            league_name=league_name,
            home_team_id=base.home_team_id,
            away_team_id=base.away_team_id,
            home_team=ev.home_team,
            away_team=ev.away_team,
            scheduled_start=ev.scheduled_start,
            status=status,
            event_status=event_status,
            betting_availability=betting_availability(event_status, has_open_markets),
            home_score=home_score,
            away_score=away_score,
            period=period,
            clock=clock,
            markets=markets,
            providers=list(dict.fromkeys(m.event.provider for m in members)),
            provider_event_ids={m.event.provider: m.event.provider_event_id for m in members},
            has_open_markets=has_open_markets,
            open_market_providers=open_market_providers,
            join_key=join_key,
            last_updated=max(m.event.received_at for m in members),
        )

    @staticmethod
    def _is_swapped(base: ResolvedEvent, member: ResolvedEvent) -> bool:
        return member.home_key != base.home_key


def betting_availability(event_status: EventStatus, has_open_markets: bool) -> BettingAvailability:
    if not has_open_markets or event_status.is_terminal:
        return BettingAvailability.UNAVAILABLE
    if event_status == EventStatus.LIVE:
        return BettingAvailability.LIVE_BETTING
    return BettingAvailability.AVAILABLE_FOR_BETTING
