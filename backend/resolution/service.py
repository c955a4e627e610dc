"""
Team Resolution Service.

Maps a provider's free-text team name (and optional provider-side team id)
to a canonical team id with a confidence score. Lookup order, first hit wins:

  1. resolution cache
  2. stored mapping by provider team id        → confidence 1.0
  3. stored mapping by normalised name         → stored confidence
  4. fuzzy match within the league, then the sport
  5. authoritative provider seeds a new team   → confidence 1.0

Ambiguous or weak fuzzy results raise and are queued for manual review.
Stored confidences only ever move upward.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from shared.config import Settings, get_settings
from shared.errors import AmbiguousMatch, NoMatchFound, ResolutionError, ValidationError
from shared.models.domain import ProviderTeamMapping, Resolution, Team, utcnow
from shared.models.enums import ResolutionMethod
from shared.utils.logging import get_logger
from shared.utils.metrics import TEAM_RESOLUTIONS
from shared.utils.redis_manager import RedisManager
from storage.base import TeamRepository

from resolution.cache import ResolutionCache, resolution_cache_key
from resolution.similarity import normalize_name, similarity

logger = get_logger(__name__)


class TeamResolutionService:
    def __init__(
        self,
        teams: TeamRepository,
        redis: RedisManager,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._teams = teams
        self._redis = redis
        self._cache = ResolutionCache(redis, self._settings.resolution_cache_ttl_s)
        self._inflight: dict[str, asyncio.Future[Resolution]] = {}

    async def resolve(
        self,
        provider: str,
        raw_name: str,
        sport_id: int,
        provider_team_id: Optional[str] = None,
        league_id: Optional[int] = None,
    ) -> Resolution:
        """
        Resolve one provider team name.

        Raises:
            ValidationError: unknown provider, blank name or unknown sport.
            AmbiguousMatch: several teams score above the accept threshold within epsilon.
            NoMatchFound: nothing reaches the accept threshold.
        """
        name = (raw_name or "").strip()
        await self._validate(provider, name, sport_id)

        key = resolution_cache_key(provider, name, sport_id, provider_team_id, league_id)
        pending = self._inflight.get(key)
        if pending is None:
            pending = asyncio.ensure_future(
                self._resolve(key, provider, name, sport_id, provider_team_id, league_id)
            )
            self._inflight[key] = pending
            pending.add_done_callback(lambda _f, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(pending)

    async def _validate(self, provider: str, name: str, sport_id: int) -> None:
        if provider not in self._settings.provider_allow_list:
            raise ValidationError("provider", f"{provider!r} is not an allowed provider")
        if not name:
            raise ValidationError("raw_name", "team name is empty")
        if not await self._teams.sport_exists(sport_id):
            raise ValidationError("sport_id", f"unknown sport {sport_id}")

    async def _resolve(
        self,
        key: str,
        provider: str,
        name: str,
        sport_id: int,
        provider_team_id: Optional[str],
        league_id: Optional[int],
    ) -> Resolution:
        cached = await self._cache.get(key)
        if cached is not None:
            TEAM_RESOLUTIONS.labels(provider=provider, method=ResolutionMethod.CACHE.value).inc()
            return cached.model_copy(update={"method": ResolutionMethod.CACHE})

        try:
            resolution = await self._lookup(provider, name, sport_id, provider_team_id, league_id)
        except ResolutionError as exc:
            TEAM_RESOLUTIONS.labels(provider=provider, method=type(exc).__name__).inc()
            await self._queue_for_review(exc, sport_id, league_id, provider_team_id)
            raise

        TEAM_RESOLUTIONS.labels(provider=provider, method=resolution.method.value).inc()
        await self._cache.put(key, resolution)
        return resolution

    async def _lookup(
        self,
        provider: str,
        name: str,
        sport_id: int,
        provider_team_id: Optional[str],
        league_id: Optional[int],
    ) -> Resolution:
        normalized = normalize_name(name)

        if provider_team_id:
            mapping = await self._teams.find_mapping_by_provider_id(provider, sport_id, provider_team_id)
            if mapping is not None:
                if mapping.confidence < 1.0:
                    await self._teams.upsert_mapping(
                        mapping.model_copy(
                            update={
                                "confidence": 1.0,
                                "method": ResolutionMethod.PROVIDER_ID,
                                "updated_at": utcnow(),
                            }
                        ),
                        sport_id,
                    )
                    logger.info(
                        "mapping_confidence_upgraded",
                        provider=provider,
                        team_id=mapping.team_id,
                        previous=mapping.confidence,
                    )
                return Resolution(team_id=mapping.team_id, confidence=1.0, method=ResolutionMethod.PROVIDER_ID)

        mapping = await self._teams.find_mapping_by_name(provider, sport_id, normalized)
        if mapping is not None:
            if provider_team_id and not mapping.provider_team_id:
                await self._teams.upsert_mapping(
                    mapping.model_copy(update={"provider_team_id": provider_team_id, "updated_at": utcnow()}),
                    sport_id,
                )
            return Resolution(team_id=mapping.team_id, confidence=mapping.confidence, method=ResolutionMethod.NAME)

        best: Optional[tuple[Team, float]] = None
        scopes: list[Optional[int]] = [league_id, None] if league_id is not None else [None]
        for scope in scopes:
            teams = await self._teams.load_teams(sport_id, scope)
            threshold = (
                self._settings.resolution_cross_league_threshold
                if scope is None and league_id is not None
                else self._settings.resolution_accept_threshold
            )
            accepted, scope_best = self._rank(provider, name, teams, threshold)
            if scope_best is not None and (best is None or scope_best[1] > best[1]):
                best = scope_best
            if accepted is not None:
                team, score = accepted
                await self._save_mapping(team.id, provider, name, normalized, provider_team_id, score, sport_id)
                logger.info(
                    "team_resolved_fuzzy",
                    provider=provider,
                    raw_name=name,
                    team_id=team.id,
                    team=team.name,
                    score=round(score, 3),
                    league_scoped=scope is not None,
                )
                return Resolution(team_id=team.id, confidence=score, method=ResolutionMethod.FUZZY)

        best_score = best[1] if best else 0.0
        if provider == self._settings.authoritative_provider and best_score < self._settings.resolution_review_floor:
            team = await self._teams.create_team(sport_id, league_id, name)
            await self._save_mapping(
                team.id, provider, name, normalized, provider_team_id, 1.0, sport_id,
                method=ResolutionMethod.CREATED, primary=True,
            )
            logger.info("team_created", provider=provider, name=name, team_id=team.id, sport_id=sport_id)
            return Resolution(team_id=team.id, confidence=1.0, method=ResolutionMethod.CREATED, created=True)

        if best is not None and best_score >= self._settings.resolution_review_floor:
            raise NoMatchFound(provider, name, best_team_id=best[0].id, best_score=best_score)
        raise NoMatchFound(provider, name)

    def _rank(
        self, provider: str, name: str, teams: list[Team], threshold: float
    ) -> tuple[Optional[tuple[Team, float]], Optional[tuple[Team, float]]]:
        """Return (accepted candidate or None, best candidate); raises AmbiguousMatch."""
        scored: list[tuple[Team, float]] = []
        for team in teams:
            if not team.is_active:
                continue
            names = [team.name, *team.aliases.values()]
            scored.append((team, max(similarity(name, candidate) for candidate in names)))
        if not scored:
            return None, None

        scored.sort(key=lambda item: (-item[1], item[0].id))
        best = scored[0]
        if best[1] < threshold:
            return None, best

        epsilon = self._settings.resolution_ambiguity_epsilon
        contenders = [item for item in scored if item[1] >= threshold and best[1] - item[1] <= epsilon]
        if len(contenders) > 1:
            raise AmbiguousMatch(provider, name, [(team.id, score) for team, score in contenders])
        return best, best

    async def _save_mapping(
        self,
        team_id: int,
        provider: str,
        name: str,
        normalized: str,
        provider_team_id: Optional[str],
        confidence: float,
        sport_id: int,
        method: ResolutionMethod = ResolutionMethod.FUZZY,
        primary: bool = False,
    ) -> None:
        await self._teams.upsert_mapping(
            ProviderTeamMapping(
                team_id=team_id,
                provider=provider,
                provider_team_id=provider_team_id,
                provider_team_name=name,
                normalized_name=normalized,
                confidence=confidence,
                is_primary=primary,
                method=method,
            ),
            sport_id,
        )

    async def _queue_for_review(
        self,
        exc: ResolutionError,
        sport_id: int,
        league_id: Optional[int],
        provider_team_id: Optional[str],
    ) -> None:
        entry: dict[str, object] = {
            "kind": "team_resolution",
            "error": type(exc).__name__,
            "provider": exc.provider,
            "raw_name": exc.raw_name,
            "provider_team_id": provider_team_id,
            "sport_id": sport_id,
            "league_id": league_id,
            "at": utcnow().isoformat(),
        }
        if isinstance(exc, NoMatchFound):
            entry["best_team_id"] = exc.best_team_id
            entry["best_score"] = exc.best_score
        elif isinstance(exc, AmbiguousMatch):
            entry["candidates"] = exc.candidates
        logger.info("team_resolution_queued_for_review", **{k: v for k, v in entry.items() if k != "at"})
        try:
            await self._redis.push_review(entry)
        except Exception as push_exc:
            logger.warning("review_queue_push_failed", error=str(push_exc), raw_name=exc.raw_name)
