"""
Match REST endpoints.

GET /v1/matches           Last-known-good merged fixtures, each with a stale flag.
GET /v1/matches/review    Unfinished matches whose risk warrants a manual look.
GET /v1/matches/{id}      One merged fixture.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from shared.config import Settings
from shared.errors import MatchNotFound
from shared.models.domain import CanonicalMatch, utcnow
from shared.models.enums import LifecycleStatus
from shared.utils.logging import get_logger
from shared.utils.redis_manager import MATCH_CACHE_KEY, MATCH_LIST_KEY, RedisManager
from storage.base import MatchFilter, MatchRepository
from lifecycle.manager import MatchLifecycleManager

from api.dependencies import get_api_settings, get_lifecycle, get_matches, get_redis

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/matches", tags=["matches"])

LIST_CACHE_TTL_S = 3600
MATCH_CACHE_TTL_S = 30


def match_view(match: CanonicalMatch, now: datetime, stale_after_s: int) -> dict[str, Any]:
    body = match.model_dump(mode="json", exclude={"open_market_providers"})
    body["stale"] = (now - match.last_updated).total_seconds() > stale_after_s
    return body


async def _cache_read(redis: RedisManager, key: str) -> Optional[dict[str, Any]]:
    try:
        return await redis.cache_get(key)
    except Exception as exc:
        logger.warning("match_cache_read_failed", key=key, error=str(exc))
        return None


async def _cache_write(redis: RedisManager, key: str, value: dict[str, Any], ttl_s: int) -> None:
    try:
        await redis.cache_set(key, value, ttl_s)
    except Exception as exc:
        logger.warning("match_cache_write_failed", key=key, error=str(exc))


@router.get("")
async def list_matches(
    sport_id: Optional[int] = Query(None),
    status: Optional[list[LifecycleStatus]] = Query(None),
    limit: int = Query(500, ge=1, le=2000),
    matches: MatchRepository = Depends(get_matches),
    redis: RedisManager = Depends(get_redis),
    settings: Settings = Depends(get_api_settings),
) -> dict[str, Any]:
    """
    Serve the persisted merged set. Reads are never blocked by a sync in
    progress; when the store is unreachable, the last cached copy for the
    sport is served instead.
    """
    now = utcnow()
    cache_key = MATCH_LIST_KEY.format(sport_id=sport_id if sport_id is not None else "all")
    try:
        rows = await matches.load_matches(
            MatchFilter(sport_id=sport_id, statuses=list(status or []), limit=limit)
        )
        source = "database"
    except Exception as exc:
        logger.warning("match_list_store_unavailable", sport_id=sport_id, error=str(exc))
        cached = await _cache_read(redis, cache_key)
        if cached is None:
            raise HTTPException(status_code=503, detail="Match store unavailable") from exc
        rows = [CanonicalMatch.model_validate(m) for m in cached.get("matches", [])]
        if status:
            rows = [m for m in rows if m.status in status]
        source = "cache"
    else:
        if not status:
            await _cache_write(
                redis, cache_key, {"matches": [m.model_dump(mode="json") for m in rows]}, LIST_CACHE_TTL_S
            )

    return {
        "matches": [match_view(m, now, settings.api_stale_after_s) for m in rows],
        "count": len(rows),
        "source": source,
        "generated_at": now.isoformat(),
    }


@router.get("/review")
async def list_review_candidates(
    sport_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    lifecycle: MatchLifecycleManager = Depends(get_lifecycle),
) -> dict[str, Any]:
    candidates = await lifecycle.review_candidates(sport_id=sport_id, limit=limit)
    return {
        "candidates": [c.model_dump(mode="json") for c in candidates],
        "count": len(candidates),
    }


@router.get("/{event_id}")
async def get_match(
    event_id: str,
    matches: MatchRepository = Depends(get_matches),
    redis: RedisManager = Depends(get_redis),
    settings: Settings = Depends(get_api_settings),
) -> dict[str, Any]:
    cache_key = MATCH_CACHE_KEY.format(event_id=event_id)
    cached = await _cache_read(redis, cache_key)
    if cached is not None:
        match = CanonicalMatch.model_validate(cached)
    else:
        found = await matches.get_match(event_id)
        if found is None:
            raise MatchNotFound(event_id)
        match = found
        await _cache_write(redis, cache_key, match.model_dump(mode="json"), MATCH_CACHE_TTL_S)
    return match_view(match, utcnow(), settings.api_stale_after_s)
