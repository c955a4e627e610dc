"""
Redis-backed cache of resolved team lookups.

Entries live for minutes; a stale hit is tolerated because mappings only
ever gain confidence.
"""
from __future__ import annotations

from typing import Optional

from shared.models.domain import Resolution
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RESOLUTION_KEY, RedisManager

from resolution.similarity import compact

logger = get_logger(__name__)


def resolution_cache_key(
    provider: str,
    raw_name: str,
    sport_id: int,
    provider_team_id: Optional[str] = None,
    league_id: Optional[int] = None,
) -> str:
    ident = f"id:{provider_team_id}" if provider_team_id else f"name:{compact(raw_name)}"
    return RESOLUTION_KEY.format(
        provider=provider,
        sport_id=sport_id,
        league_id=league_id if league_id is not None else "-",
        ident=ident,
    )


class ResolutionCache:
    def __init__(self, redis: RedisManager, ttl_s: int) -> None:
        self._redis = redis
        self._ttl_s = ttl_s

    async def get(self, key: str) -> Optional[Resolution]:
        try:
            raw = await self._redis.cache_get(key)
        except Exception as exc:
            logger.warning("resolution_cache_read_failed", key=key, error=str(exc))
            return None
        return Resolution.model_validate(raw) if raw else None

    async def put(self, key: str, resolution: Resolution) -> None:
        try:
            await self._redis.cache_set(key, resolution.model_dump(mode="json"), self._ttl_s)
        except Exception as exc:
            logger.warning("resolution_cache_write_failed", key=key, error=str(exc))
