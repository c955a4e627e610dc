"""
Redis connection manager for Fixture Hub.
Provides the async connection pool, the resolution/match cache, job markers,
leader election and the manual-review / failure queues.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger
from shared.utils.metrics import REVIEW_QUEUE_DEPTH

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
RESOLUTION_KEY = "resolve:{provider}:{sport_id}:{league_id}:{ident}"
MATCH_CACHE_KEY = "cache:match:{event_id}"
MATCH_LIST_KEY = "cache:matches:sport:{sport_id}"
JOB_KEY = "job:{job}"
LEADER_KEY = "leader:{role}"
REVIEW_QUEUE_KEY = "review:queue"
FAILURE_LOG_KEY = "failures:lifecycle"
FAILURE_COUNT_KEY = "failcount:match:{event_id}"

REVIEW_QUEUE_MAX = 1000
FAILURE_LOG_MAX = 1000


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


class RedisManager:
    """Manages async Redis connection pool and provides typed helpers."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool."""
        self._pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        await self._pool.ping()
        logger.info("redis_connected", url=self._settings.redis_url_str)

    async def disconnect(self) -> None:
        if self._pool:
            await self._pool.aclose()
            logger.info("redis_disconnected")

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    # ── Cache ───────────────────────────────────────────────────────────
    async def cache_get(self, key: str) -> Optional[dict[str, Any]]:
        raw = await self.client.get(key)
        return json.loads(raw) if raw else None

    async def cache_set(self, key: str, value: dict[str, Any], ttl_s: int) -> None:
        await self.client.set(key, json.dumps(value, default=str), ex=ttl_s)

    async def cache_delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def invalidate_match(self, event_id: str, sport_id: int) -> None:
        """Drop cached views of a match after its status changed."""
        await self.cache_delete(
            _fmt(MATCH_CACHE_KEY, event_id=event_id),
            _fmt(MATCH_LIST_KEY, sport_id=sport_id),
        )

    # ── Job markers ─────────────────────────────────────────────────────

    # Lua script: atomically delete only if we hold the marker
    _RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    redis.call("del", KEYS[1])
    return 1
end
return 0
"""

    # Lua script: atomically renew TTL only if we hold the marker
    _RENEW_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    redis.call("expire", KEYS[1], ARGV[2])
    return 1
end
return 0
"""

    async def try_acquire_job(self, job: str, token: str, ttl_s: int) -> bool:
        """Set the in-progress marker for a job; False when another run holds it."""
        key = _fmt(JOB_KEY, job=job)
        return bool(await self.client.set(key, token, nx=True, ex=ttl_s))

    async def release_job(self, job: str, token: str) -> bool:
        key = _fmt(JOB_KEY, job=job)
        return bool(await self.client.eval(self._RELEASE_SCRIPT, 1, key, token))

    # ── Leader election ─────────────────────────────────────────────────
    async def try_acquire_leader(self, role: str, instance_id: str, ttl_s: int = 30) -> bool:
        key = _fmt(LEADER_KEY, role=role)
        return bool(await self.client.set(key, instance_id, nx=True, ex=ttl_s))

    async def renew_leader(self, role: str, instance_id: str, ttl_s: int = 30) -> bool:
        key = _fmt(LEADER_KEY, role=role)
        return bool(await self.client.eval(self._RENEW_SCRIPT, 1, key, instance_id, str(ttl_s)))

    async def release_leader(self, role: str, instance_id: str) -> bool:
        key = _fmt(LEADER_KEY, role=role)
        return bool(await self.client.eval(self._RELEASE_SCRIPT, 1, key, instance_id))

    # ── Review queue ────────────────────────────────────────────────────
    async def push_review(self, entry: dict[str, Any]) -> None:
        """Queue an item (unresolved team, disputed transition) for a human."""
        pipe = self.client.pipeline(transaction=True)
        pipe.lpush(REVIEW_QUEUE_KEY, json.dumps(entry, default=str))
        pipe.ltrim(REVIEW_QUEUE_KEY, 0, REVIEW_QUEUE_MAX - 1)
        pipe.llen(REVIEW_QUEUE_KEY)
        *_, depth = await pipe.execute()
        REVIEW_QUEUE_DEPTH.set(depth)

    async def list_review(self, limit: int = 100) -> list[dict[str, Any]]:
        raw = await self.client.lrange(REVIEW_QUEUE_KEY, 0, limit - 1)
        return [json.loads(r) for r in raw]

    # ── Lifecycle failure log ───────────────────────────────────────────
    async def record_failure(self, entry: dict[str, Any]) -> int:
        """Append to the failure log and bump the match's consecutive failure count."""
        count_key = _fmt(FAILURE_COUNT_KEY, event_id=entry["event_id"])
        pipe = self.client.pipeline(transaction=True)
        pipe.lpush(FAILURE_LOG_KEY, json.dumps(entry, default=str))
        pipe.ltrim(FAILURE_LOG_KEY, 0, FAILURE_LOG_MAX - 1)
        pipe.incr(count_key)
        pipe.expire(count_key, 7 * 24 * 3600)
        results = await pipe.execute()
        return int(results[2])

    async def reset_failures(self, event_id: str) -> None:
        await self.client.delete(_fmt(FAILURE_COUNT_KEY, event_id=event_id))

    async def list_failures(self, limit: int = 100) -> list[dict[str, Any]]:
        raw = await self.client.lrange(FAILURE_LOG_KEY, 0, limit - 1)
        return [json.loads(r) for r in raw]
