"""
Dependency injection for the API service.
Provides the match repository, lifecycle manager and Redis to route handlers.
"""
from __future__ import annotations

from shared.config import Settings, get_settings
from shared.utils.redis_manager import RedisManager
from storage.base import MatchRepository
from lifecycle.manager import MatchLifecycleManager

# Module-level singletons, initialized at startup
_redis: RedisManager | None = None
_matches: MatchRepository | None = None
_lifecycle: MatchLifecycleManager | None = None


def init_dependencies(
    redis: RedisManager,
    matches: MatchRepository,
    lifecycle: MatchLifecycleManager,
) -> None:
    """Initialize module-level singletons. Called once at startup."""
    global _redis, _matches, _lifecycle
    _redis = redis
    _matches = matches
    _lifecycle = lifecycle


def get_redis() -> RedisManager:
    if _redis is None:
        raise RuntimeError("RedisManager not initialized, call init_dependencies first")
    return _redis


def get_matches() -> MatchRepository:
    if _matches is None:
        raise RuntimeError("MatchRepository not initialized, call init_dependencies first")
    return _matches


def get_lifecycle() -> MatchLifecycleManager:
    if _lifecycle is None:
        raise RuntimeError("MatchLifecycleManager not initialized, call init_dependencies first")
    return _lifecycle


def get_api_settings() -> Settings:
    return get_settings()
