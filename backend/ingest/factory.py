"""
Wires repositories, resolution, aggregation, lifecycle and sync together.
"""
from __future__ import annotations

from dataclasses import dataclass

from shared.config import Settings, get_settings
from shared.utils.database import DatabaseManager
from shared.utils.redis_manager import RedisManager
from storage.sql import SQLMatchRepository, SQLTeamRepository
from resolution.service import TeamResolutionService
from aggregation.engine import MatchAggregationEngine
from lifecycle.manager import MatchLifecycleManager

from ingest.orchestrator import SyncOrchestrator
from ingest.providers.registry import ProviderRegistry, build_registry


@dataclass
class Components:
    matches: SQLMatchRepository
    teams: SQLTeamRepository
    resolver: TeamResolutionService
    engine: MatchAggregationEngine
    lifecycle: MatchLifecycleManager
    registry: ProviderRegistry
    orchestrator: SyncOrchestrator


def build_components(
    db: DatabaseManager,
    redis: RedisManager,
    settings: Settings | None = None,
    registry: ProviderRegistry | None = None,
) -> Components:
    settings = settings or get_settings()
    matches = SQLMatchRepository(db)
    teams = SQLTeamRepository(db)
    resolver = TeamResolutionService(teams, redis, settings)
    engine = MatchAggregationEngine(resolver, settings)
    lifecycle = MatchLifecycleManager(matches, teams, redis, settings)
    registry = registry or build_registry(settings)
    orchestrator = SyncOrchestrator(registry, engine, lifecycle, matches, redis, settings)
    return Components(matches, teams, resolver, engine, lifecycle, registry, orchestrator)
