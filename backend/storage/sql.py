"""
SQLAlchemy implementations of the match and team repositories.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from shared.models.domain import (
    CanonicalMatch,
    League,
    ProviderTeamMapping,
    Team,
    TransitionRecord,
)
from shared.models.enums import BettingAvailability, LifecycleStatus
from shared.models.orm import (
    CanonicalMatchORM,
    LeagueORM,
    MatchTransitionORM,
    ProviderTeamMappingORM,
    SportORM,
    TeamORM,
)
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from storage.base import MatchFilter, MatchRepository, TeamRepository, UpsertOutcome

logger = get_logger(__name__)


def _match_row(match: CanonicalMatch) -> dict[str, Any]:
    data = match.model_dump(mode="json", exclude={"open_market_providers"})
    data["scheduled_start"] = match.scheduled_start
    data["last_updated"] = match.last_updated
    return data


def _to_match(row: CanonicalMatchORM) -> CanonicalMatch:
    return CanonicalMatch.model_validate(
        {
            "event_id": row.event_id,
            "sport_id": row.sport_id,
            "league_id": row.league_id,
            "league_name": row.league_name,
            "home_team_id": row.home_team_id,
            "away_team_id": row.away_team_id,
            "home_team": row.home_team,
            "away_team": row.away_team,
            "scheduled_start": row.scheduled_start,
            "status": row.status,
            "event_status": row.event_status,
            "betting_availability": row.betting_availability,
            "home_score": row.home_score,
            "away_score": row.away_score,
            "period": row.period,
            "clock": row.clock,
            "markets": row.markets,
            "providers": row.providers,
            "provider_event_ids": row.provider_event_ids,
            "has_open_markets": row.has_open_markets,
            "join_key": row.join_key,
            "version": row.version,
            "last_updated": row.last_updated,
            "status_reason": row.status_reason,
        }
    )


class SQLMatchRepository(MatchRepository):
    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def load_matches(self, flt: MatchFilter) -> list[CanonicalMatch]:
        stmt = select(CanonicalMatchORM)
        if flt.sport_id is not None:
            stmt = stmt.where(CanonicalMatchORM.sport_id == flt.sport_id)
        if flt.statuses:
            stmt = stmt.where(CanonicalMatchORM.status.in_([s.value for s in flt.statuses]))
        if flt.event_ids:
            stmt = stmt.where(CanonicalMatchORM.event_id.in_(flt.event_ids))
        if flt.start_from is not None:
            stmt = stmt.where(CanonicalMatchORM.scheduled_start >= flt.start_from)
        if flt.start_to is not None:
            stmt = stmt.where(CanonicalMatchORM.scheduled_start <= flt.start_to)
        stmt = stmt.order_by(CanonicalMatchORM.scheduled_start, CanonicalMatchORM.event_id)
        if flt.limit is not None:
            stmt = stmt.limit(flt.limit)
        async with self._db.read_session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_match(row) for row in rows]

    async def get_match(self, event_id: str) -> Optional[CanonicalMatch]:
        async with self._db.read_session() as session:
            row = await session.get(CanonicalMatchORM, event_id)
        return _to_match(row) if row else None

    async def upsert_match(
        self, match: CanonicalMatch, expected_version: Optional[int]
    ) -> tuple[UpsertOutcome, Optional[CanonicalMatch]]:
        row = _match_row(match)
        async with self._db.write_session() as session:
            if expected_version is None:
                row["version"] = 1
                stmt = (
                    pg_insert(CanonicalMatchORM)
                    .values(**row)
                    .on_conflict_do_nothing(index_elements=["event_id"])
                    .returning(CanonicalMatchORM.event_id)
                )
                inserted = (await session.execute(stmt)).scalar_one_or_none()
                if inserted is None:
                    return UpsertOutcome.CONFLICT, None
                return UpsertOutcome.INSERTED, match.model_copy(update={"version": 1})

            row.pop("event_id")
            row["version"] = expected_version + 1
            stmt = (
                update(CanonicalMatchORM)
                .where(
                    CanonicalMatchORM.event_id == match.event_id,
                    CanonicalMatchORM.version == expected_version,
                )
                .values(**row)
                .returning(CanonicalMatchORM.event_id)
            )
            updated = (await session.execute(stmt)).scalar_one_or_none()
        if updated is None:
            return UpsertOutcome.CONFLICT, None
        return UpsertOutcome.UPDATED, match.model_copy(update={"version": expected_version + 1})

    async def update_status(
        self,
        event_id: str,
        expected_version: int,
        status: LifecycleStatus,
        reason: str,
        at: datetime,
    ) -> Optional[CanonicalMatch]:
        values: dict[str, Any] = {
            "status": status.value,
            "status_reason": reason,
            "version": CanonicalMatchORM.version + 1,
            "last_updated": at,
        }
        if not status.is_open:
            values["betting_availability"] = BettingAvailability.UNAVAILABLE.value
        stmt = (
            update(CanonicalMatchORM)
            .where(CanonicalMatchORM.event_id == event_id, CanonicalMatchORM.version == expected_version)
            .values(**values)
            .returning(CanonicalMatchORM)
        )
        async with self._db.write_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _to_match(row) if row else None

    async def record_transition(self, record: TransitionRecord) -> None:
        async with self._db.write_session() as session:
            session.add(
                MatchTransitionORM(
                    event_id=record.event_id,
                    from_status=record.from_status.value,
                    to_status=record.to_status.value,
                    source=record.source,
                    reason=record.reason,
                    evidence=record.evidence,
                    actor=record.actor,
                    at=record.at,
                )
            )

    async def delete_match(self, event_id: str) -> bool:
        async with self._db.write_session() as session:
            result = await session.execute(
                delete(CanonicalMatchORM).where(CanonicalMatchORM.event_id == event_id)
            )
        return bool(result.rowcount)


class SQLTeamRepository(TeamRepository):
    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def sport_exists(self, sport_id: int) -> bool:
        async with self._db.read_session() as session:
            return await session.get(SportORM, sport_id) is not None

    async def get_league(self, league_id: int) -> Optional[League]:
        async with self._db.read_session() as session:
            row = await session.get(LeagueORM, league_id)
        return League.model_validate(row) if row else None

    async def load_teams(self, sport_id: int, league_id: Optional[int] = None) -> list[Team]:
        stmt = select(TeamORM).where(TeamORM.sport_id == sport_id, TeamORM.is_active.is_(True))
        if league_id is not None:
            stmt = stmt.where(TeamORM.league_id == league_id)
        async with self._db.read_session() as session:
            rows = (await session.execute(stmt.order_by(TeamORM.id))).scalars().all()
        return [Team.model_validate(row) for row in rows]

    async def find_mapping_by_provider_id(
        self, provider: str, sport_id: int, provider_team_id: str
    ) -> Optional[ProviderTeamMapping]:
        stmt = (
            select(ProviderTeamMappingORM)
            .where(
                ProviderTeamMappingORM.provider == provider,
                ProviderTeamMappingORM.sport_id == sport_id,
                ProviderTeamMappingORM.provider_team_id == provider_team_id,
            )
            .order_by(ProviderTeamMappingORM.confidence.desc())
            .limit(1)
        )
        async with self._db.read_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return ProviderTeamMapping.model_validate(row) if row else None

    async def find_mapping_by_name(
        self, provider: str, sport_id: int, normalized_name: str
    ) -> Optional[ProviderTeamMapping]:
        stmt = select(ProviderTeamMappingORM).where(
            ProviderTeamMappingORM.provider == provider,
            ProviderTeamMappingORM.sport_id == sport_id,
            ProviderTeamMappingORM.normalized_name == normalized_name,
        )
        async with self._db.read_session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
        return ProviderTeamMapping.model_validate(row) if row else None

    async def upsert_mapping(self, mapping: ProviderTeamMapping, sport_id: int) -> ProviderTeamMapping:
        values = mapping.model_dump(exclude={"id", "created_at"})
        values["method"] = mapping.method.value
        values["sport_id"] = sport_id
        table = ProviderTeamMappingORM.__table__
        stmt = pg_insert(ProviderTeamMappingORM).values(**values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_mapping_provider_name",
            set_={
                "confidence": stmt.excluded.confidence,
                "method": stmt.excluded.method,
                "provider_team_id": func.coalesce(stmt.excluded.provider_team_id, table.c.provider_team_id),
                "updated_at": stmt.excluded.updated_at,
            },
            # Confidence is only ever revised upward.
            where=table.c.confidence <= stmt.excluded.confidence,
        ).returning(ProviderTeamMappingORM.id)
        async with self._db.write_session() as session:
            mapping_id = (await session.execute(stmt)).scalar_one_or_none()
        return mapping.model_copy(update={"id": mapping_id or mapping.id})

    async def create_team(self, sport_id: int, league_id: Optional[int], name: str) -> Team:
        async with self._db.write_session() as session:
            row = TeamORM(sport_id=sport_id, league_id=league_id, name=name, aliases={}, is_active=True)
            session.add(row)
            await session.flush()
            team = Team.model_validate(row)
        logger.info("team_row_created", team_id=team.id, name=name, sport_id=sport_id)
        return team
