"""
Seed script for Fixture Hub.

Creates the schema, then upserts the reference data the resolver and the
lifecycle rules rely on: sports with their expected durations, leagues with
their coverage tier, and optionally canonical teams from a JSON file.

Usage:
    python -m seed                 # sports and leagues
    python -m seed teams.json      # ... plus teams

teams.json is a list of {"sport_id", "league", "name", "aliases"} objects.
"""
from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from shared.config import get_settings
from shared.models.orm import LeagueORM, SportORM, TeamORM
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, setup_logging
from lifecycle.coverage import coverage_for_league_name

logger = get_logger(__name__)

SPORTS: dict[int, str] = {
    1: "soccer",
    2: "tennis",
    3: "basketball",
    4: "hockey",
    5: "volleyball",
    6: "handball",
    7: "american_football",
    8: "mma",
    9: "baseball",
    10: "esports",
    11: "cricket",
}

LEAGUES: list[tuple[int, str]] = [
    (1, "Premier League"),
    (1, "La Liga"),
    (1, "Bundesliga"),
    (1, "Serie A"),
    (1, "Ligue 1"),
    (1, "UEFA Champions League"),
    (1, "MLS"),
    (1, "Championship"),
    (3, "NBA"),
    (3, "EuroLeague"),
    (4, "NHL"),
    (7, "NFL"),
    (9, "MLB"),
]


async def seed_sports(db: DatabaseManager) -> None:
    settings = get_settings()
    async with db.write_session() as session:
        for sport_id, name in SPORTS.items():
            duration = settings.duration_for_sport(sport_id)
            stmt = pg_insert(SportORM).values(
                id=sport_id, name=name, default_duration_minutes=duration
            ).on_conflict_do_update(
                index_elements=[SportORM.id],
                set_={"default_duration_minutes": duration},
            )
            await session.execute(stmt)
    logger.info("sports_seeded", count=len(SPORTS))


async def seed_leagues(db: DatabaseManager) -> dict[tuple[int, str], int]:
    """Upsert leagues; returns (sport_id, name) -> league id."""
    async with db.write_session() as session:
        for sport_id, name in LEAGUES:
            coverage = coverage_for_league_name(name).value
            stmt = pg_insert(LeagueORM).values(
                sport_id=sport_id, name=name, coverage=coverage
            ).on_conflict_do_update(
                constraint="uq_league_sport_name",
                set_={"coverage": coverage},
            )
            await session.execute(stmt)

        rows = (await session.execute(select(LeagueORM.id, LeagueORM.sport_id, LeagueORM.name))).all()
    logger.info("leagues_seeded", count=len(LEAGUES))
    return {(row.sport_id, row.name): row.id for row in rows}


async def seed_teams(db: DatabaseManager, path: Path, leagues: dict[tuple[int, str], int]) -> int:
    entries: list[dict[str, Any]] = json.loads(path.read_text())
    created = 0
    async with db.write_session() as session:
        for entry in entries:
            sport_id = int(entry["sport_id"])
            league_id: Optional[int] = leagues.get((sport_id, entry.get("league", "")))
            existing = (
                await session.execute(
                    select(TeamORM).where(TeamORM.sport_id == sport_id, TeamORM.name == entry["name"])
                )
            ).scalar_one_or_none()
            if existing is not None:
                existing.aliases = {**existing.aliases, **entry.get("aliases", {})}
                existing.league_id = existing.league_id or league_id
                continue
            session.add(
                TeamORM(
                    sport_id=sport_id,
                    league_id=league_id,
                    name=entry["name"],
                    aliases=entry.get("aliases", {}),
                )
            )
            created += 1
    logger.info("teams_seeded", total=len(entries), created=created)
    return created


async def seed(teams_file: Optional[str] = None) -> None:
    setup_logging("seed")
    db = DatabaseManager(get_settings(), application_name="fixturehub-seed")
    await db.connect()
    try:
        await db.create_schema()
        await seed_sports(db)
        leagues = await seed_leagues(db)
        if teams_file:
            await seed_teams(db, Path(teams_file), leagues)
    finally:
        await db.disconnect()


if __name__ == "__main__":
    asyncio.run(seed(sys.argv[1] if len(sys.argv) > 1 else None))
