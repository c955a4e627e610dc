"""
SQLAlchemy 2.0 ORM models for Fixture Hub.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class SportORM(Base):
    __tablename__ = "sports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    default_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=180)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    leagues: Mapped[list["LeagueORM"]] = relationship(back_populates="sport")
    teams: Mapped[list["TeamORM"]] = relationship(back_populates="sport")


class LeagueORM(Base):
    __tablename__ = "leagues"
    __table_args__ = (UniqueConstraint("sport_id", "name", name="uq_league_sport_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sport_id: Mapped[int] = mapped_column(Integer, ForeignKey("sports.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    coverage: Mapped[str] = mapped_column(
        String(20), nullable=False, default="regional", server_default="regional"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    sport: Mapped["SportORM"] = relationship(back_populates="leagues")


class TeamORM(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sport_id: Mapped[int] = mapped_column(Integer, ForeignKey("sports.id"), nullable=False)
    league_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("leagues.id"))
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    aliases: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    sport: Mapped["SportORM"] = relationship(back_populates="teams")
    mappings: Mapped[list["ProviderTeamMappingORM"]] = relationship(back_populates="team")


class ProviderTeamMappingORM(Base):
    __tablename__ = "provider_team_mappings"
    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="chk_mapping_confidence"),
        UniqueConstraint("provider", "sport_id", "normalized_name", name="uq_mapping_provider_name"),
        Index("ix_mapping_provider_id", "provider", "sport_id", "provider_team_id"),
        Index(
            "uq_mapping_primary",
            "team_id",
            "provider",
            unique=True,
            postgresql_where="is_primary",
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    team_id: Mapped[int] = mapped_column(Integer, ForeignKey("teams.id"), nullable=False)
    sport_id: Mapped[int] = mapped_column(Integer, ForeignKey("sports.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    provider_team_id: Mapped[Optional[str]] = mapped_column(String(100))
    provider_team_name: Mapped[str] = mapped_column(String(200), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(200), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    team: Mapped["TeamORM"] = relationship(back_populates="mappings")


class CanonicalMatchORM(Base):
    __tablename__ = "canonical_matches"
    __table_args__ = (
        Index("ix_matches_sport_status", "sport_id", "status"),
        Index("ix_matches_join_key", "join_key"),
    )

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    sport_id: Mapped[int] = mapped_column(Integer, ForeignKey("sports.id"), nullable=False)
    league_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("leagues.id"))
    league_name: Mapped[Optional[str]] = mapped_column(String(200))
    home_team_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("teams.id"))
    away_team_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("teams.id"))
    home_team: Mapped[str] = mapped_column(String(200), nullable=False)
    away_team: Mapped[str] = mapped_column(String(200), nullable=False)
    scheduled_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    event_status: Mapped[str] = mapped_column(String(20), nullable=False)
    betting_availability: Mapped[str] = mapped_column(String(30), nullable=False)
    home_score: Mapped[Optional[int]] = mapped_column(Integer)
    away_score: Mapped[Optional[int]] = mapped_column(Integer)
    period: Mapped[Optional[str]] = mapped_column(String(20))
    clock: Mapped[Optional[str]] = mapped_column(String(20))
    markets: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    providers: Mapped[list[str]] = mapped_column(JSONB, nullable=False)
    provider_event_ids: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    has_open_markets: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    join_key: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status_reason: Mapped[Optional[str]] = mapped_column(Text)


class MatchTransitionORM(Base):
    __tablename__ = "match_transitions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_status: Mapped[str] = mapped_column(String(20), nullable=False)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    actor: Mapped[Optional[str]] = mapped_column(String(100))
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
