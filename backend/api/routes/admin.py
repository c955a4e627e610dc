"""
Operator endpoints: status overrides, match removal and the review/failure queues.
Every change made here is written to the transition audit log.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from shared.models.enums import LifecycleStatus
from shared.utils.redis_manager import RedisManager
from lifecycle.manager import MatchLifecycleManager

from api.dependencies import get_lifecycle, get_redis

router = APIRouter(prefix="/v1/admin", tags=["admin"])


class StatusOverride(BaseModel):
    status: LifecycleStatus
    reason: str = Field(min_length=1)
    actor: str = Field(min_length=1)


@router.post("/matches/{event_id}/status")
async def override_status(
    event_id: str,
    body: StatusOverride,
    lifecycle: MatchLifecycleManager = Depends(get_lifecycle),
) -> dict[str, Any]:
    record = await lifecycle.force_status(event_id, body.status, body.reason, body.actor)
    return {
        "event_id": event_id,
        "changed": record is not None,
        "transition": record.model_dump(mode="json") if record else None,
    }


@router.delete("/matches/{event_id}")
async def remove_match(
    event_id: str,
    reason: str = Query(..., min_length=1),
    actor: str = Query(..., min_length=1),
    lifecycle: MatchLifecycleManager = Depends(get_lifecycle),
) -> dict[str, Any]:
    await lifecycle.remove_match(event_id, reason, actor)
    return {"event_id": event_id, "removed": True}


@router.get("/review-queue")
async def review_queue(
    limit: int = Query(100, ge=1, le=1000),
    redis: RedisManager = Depends(get_redis),
) -> dict[str, Any]:
    """Team names that could not be resolved automatically, newest first."""
    entries = await redis.list_review(limit)
    return {"entries": entries, "count": len(entries)}


@router.get("/failures")
async def lifecycle_failures(
    limit: int = Query(100, ge=1, le=1000),
    redis: RedisManager = Depends(get_redis),
) -> dict[str, Any]:
    entries = await redis.list_failures(limit)
    return {"entries": entries, "count": len(entries)}
