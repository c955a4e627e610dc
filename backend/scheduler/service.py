"""
Scheduler service for Fixture Hub.
Triggers sync and lifecycle jobs on their cadences.
Uses leader election so only one scheduler instance drives jobs; each job is
additionally guarded by its own marker inside the orchestrator.
"""
from __future__ import annotations

import asyncio
import signal
import time
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from shared.config import Settings, get_settings
from shared.models.enums import LifecycleLayer
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger, job_context, setup_logging
from shared.utils.metrics import start_metrics_server
from shared.utils.redis_manager import RedisManager

from ingest.factory import build_components
from ingest.orchestrator import SYNC_JOB, SyncOrchestrator

logger = get_logger(__name__)

CONNECT_RETRY_ATTEMPTS = 10
CONNECT_RETRY_BASE_DELAY_S = 2.0


@dataclass
class ScheduledJob:
    name: str
    interval_s: float
    next_run_at: float = 0.0
    handle: Optional[asyncio.Task[object]] = None

    @property
    def running(self) -> bool:
        return self.handle is not None and not self.handle.done()


def build_cadence(settings: Settings) -> list[ScheduledJob]:
    jobs = [ScheduledJob(f"{SYNC_JOB}:{sport_id}", settings.sync_interval_s) for sport_id in settings.scheduler_sport_ids]
    jobs += [
        ScheduledJob(LifecycleLayer.PROVIDER_STATUS.value, settings.provider_status_interval_s),
        ScheduledJob(LifecycleLayer.PRIMARY_MARKETS.value, settings.primary_markets_interval_s),
        ScheduledJob(LifecycleLayer.TIME_CLEANUP.value, settings.time_cleanup_interval_s),
        ScheduledJob(LifecycleLayer.STALENESS_PURGE.value, settings.staleness_purge_interval_s),
        ScheduledJob(LifecycleLayer.COMPREHENSIVE.value, settings.comprehensive_interval_s),
    ]
    return jobs


class SchedulerService:
    """
    Main scheduler loop:
    1. Acquire or renew leadership via Redis
    2. Start every due job that is not already running locally
    3. Reschedule it one interval ahead
    """

    def __init__(
        self,
        redis: RedisManager,
        orchestrator: SyncOrchestrator,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._redis = redis
        self._orchestrator = orchestrator
        self._settings = settings or get_settings()
        self._clock = clock
        self._instance_id = self._settings.instance_id or str(uuid.uuid4())[:8]
        self._jobs = build_cadence(self._settings)
        self._is_leader = False
        self._shutdown = asyncio.Event()

    @property
    def jobs(self) -> list[ScheduledJob]:
        return self._jobs

    # ── Leader election ─────────────────────────────────────────────────
    async def _acquire_leadership(self) -> bool:
        if self._is_leader:
            renewed = await self._redis.renew_leader(
                "scheduler", self._instance_id, self._settings.scheduler_leader_ttl_s
            )
            if not renewed:
                logger.warning("leadership_lost", instance_id=self._instance_id)
                self._is_leader = False
            return renewed

        acquired = await self._redis.try_acquire_leader(
            "scheduler", self._instance_id, self._settings.scheduler_leader_ttl_s
        )
        if acquired:
            self._is_leader = True
            logger.info("leadership_acquired", instance_id=self._instance_id)
        return acquired

    # ── Dispatch ────────────────────────────────────────────────────────
    def dispatch_due(self) -> list[str]:
        """Start every due job; returns the names started."""
        now = self._clock()
        started: list[str] = []
        for job in self._jobs:
            if now < job.next_run_at:
                continue
            job.next_run_at = now + job.interval_s
            if job.running:
                logger.info("job_still_running", job=job.name)
                continue
            job.handle = asyncio.create_task(self._run_job(job.name), name=f"job:{job.name}")
            started.append(job.name)
        return started

    async def _run_job(self, name: str) -> object:
        with job_context(name, instance_id=self._instance_id):
            try:
                return await self._orchestrator.run_job(name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("job_failed", error=str(exc), exc_info=True)
                return None

    async def stop_jobs(self) -> None:
        handles = [job.handle for job in self._jobs if job.running]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)

    # ── Main loop ───────────────────────────────────────────────────────
    async def run(self) -> None:
        while not self._shutdown.is_set():
            try:
                if not await self._acquire_leadership():
                    await asyncio.sleep(self._settings.scheduler_leader_renew_s)
                    continue
                self.dispatch_due()
                await asyncio.sleep(self._settings.scheduler_tick_interval_s)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("scheduler_loop_error", error=str(exc), exc_info=True)
                await asyncio.sleep(2.0)

        if self._is_leader:
            await self._redis.release_leader("scheduler", self._instance_id)

    def request_shutdown(self) -> None:
        self._shutdown.set()


async def _connect_with_retry(connect_fn: Callable[[], Awaitable[None]], name: str) -> None:
    """Call async connect_fn(); retry with exponential backoff on failure."""
    for attempt in range(1, CONNECT_RETRY_ATTEMPTS + 1):
        try:
            await connect_fn()
            return
        except Exception as exc:
            if attempt == CONNECT_RETRY_ATTEMPTS:
                raise
            delay = CONNECT_RETRY_BASE_DELAY_S * (2 ** (attempt - 1))
            logger.warning(
                "connect_retry",
                name=name,
                attempt=attempt,
                max_attempts=CONNECT_RETRY_ATTEMPTS,
                delay_s=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)


async def main() -> None:
    """Scheduler service entrypoint."""
    settings = get_settings()
    setup_logging("scheduler")
    start_metrics_server()

    redis = RedisManager(settings)
    db = DatabaseManager(settings, application_name="fixturehub-scheduler")
    await _connect_with_retry(redis.connect, "redis")
    await _connect_with_retry(db.connect, "postgres")

    components = build_components(db, redis, settings)
    await components.registry.start()
    service = SchedulerService(redis, components.orchestrator, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.request_shutdown)

    logger.info("scheduler_service_started", instance_id=settings.instance_id, jobs=[j.name for j in service.jobs])

    try:
        await service.run()
    finally:
        await service.stop_jobs()
        await components.registry.close()
        await db.disconnect()
        await redis.disconnect()
        logger.info("scheduler_service_stopped")


if __name__ == "__main__":
    asyncio.run(main())
