"""
Sync scheduler — periodically enqueues incremental jobs for due connections.

A connection is due when ``now >= last_run + interval + jitter``, where
``last_run`` is the most recent finished incremental job (or the moment the
scheduler first saw the connection) and the jitter is drawn once per cycle so
a fleet of connections spreads out instead of firing together.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from core.normalizer import parse_timestamp
from utils.schemas import Connection, JobType, SyncJob

logger = logging.getLogger(__name__)

MIN_INTERVAL_SECONDS = 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncScheduler:
    """
    Parameters
    ----------
    repository        : persistence seam (``database.repository.Repository``)
    tick_interval     : seconds between ticks
    default_interval  : per-connection interval when none is stored
    max_interval      : upper clamp for per-connection overrides
    jitter_pct        : (min, max) fraction of the interval added as jitter
    batch_size        : connections read per query during a tick
    """

    def __init__(
        self,
        repository,
        tick_interval: float = 60,
        default_interval: int = 900,
        max_interval: int = 86400,
        jitter_pct: tuple = (0.0, 0.2),
        batch_size: int = 500,
        clock: Callable[[], datetime] = _utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not 10 <= tick_interval <= 300:
            raise ValueError("tick_interval must be between 10 and 300 seconds")
        low, high = jitter_pct
        if not 0 <= low <= high:
            raise ValueError("jitter_pct must satisfy 0 <= min <= max")
        self._repo = repository
        self.tick_interval = tick_interval
        self.default_interval = default_interval
        self.max_interval = max(max_interval, MIN_INTERVAL_SECONDS)
        self.jitter_pct = (low, high)
        self.batch_size = batch_size
        self._clock = clock
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @classmethod
    def from_config(cls, repository, cfg, **kwargs: Any) -> "SyncScheduler":
        return cls(
            repository,
            tick_interval=cfg.scheduler_tick_interval_seconds,
            default_interval=cfg.scheduler_default_interval_seconds,
            max_interval=cfg.scheduler_max_override_seconds,
            jitter_pct=(cfg.scheduler_jitter_pct_min, cfg.scheduler_jitter_pct_max),
            batch_size=cfg.scheduler_batch_size,
            **kwargs,
        )

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="sync-scheduler")
        logger.info("Sync scheduler started (tick=%ss)", self.tick_interval)

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Sync scheduler stopped")

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                # one bad tick must not kill the loop
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass

    # ── Scheduling ──────────────────────────────────────────────────────

    def effective_interval(self, stored: Any) -> int:
        """Clamp a stored interval (or the default) into ``[60, max_interval]``."""
        try:
            value = int(stored) if stored is not None else self.default_interval
        except (TypeError, ValueError):
            value = self.default_interval
        return max(MIN_INTERVAL_SECONDS, min(value, self.max_interval))

    def draw_jitter(self, interval: int) -> float:
        low, high = self.jitter_pct
        return self._rng.uniform(low, high) * interval

    async def tick(self) -> int:
        """Scan active connections once; returns the number of jobs enqueued."""
        now = self._clock()
        enqueued = 0
        offset = 0
        while True:
            batch = await self._repo.list_active_connections(self.batch_size, offset)
            for conn in batch:
                if await self._consider(conn, now):
                    enqueued += 1
            if len(batch) < self.batch_size:
                break
            offset += self.batch_size
        if enqueued:
            logger.info("Scheduler enqueued %d incremental job(s)", enqueued)
        return enqueued

    async def _consider(self, conn: Connection, now: datetime) -> bool:
        sync = conn.sync_metadata
        patch: Dict[str, Any] = {}

        first_seen = parse_timestamp(sync.get("first_activated_at"))
        if first_seen is None:
            first_seen = now
            patch["first_activated_at"] = now.isoformat()

        interval = self.effective_interval(sync.get("interval_seconds"))
        if sync.get("interval_seconds") != interval:
            patch["interval_seconds"] = interval

        if await self._repo.has_pending_job(conn.id):
            await self._persist(conn, patch)
            return False

        last_run = await self._repo.last_finished_incremental(conn.id) or first_seen
        next_run = parse_timestamp(sync.get("next_run_at"))
        if next_run is None or next_run <= last_run or "interval_seconds" in patch:
            # new cycle: draw fresh jitter relative to the last run
            jitter = self.draw_jitter(interval)
            next_run = last_run + timedelta(seconds=interval + jitter)
            patch["last_jitter_seconds"] = round(jitter, 3)
            patch["next_run_at"] = next_run.isoformat()

        await self._persist(conn, patch)
        if now < next_run:
            return False

        await self._repo.enqueue_job(
            SyncJob(
                connection_id=conn.id,
                tenant_id=conn.tenant_id,
                provider_name=conn.provider_name,
                job_type=JobType.INCREMENTAL,
                cursor_in=conn.cursor,
                scheduled_at=now,
            )
        )
        logger.debug("Enqueued incremental sync for %s connection %s", conn.provider_name, conn.id)
        return True

    async def _persist(self, conn: Connection, patch: Dict[str, Any]) -> None:
        if patch:
            await self._repo.merge_sync_metadata(conn.id, patch)
