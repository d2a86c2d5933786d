"""
Sync executor — claims due jobs and drives them to a terminal state.

State machine::

    queued ──► running ──► succeeded
                  │  ├───► failed
                  │  └───► retried ──► (claimable again once scheduled_at <= now)

Connector errors are interpreted here and nowhere else:

* ``RateLimited``            → retried at ``now + retry_after``, attempt unchanged
* ``AuthenticationRequired`` → one forced refresh and one retry, then failed
* ``PermissionDenied``       → failed
* ``UpstreamFailure``        → retried with backoff until attempts run out
  (non-retryable ones fail immediately); job timeouts count the same way
* ``InvalidCursor``          → stored cursor cleared, retried from scratch
* ``Unsupported``            → failed
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Set, Tuple

from connectors.errors import (
    AuthenticationRequired,
    ConnectorsError,
    InvalidCursor,
    PermissionDenied,
    RateLimited,
    Unsupported,
    UpstreamFailure,
    sanitize_error,
)
from connectors.registry import ProviderRegistry
from connectors.token_manager import TokenManager
from core.backoff import BackoffPolicy
from core.leases import ConnectionLeases
from core.normalizer import SignalNormalizer
from utils.schemas import (
    Connection,
    ConnectionStatus,
    JobState,
    JobType,
    SyncJob,
    SyncResult,
    WebhookEnvelope,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobAborted(Exception):
    """The job cannot run at all; ``code`` becomes the job error."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(code)


class SyncExecutor:
    def __init__(
        self,
        repository,
        registry: ProviderRegistry,
        tokens: TokenManager,
        *,
        backoff: Optional[BackoffPolicy] = None,
        normalizer: Optional[SignalNormalizer] = None,
        leases: Optional[ConnectionLeases] = None,
        concurrency: int = 10,
        per_tenant_limit: int = 0,
        claim_batch: int = 50,
        poll_interval: float = 5.0,
        job_timeout: float = 300,
        refresh_margin: float = 30,
        shutdown_grace: float = 30,
        stale_sweep_interval: float = 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not 10 <= refresh_margin <= 60:
            raise ValueError("refresh_margin must be between 10 and 60 seconds")
        self._repo = repository
        self._registry = registry
        self._tokens = tokens
        self.backoff = backoff or BackoffPolicy()
        self._normalizer = normalizer or SignalNormalizer()
        self._leases = leases or ConnectionLeases()
        self.concurrency = concurrency
        self.per_tenant_limit = per_tenant_limit
        self.claim_batch = claim_batch
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.refresh_margin = refresh_margin
        self.shutdown_grace = shutdown_grace
        self.stale_sweep_interval = stale_sweep_interval
        self._clock = clock
        self._next_sweep: Optional[datetime] = None

        self._semaphore = asyncio.Semaphore(concurrency)
        self._inflight: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @classmethod
    def from_config(cls, repository, registry, tokens, cfg, **kwargs: Any) -> "SyncExecutor":
        kwargs.setdefault("backoff", BackoffPolicy.from_config(cfg))
        return cls(
            repository,
            registry,
            tokens,
            concurrency=cfg.executor_concurrency,
            per_tenant_limit=cfg.executor_per_tenant_concurrency,
            claim_batch=cfg.executor_claim_batch,
            poll_interval=cfg.executor_poll_interval_seconds,
            job_timeout=cfg.executor_job_timeout_seconds,
            refresh_margin=cfg.executor_refresh_margin_seconds,
            shutdown_grace=cfg.executor_shutdown_grace_seconds,
            stale_sweep_interval=cfg.executor_stale_sweep_seconds,
            **kwargs,
        )

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._loop_task is not None and not self._loop_task.done():
            return
        await self.requeue_stale()
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._run(), name="sync-executor")
        logger.info("Sync executor started (concurrency=%d)", self.concurrency)

    async def stop(self) -> None:
        """Stop claiming, give in-flight jobs the grace period, then cancel the rest."""
        self._stopping.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._inflight:
            logger.info("Draining %d in-flight job(s)", len(self._inflight))
            _, pending = await asyncio.wait(set(self._inflight), timeout=self.shutdown_grace)
            for task in pending:
                task.cancel()
            if pending:
                # cancelled jobs stay ``running`` until a stale sweep requeues them
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("Cancelled %d job(s) after shutdown grace", len(pending))
        logger.info("Sync executor stopped")

    @property
    def stale_after(self) -> timedelta:
        """How long a ``running`` job may go unfinished before any executor may requeue it."""
        return timedelta(seconds=self.job_timeout + self.shutdown_grace)

    async def requeue_stale(self) -> int:
        """Requeue jobs whose executor died mid-run; live jobs are never this old."""
        now = self._clock()
        self._next_sweep = now + timedelta(seconds=self.stale_sweep_interval)
        return await self._repo.requeue_stale_running(now, self.stale_after)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                if self._next_sweep is None or self._clock() >= self._next_sweep:
                    await self.requeue_stale()
                claimed = await self.run_once()
            except Exception:
                logger.exception("Job claim failed")
                claimed = 0
            if claimed:
                continue
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> int:
        """Claim up to the free worker slots and start those jobs; returns how many."""
        slots = min(self.claim_batch, self.concurrency - len(self._inflight))
        if slots <= 0:
            return 0
        jobs = await self._repo.claim_due_jobs(self._clock(), slots, self.per_tenant_limit)
        for job in jobs:
            task = asyncio.create_task(self._guarded(job), name=f"sync-job-{job.id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        return len(jobs)

    async def _guarded(self, job: SyncJob) -> None:
        async with self._semaphore:
            try:
                await self.execute(job)
            except Exception:
                logger.exception("Job %s crashed while recording its outcome", job.id)

    # ── One job ─────────────────────────────────────────────────────────

    async def execute(self, job: SyncJob) -> SyncJob:
        """
        Run a claimed job once and persist its outcome.

        Returns the job as stored afterwards.
        """
        if not self._leases.try_acquire(job.connection_id):
            # another task in this process owns the connection; try again shortly
            logger.debug("Connection %s busy; deferring job %s", job.connection_id, job.id)
            return await self._reschedule(job, timedelta(seconds=self.poll_interval), None)

        job.state = JobState.RUNNING
        job.started_at = job.started_at or self._clock()
        try:
            try:
                inserted, result = await asyncio.wait_for(self._run_job(job), timeout=self.job_timeout)
            except JobAborted as exc:
                return await self._fail(job, exc.code)
            except asyncio.TimeoutError:
                return await self._backoff_or_fail(job, UpstreamFailure(f"job exceeded {self.job_timeout:g}s"))
            except RateLimited as exc:
                delay = self.backoff.rate_limit_delay(exc.retry_after, job.provider_name)
                logger.info("Job %s rate limited by %s; retry in %.0fs", job.id, job.provider_name, delay)
                return await self._reschedule(job, timedelta(seconds=delay), sanitize_error(exc))
            except InvalidCursor as exc:
                return await self._restart_from_scratch(job, exc)
            except UpstreamFailure as exc:
                if not exc.retryable:
                    return await self._fail(job, sanitize_error(exc))
                return await self._backoff_or_fail(job, exc)
            except (AuthenticationRequired, PermissionDenied, Unsupported) as exc:
                return await self._fail(job, sanitize_error(exc))
            except ConnectorsError as exc:
                return await self._fail(job, sanitize_error(exc))
            except Exception as exc:
                logger.exception("Unexpected error in job %s", job.id)
                return await self._backoff_or_fail(job, exc)

            job.state = JobState.SUCCEEDED
            job.cursor_out = result.next_cursor
            job.error = None
            job.finished_at = self._clock()
            await self._repo.update_job(job)
            logger.info(
                "Job %s (%s %s) succeeded: %d new signal(s)%s",
                job.id,
                job.provider_name,
                job.job_type.value,
                inserted,
                ", more pending" if result.has_more else "",
            )
            return job
        finally:
            self._leases.release(job.connection_id)

    async def _run_job(self, job: SyncJob) -> Tuple[int, SyncResult]:
        conn = await self._repo.get_connection(job.connection_id)
        if conn is None:
            raise JobAborted("connection_missing")
        if conn.status != ConnectionStatus.ACTIVE:
            raise JobAborted(f"connection_{conn.status.value}")
        connector = self._registry.get(conn.provider_name)

        if job.job_type == JobType.WEBHOOK:
            envelope = WebhookEnvelope.from_cursor(conn.tenant_id, conn.provider_name, job.cursor_in or {})
            drafts = await connector.handle_webhook(envelope)
            inserted = await self._store(conn, drafts)
            if connector.webhook_triggers_sync:
                await self._enqueue_follow_up(conn, job, conn.cursor)
            return inserted, SyncResult(signals=drafts, next_cursor=None)

        fresh, token = await self._tokens.ensure_fresh(conn, self.refresh_margin)
        refreshed = fresh.access_token_ciphertext != conn.access_token_ciphertext
        conn = fresh
        try:
            result = await connector.sync(conn, token, job.cursor_in)
        except AuthenticationRequired:
            if refreshed:
                # this job already spent its one refresh
                raise
            logger.info("Job %s: %s rejected the token; forcing one refresh", job.id, conn.provider_name)
            conn = await self._tokens.refresh(conn, force=True)
            result = await connector.sync(conn, self._tokens.decrypt_access(conn), job.cursor_in)

        inserted = await self._store(conn, result.signals)
        # cursor only moves after the signals are durable
        await self._repo.merge_sync_metadata(conn.id, {"cursor": result.next_cursor})
        if result.has_more:
            await self._enqueue_follow_up(conn, job, result.next_cursor, force=True)
        return inserted, result

    async def _store(self, conn: Connection, drafts) -> int:
        if await self._repo.get_connection(conn.id) is None:
            raise JobAborted("connection_missing")
        signals = self._normalizer.finalize(conn.tenant_id, conn.provider_name, drafts)
        if not signals:
            return 0
        return await self._repo.insert_signals(signals)

    async def _enqueue_follow_up(self, conn: Connection, job: SyncJob, cursor: Any, force: bool = False) -> None:
        if not force and await self._repo.has_pending_job(
            conn.id, job_type=JobType.INCREMENTAL, exclude_job_id=job.id
        ):
            return
        await self._repo.enqueue_job(
            SyncJob(
                connection_id=conn.id,
                tenant_id=conn.tenant_id,
                provider_name=conn.provider_name,
                job_type=JobType.INCREMENTAL,
                cursor_in=cursor,
                scheduled_at=self._clock(),
            )
        )

    # ── Outcomes ────────────────────────────────────────────────────────

    async def _fail(self, job: SyncJob, error: str) -> SyncJob:
        job.state = JobState.FAILED
        job.error = error
        job.finished_at = self._clock()
        await self._repo.update_job(job)
        logger.warning("Job %s (%s) failed: %s", job.id, job.provider_name, error)
        return job

    async def _reschedule(self, job: SyncJob, delay: timedelta, error: Optional[str]) -> SyncJob:
        job.state = JobState.RETRIED
        job.error = error
        job.scheduled_at = self._clock() + delay
        job.finished_at = None
        await self._repo.update_job(job)
        return job

    async def _backoff_or_fail(self, job: SyncJob, exc: BaseException) -> SyncJob:
        job.attempt_count += 1
        error = sanitize_error(exc)
        if self.backoff.exhausted(job.attempt_count):
            return await self._fail(job, error)
        delay = self.backoff.delay(job.attempt_count, job.provider_name)
        logger.info("Job %s attempt %d failed (%s); retry in %.1fs", job.id, job.attempt_count, error, delay)
        return await self._reschedule(job, timedelta(seconds=delay), error)

    async def _restart_from_scratch(self, job: SyncJob, exc: InvalidCursor) -> SyncJob:
        job.attempt_count += 1
        await self._repo.merge_sync_metadata(job.connection_id, {"cursor": None})
        if self.backoff.exhausted(job.attempt_count):
            return await self._fail(job, sanitize_error(exc))
        logger.info("Job %s: cursor rejected by %s; restarting from baseline", job.id, job.provider_name)
        job.cursor_in = None
        return await self._reschedule(job, timedelta(0), sanitize_error(exc))
