"""
Tests for the sync scheduler's due-time computation.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from core.scheduler import SyncScheduler
from tests.fakes import FakeRepository
from utils.schemas import Connection, ConnectionStatus, JobState, JobType, SyncJob

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class _FixedRandom:
    """Always returns ``low + fraction * (high - low)``."""

    def __init__(self, fraction: float) -> None:
        self.fraction = fraction

    def uniform(self, low, high):
        return low + self.fraction * (high - low)


def _connection(sync=None, status=ConnectionStatus.ACTIVE) -> Connection:
    metadata = {"sync": sync} if sync is not None else {}
    return Connection(
        tenant_id=uuid.uuid4(),
        provider_name="jira",
        external_account_id=uuid.uuid4().hex,
        access_token_ciphertext=b"\x01",
        status=status,
        metadata=metadata,
    )


class TestSyncScheduler:
    def setup_method(self):
        self.repo = FakeRepository()
        self.now = NOW
        self.scheduler = SyncScheduler(
            self.repo,
            jitter_pct=(0.0, 0.2),
            clock=lambda: self.now,
            rng=_FixedRandom(0.5),
        )

    @pytest.mark.asyncio
    async def test_first_sighting_schedules_one_interval_out(self):
        conn = self.repo.add_connection(_connection())

        assert await self.scheduler.tick() == 0

        sync = (await self.repo.get_connection(conn.id)).sync_metadata
        assert sync["first_activated_at"] == NOW.isoformat()
        assert sync["interval_seconds"] == 900
        assert sync["last_jitter_seconds"] == 90.0
        assert sync["next_run_at"] == (NOW + timedelta(seconds=990)).isoformat()

    @pytest.mark.asyncio
    async def test_due_connection_gets_incremental_job_with_cursor(self):
        conn = self.repo.add_connection(_connection({"first_activated_at": NOW.isoformat()}))
        await self.scheduler.tick()

        self.now = NOW + timedelta(seconds=990)
        assert await self.scheduler.tick() == 1

        [job] = self.repo.jobs_for(conn.id)
        assert job.job_type == JobType.INCREMENTAL
        assert job.state == JobState.QUEUED
        assert job.scheduled_at == self.now

    @pytest.mark.asyncio
    async def test_stored_cursor_passed_to_job(self):
        conn = self.repo.add_connection(
            _connection(
                {
                    "first_activated_at": (NOW - timedelta(hours=2)).isoformat(),
                    "cursor": {"since": "2024-05-01T00:00:00Z"},
                }
            )
        )
        assert await self.scheduler.tick() == 1
        [job] = self.repo.jobs_for(conn.id)
        assert job.cursor_in == {"since": "2024-05-01T00:00:00Z"}

    @pytest.mark.asyncio
    async def test_not_due_before_jittered_time(self):
        self.repo.add_connection(_connection({"first_activated_at": NOW.isoformat()}))
        await self.scheduler.tick()

        self.now = NOW + timedelta(seconds=989)
        assert await self.scheduler.tick() == 0

    @pytest.mark.asyncio
    async def test_pending_job_suppresses_new_one(self):
        conn = self.repo.add_connection(
            _connection({"first_activated_at": (NOW - timedelta(hours=2)).isoformat()})
        )
        await self.repo.enqueue_job(
            SyncJob(connection_id=conn.id, tenant_id=conn.tenant_id, provider_name="jira", state=JobState.RETRIED)
        )

        assert await self.scheduler.tick() == 0
        assert len(self.repo.jobs_for(conn.id)) == 1

    @pytest.mark.asyncio
    async def test_last_finished_job_anchors_next_run(self):
        conn = self.repo.add_connection(
            _connection({"first_activated_at": (NOW - timedelta(days=1)).isoformat()})
        )
        await self.repo.enqueue_job(
            SyncJob(
                connection_id=conn.id,
                tenant_id=conn.tenant_id,
                provider_name="jira",
                state=JobState.SUCCEEDED,
                finished_at=NOW - timedelta(seconds=100),
            )
        )

        assert await self.scheduler.tick() == 0
        sync = (await self.repo.get_connection(conn.id)).sync_metadata
        assert sync["next_run_at"] == (NOW + timedelta(seconds=890)).isoformat()

    @pytest.mark.asyncio
    async def test_interval_override_is_clamped(self):
        conn = self.repo.add_connection(_connection({"interval_seconds": 5}))
        await self.scheduler.tick()
        assert (await self.repo.get_connection(conn.id)).sync_metadata["interval_seconds"] == 60

    @pytest.mark.asyncio
    async def test_inactive_connections_ignored(self):
        conn = self.repo.add_connection(
            _connection({"first_activated_at": (NOW - timedelta(days=1)).isoformat()}, status=ConnectionStatus.ERROR)
        )
        assert await self.scheduler.tick() == 0
        assert self.repo.jobs_for(conn.id) == []

    @pytest.mark.asyncio
    async def test_pages_through_all_connections(self):
        scheduler = SyncScheduler(self.repo, batch_size=2, clock=lambda: self.now, rng=_FixedRandom(0.0))
        for _ in range(5):
            self.repo.add_connection(_connection({"first_activated_at": (NOW - timedelta(days=1)).isoformat()}))
        assert await scheduler.tick() == 5


class TestSchedulerSettings:
    def setup_method(self):
        self.scheduler = SyncScheduler(FakeRepository(), default_interval=900, max_interval=3600)

    def test_effective_interval(self):
        assert self.scheduler.effective_interval(None) == 900
        assert self.scheduler.effective_interval(30) == 60
        assert self.scheduler.effective_interval(1800) == 1800
        assert self.scheduler.effective_interval(10**7) == 3600
        assert self.scheduler.effective_interval("garbage") == 900

    @pytest.mark.parametrize("tick", [5, 301])
    def test_tick_interval_bounds(self, tick):
        with pytest.raises(ValueError):
            SyncScheduler(FakeRepository(), tick_interval=tick)

    def test_inverted_jitter_band_rejected(self):
        with pytest.raises(ValueError):
            SyncScheduler(FakeRepository(), jitter_pct=(0.3, 0.1))

    def test_jitter_within_band(self):
        scheduler = SyncScheduler(FakeRepository(), jitter_pct=(0.1, 0.2))
        for _ in range(50):
            assert 90 <= scheduler.draw_jitter(900) <= 180
