"""
Persistence interface for the connector engine.

``Repository`` is the async seam every component talks to; ``SqlRepository``
implements it on SQLAlchemy async + asyncpg.  Each method opens its own
short-lived session and commits before returning.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Text, and_, cast, delete, exists, func, literal_column, or_, select, update
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from database.helpers import (
    connection_from_row,
    connection_values,
    job_from_row,
    job_values,
    oauth_state_from_row,
    signal_from_row,
    signal_values,
)
from database.models import ConnectionRow, OAuthStateRow, SignalRow, SyncJobRow
from utils.schemas import (
    PENDING_STATES,
    Connection,
    ConnectionStatus,
    JobState,
    JobType,
    OAuthStateRecord,
    Signal,
    SyncJob,
    utcnow,
)

logger = logging.getLogger(__name__)

SignalKey = Tuple[datetime, uuid.UUID]


class Repository(ABC):

    # ── Connections ──────────────────────────────────────────────────────

    @abstractmethod
    async def get_connection(self, connection_id: uuid.UUID) -> Optional[Connection]: ...

    @abstractmethod
    async def list_connections(self, tenant_id: uuid.UUID) -> List[Connection]: ...

    @abstractmethod
    async def list_active_connections(self, limit: int, offset: int = 0) -> List[Connection]:
        """Active connections ordered by id, for batched scans."""

    @abstractmethod
    async def list_expiring_connections(self, before: datetime, limit: int) -> List[Connection]:
        """Active connections with a refresh token whose access token expires before ``before``."""

    @abstractmethod
    async def find_connections(self, tenant_id: uuid.UUID, provider: str) -> List[Connection]:
        """All connections for one tenant and provider, oldest first."""

    @abstractmethod
    async def upsert_connection(self, conn: Connection) -> Connection:
        """Insert, or replace tokens/metadata on the (tenant, provider, account) row."""

    @abstractmethod
    async def update_connection_tokens(
        self,
        connection_id: uuid.UUID,
        access_token_ciphertext: bytes,
        refresh_token_ciphertext: Optional[bytes],
        expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
    ) -> Optional[Connection]: ...

    @abstractmethod
    async def merge_sync_metadata(self, connection_id: uuid.UUID, patch: Dict[str, Any]) -> None:
        """Shallow-merge ``patch`` into ``metadata.sync`` without touching other keys."""

    @abstractmethod
    async def update_connection_status(
        self,
        connection_id: uuid.UUID,
        status: ConnectionStatus,
        error_message: Optional[str] = None,
    ) -> None: ...

    @abstractmethod
    async def delete_connection(self, connection_id: uuid.UUID) -> bool: ...

    # ── Jobs ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def enqueue_job(self, job: SyncJob) -> SyncJob: ...

    @abstractmethod
    async def has_pending_job(
        self,
        connection_id: uuid.UUID,
        job_type: Optional[JobType] = None,
        exclude_job_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """True while a queued, running, or retried job exists for the connection."""

    @abstractmethod
    async def claim_due_jobs(
        self,
        now: datetime,
        limit: int,
        per_tenant_limit: int = 0,
    ) -> List[SyncJob]:
        """
        Move due ``queued``/``retried`` jobs to ``running`` and return them.

        A job is skipped while another job for the same connection is
        running, in this process or any other; at most one job per connection
        is claimed per call.  With ``per_tenant_limit`` > 0 no tenant ends up
        with more running jobs than that.
        """

    @abstractmethod
    async def update_job(self, job: SyncJob) -> None: ...

    @abstractmethod
    async def get_job(self, job_id: uuid.UUID) -> Optional[SyncJob]: ...

    @abstractmethod
    async def list_jobs(
        self,
        tenant_id: uuid.UUID,
        connection_id: Optional[uuid.UUID] = None,
        limit: int = 50,
    ) -> List[SyncJob]: ...

    @abstractmethod
    async def last_finished_incremental(self, connection_id: uuid.UUID) -> Optional[datetime]: ...

    @abstractmethod
    async def requeue_stale_running(self, now: datetime, older_than: timedelta) -> int:
        """
        Return jobs stuck in ``running`` for longer than ``older_than`` to ``retried``.

        Jobs younger than that may still be owned by a live executor and are
        left alone.
        """

    # ── Signals ──────────────────────────────────────────────────────────

    @abstractmethod
    async def insert_signals(self, signals: Sequence[Signal]) -> int:
        """Insert, skipping dedupe-key conflicts.  Returns the number actually written."""

    @abstractmethod
    async def list_signals(
        self,
        tenant_id: uuid.UUID,
        provider: Optional[str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
        after: Optional[SignalKey] = None,
    ) -> List[Signal]:
        """Newest first by (occurred_at, id); ``after`` is the last key of the previous page."""

    # ── OAuth state ──────────────────────────────────────────────────────

    @abstractmethod
    async def save_oauth_state(self, record: OAuthStateRecord) -> None: ...

    @abstractmethod
    async def consume_oauth_state(self, nonce: str) -> Optional[OAuthStateRecord]:
        """Delete and return the record in one step; ``None`` when absent."""


class SqlRepository(Repository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Connections ──────────────────────────────────────────────────────

    async def get_connection(self, connection_id: uuid.UUID) -> Optional[Connection]:
        async with self._session_factory() as session:
            row = await session.get(ConnectionRow, connection_id)
            return connection_from_row(row) if row else None

    async def list_connections(self, tenant_id: uuid.UUID) -> List[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectionRow)
                .where(ConnectionRow.tenant_id == tenant_id)
                .order_by(ConnectionRow.created_at)
            )
            return [connection_from_row(r) for r in result.scalars().all()]

    async def list_active_connections(self, limit: int, offset: int = 0) -> List[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectionRow)
                .where(ConnectionRow.status == ConnectionStatus.ACTIVE.value)
                .order_by(ConnectionRow.id)
                .limit(limit)
                .offset(offset)
            )
            return [connection_from_row(r) for r in result.scalars().all()]

    async def list_expiring_connections(self, before: datetime, limit: int) -> List[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectionRow)
                .where(
                    ConnectionRow.status == ConnectionStatus.ACTIVE.value,
                    ConnectionRow.refresh_token_ciphertext.is_not(None),
                    ConnectionRow.expires_at.is_not(None),
                    ConnectionRow.expires_at <= before,
                )
                .order_by(ConnectionRow.expires_at)
                .limit(limit)
            )
            return [connection_from_row(r) for r in result.scalars().all()]

    async def find_connections(self, tenant_id: uuid.UUID, provider: str) -> List[Connection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectionRow)
                .where(ConnectionRow.tenant_id == tenant_id, ConnectionRow.provider_name == provider)
                .order_by(ConnectionRow.created_at, ConnectionRow.id)
            )
            return [connection_from_row(r) for r in result.scalars().all()]

    async def upsert_connection(self, conn: Connection) -> Connection:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ConnectionRow)
                .where(
                    ConnectionRow.tenant_id == conn.tenant_id,
                    ConnectionRow.provider_name == conn.provider_name,
                    ConnectionRow.external_account_id == conn.external_account_id,
                )
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = ConnectionRow(**connection_values(conn))
                session.add(row)
            else:
                row.access_token_ciphertext = conn.access_token_ciphertext
                if conn.refresh_token_ciphertext is not None:
                    row.refresh_token_ciphertext = conn.refresh_token_ciphertext
                row.expires_at = conn.expires_at
                row.scopes = list(conn.scopes)
                row.status = ConnectionStatus.ACTIVE.value
                row.error_message = None
                # keep sync state from the previous grant, refresh identity hints
                row.metadata_json = {**(row.metadata_json or {}), **conn.metadata}
                row.updated_at = utcnow()
            await session.commit()
            return connection_from_row(row)

    async def update_connection_tokens(
        self,
        connection_id: uuid.UUID,
        access_token_ciphertext: bytes,
        refresh_token_ciphertext: Optional[bytes],
        expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
    ) -> Optional[Connection]:
        async with self._session_factory() as session:
            row = await session.get(ConnectionRow, connection_id)
            if row is None:
                return None
            row.access_token_ciphertext = access_token_ciphertext
            row.refresh_token_ciphertext = refresh_token_ciphertext
            row.expires_at = expires_at
            if scopes:
                row.scopes = list(scopes)
            row.status = ConnectionStatus.ACTIVE.value
            row.error_message = None
            row.updated_at = utcnow()
            await session.commit()
            return connection_from_row(row)

    async def merge_sync_metadata(self, connection_id: uuid.UUID, patch: Dict[str, Any]) -> None:
        # metadata || {"sync": coalesce(metadata->'sync', '{}') || patch}, in one statement
        current_sync = func.coalesce(ConnectionRow.metadata_json["sync"], cast({}, JSONB))
        merged_sync = current_sync.op("||", return_type=JSONB)(cast(patch, JSONB))
        merged = ConnectionRow.metadata_json.op("||", return_type=JSONB)(
            func.jsonb_build_object(literal_column("'sync'"), merged_sync)
        )
        async with self._session_factory() as session:
            await session.execute(
                update(ConnectionRow)
                .where(ConnectionRow.id == connection_id)
                .values(metadata_json=merged, updated_at=utcnow())
            )
            await session.commit()

    async def update_connection_status(
        self,
        connection_id: uuid.UUID,
        status: ConnectionStatus,
        error_message: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ConnectionRow)
                .where(ConnectionRow.id == connection_id)
                .values(status=status.value, error_message=error_message, updated_at=utcnow())
            )
            await session.commit()

    async def delete_connection(self, connection_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(ConnectionRow).where(ConnectionRow.id == connection_id))
            await session.commit()
            return bool(result.rowcount)

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def enqueue_job(self, job: SyncJob) -> SyncJob:
        async with self._session_factory() as session:
            session.add(SyncJobRow(**job_values(job)))
            await session.commit()
        return job

    async def has_pending_job(
        self,
        connection_id: uuid.UUID,
        job_type: Optional[JobType] = None,
        exclude_job_id: Optional[uuid.UUID] = None,
    ) -> bool:
        conditions = [
            SyncJobRow.connection_id == connection_id,
            SyncJobRow.state.in_([s.value for s in PENDING_STATES]),
        ]
        if job_type is not None:
            conditions.append(SyncJobRow.job_type == job_type.value)
        if exclude_job_id is not None:
            conditions.append(SyncJobRow.id != exclude_job_id)
        async with self._session_factory() as session:
            result = await session.execute(select(exists().where(*conditions)))
            return bool(result.scalar())

    async def claim_due_jobs(
        self,
        now: datetime,
        limit: int,
        per_tenant_limit: int = 0,
    ) -> List[SyncJob]:
        running = aliased(SyncJobRow)
        busy = exists().where(
            running.connection_id == SyncJobRow.connection_id,
            running.state == JobState.RUNNING.value,
        )
        stmt = (
            select(SyncJobRow)
            .where(
                SyncJobRow.state.in_([JobState.QUEUED.value, JobState.RETRIED.value]),
                SyncJobRow.scheduled_at <= now,
                ~busy,
            )
            .order_by(SyncJobRow.scheduled_at, SyncJobRow.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True, of=SyncJobRow)
        )

        async with self._session_factory() as session:
            candidates = (await session.execute(stmt)).scalars().all()
            if not candidates:
                await session.commit()
                return []

            tenant_load: Dict[uuid.UUID, int] = {}
            if per_tenant_limit > 0:
                counts = await session.execute(
                    select(SyncJobRow.tenant_id, func.count())
                    .where(SyncJobRow.state == JobState.RUNNING.value)
                    .group_by(SyncJobRow.tenant_id)
                )
                tenant_load = {tenant: n for tenant, n in counts.all()}

            claimed: List[SyncJobRow] = []
            seen_connections = set()
            try:
                for row in candidates:
                    if row.connection_id in seen_connections:
                        continue
                    if per_tenant_limit > 0 and tenant_load.get(row.tenant_id, 0) >= per_tenant_limit:
                        continue
                    seen_connections.add(row.connection_id)
                    if not await self._lock_idle_connection(session, row.connection_id):
                        continue
                    tenant_load[row.tenant_id] = tenant_load.get(row.tenant_id, 0) + 1
                    row.state = JobState.RUNNING.value
                    row.started_at = now
                    row.finished_at = None
                    claimed.append(row)
                await session.commit()
            except IntegrityError:
                # uq_sync_jobs_one_running: another executor won this connection
                await session.rollback()
                logger.warning("Job claim raced another executor; retrying on the next poll")
                return []
            return [job_from_row(r) for r in claimed]

    @staticmethod
    async def _lock_idle_connection(session: AsyncSession, connection_id: uuid.UUID) -> bool:
        """
        Take a transaction-scoped advisory lock on the connection and confirm
        that no job for it is running.

        The running check is a fresh statement, so it sees claims other
        executors committed after this transaction's first snapshot.
        """
        locked = await session.scalar(
            select(func.pg_try_advisory_xact_lock(func.hashtextextended(cast(str(connection_id), Text), 0)))
        )
        if not locked:
            return False
        running = await session.scalar(
            select(
                exists().where(
                    SyncJobRow.connection_id == connection_id,
                    SyncJobRow.state == JobState.RUNNING.value,
                )
            )
        )
        return not running

    async def update_job(self, job: SyncJob) -> None:
        values = job_values(job)
        values.pop("id")
        async with self._session_factory() as session:
            await session.execute(update(SyncJobRow).where(SyncJobRow.id == job.id).values(**values))
            await session.commit()

    async def get_job(self, job_id: uuid.UUID) -> Optional[SyncJob]:
        async with self._session_factory() as session:
            row = await session.get(SyncJobRow, job_id)
            return job_from_row(row) if row else None

    async def list_jobs(
        self,
        tenant_id: uuid.UUID,
        connection_id: Optional[uuid.UUID] = None,
        limit: int = 50,
    ) -> List[SyncJob]:
        stmt = select(SyncJobRow).where(SyncJobRow.tenant_id == tenant_id)
        if connection_id is not None:
            stmt = stmt.where(SyncJobRow.connection_id == connection_id)
        stmt = stmt.order_by(SyncJobRow.created_at.desc()).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [job_from_row(r) for r in result.scalars().all()]

    async def last_finished_incremental(self, connection_id: uuid.UUID) -> Optional[datetime]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.max(SyncJobRow.finished_at)).where(
                    SyncJobRow.connection_id == connection_id,
                    SyncJobRow.job_type == JobType.INCREMENTAL.value,
                    SyncJobRow.finished_at.is_not(None),
                )
            )
            return result.scalar()

    async def requeue_stale_running(self, now: datetime, older_than: timedelta) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                update(SyncJobRow)
                .where(
                    SyncJobRow.state == JobState.RUNNING.value,
                    or_(SyncJobRow.started_at.is_(None), SyncJobRow.started_at < now - older_than),
                )
                .values(state=JobState.RETRIED.value, scheduled_at=now, started_at=None)
            )
            await session.commit()
            if result.rowcount:
                logger.info("Requeued %d job(s) stuck in running for over %s", result.rowcount, older_than)
            return result.rowcount or 0

    # ── Signals ──────────────────────────────────────────────────────────

    async def insert_signals(self, signals: Sequence[Signal]) -> int:
        if not signals:
            return 0
        stmt = (
            pg_insert(SignalRow)
            .values([signal_values(s) for s in signals])
            .on_conflict_do_nothing(index_elements=["tenant_id", "source", "dedupe_key"])
            .returning(SignalRow.id)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            inserted = len(result.all())
            await session.commit()
            return inserted

    async def list_signals(
        self,
        tenant_id: uuid.UUID,
        provider: Optional[str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
        after: Optional[SignalKey] = None,
    ) -> List[Signal]:
        stmt = select(SignalRow).where(SignalRow.tenant_id == tenant_id)
        if provider:
            stmt = stmt.where(SignalRow.source == provider)
        if kind:
            stmt = stmt.where(SignalRow.kind == kind)
        if after is not None:
            occurred_at, last_id = after
            stmt = stmt.where(
                or_(
                    SignalRow.occurred_at < occurred_at,
                    and_(SignalRow.occurred_at == occurred_at, SignalRow.id < last_id),
                )
            )
        stmt = stmt.order_by(SignalRow.occurred_at.desc(), SignalRow.id.desc()).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [signal_from_row(r) for r in result.scalars().all()]

    # ── OAuth state ──────────────────────────────────────────────────────

    async def save_oauth_state(self, record: OAuthStateRecord) -> None:
        async with self._session_factory() as session:
            session.add(OAuthStateRow(**record.model_dump()))
            # opportunistic cleanup of abandoned flows
            await session.execute(delete(OAuthStateRow).where(OAuthStateRow.expires_at < utcnow()))
            await session.commit()

    async def consume_oauth_state(self, nonce: str) -> Optional[OAuthStateRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(OAuthStateRow).where(OAuthStateRow.nonce == nonce).returning(OAuthStateRow)
            )
            row = result.scalar_one_or_none()
            await session.commit()
            return oauth_state_from_row(row) if row else None
