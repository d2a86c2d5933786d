"""
In-memory ``Repository`` used by the tests.

Rows are deep-copied on the way in and out so tests observe the same
isolation a database gives.
"""

from __future__ import annotations

import asyncio
import base64
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from connectors.base import BaseConnector
from connectors.vault import TokenVault, build_aad
from database.repository import Repository, SignalKey
from utils.schemas import (
    PENDING_STATES,
    Connection,
    ConnectionStatus,
    JobState,
    JobType,
    OAuthStateRecord,
    Signal,
    SignalDraft,
    SyncJob,
    SyncResult,
    TokenSet,
    WebhookEnvelope,
    utcnow,
)


class FakeRepository(Repository):
    def __init__(self) -> None:
        self.connections: Dict[uuid.UUID, Connection] = {}
        self.jobs: Dict[uuid.UUID, SyncJob] = {}
        self.signals: Dict[uuid.UUID, Signal] = {}
        self.oauth_states: Dict[str, OAuthStateRecord] = {}

    # ── helpers for tests ───────────────────────────────────────────────

    def add_connection(self, conn: Connection) -> Connection:
        self.connections[conn.id] = conn.model_copy(deep=True)
        return conn

    def jobs_for(self, connection_id: uuid.UUID) -> List[SyncJob]:
        return sorted(
            (j.model_copy(deep=True) for j in self.jobs.values() if j.connection_id == connection_id),
            key=lambda j: j.created_at,
        )

    # ── Connections ─────────────────────────────────────────────────────

    async def get_connection(self, connection_id: uuid.UUID) -> Optional[Connection]:
        conn = self.connections.get(connection_id)
        return conn.model_copy(deep=True) if conn else None

    async def list_connections(self, tenant_id: uuid.UUID) -> List[Connection]:
        rows = [c for c in self.connections.values() if c.tenant_id == tenant_id]
        return [c.model_copy(deep=True) for c in sorted(rows, key=lambda c: c.created_at)]

    async def list_active_connections(self, limit: int, offset: int = 0) -> List[Connection]:
        rows = sorted(
            (c for c in self.connections.values() if c.status == ConnectionStatus.ACTIVE),
            key=lambda c: c.id,
        )
        return [c.model_copy(deep=True) for c in rows[offset:offset + limit]]

    async def list_expiring_connections(self, before: datetime, limit: int) -> List[Connection]:
        rows = [
            c for c in self.connections.values()
            if c.status == ConnectionStatus.ACTIVE
            and c.refresh_token_ciphertext
            and c.expires_at is not None
            and c.expires_at <= before
        ]
        rows.sort(key=lambda c: c.expires_at)
        return [c.model_copy(deep=True) for c in rows[:limit]]

    async def find_connections(self, tenant_id: uuid.UUID, provider: str) -> List[Connection]:
        rows = [c for c in self.connections.values() if c.tenant_id == tenant_id and c.provider_name == provider]
        return [c.model_copy(deep=True) for c in sorted(rows, key=lambda c: (c.created_at, c.id))]

    async def upsert_connection(self, conn: Connection) -> Connection:
        for existing in self.connections.values():
            if (existing.tenant_id, existing.provider_name, existing.external_account_id) == (
                conn.tenant_id, conn.provider_name, conn.external_account_id
            ):
                existing.access_token_ciphertext = conn.access_token_ciphertext
                if conn.refresh_token_ciphertext is not None:
                    existing.refresh_token_ciphertext = conn.refresh_token_ciphertext
                existing.expires_at = conn.expires_at
                existing.scopes = list(conn.scopes)
                existing.status = ConnectionStatus.ACTIVE
                existing.error_message = None
                existing.metadata = {**existing.metadata, **conn.metadata}
                existing.updated_at = utcnow()
                return existing.model_copy(deep=True)
        self.connections[conn.id] = conn.model_copy(deep=True)
        return conn.model_copy(deep=True)

    async def update_connection_tokens(
        self,
        connection_id: uuid.UUID,
        access_token_ciphertext: bytes,
        refresh_token_ciphertext: Optional[bytes],
        expires_at: Optional[datetime],
        scopes: Optional[List[str]] = None,
    ) -> Optional[Connection]:
        conn = self.connections.get(connection_id)
        if conn is None:
            return None
        conn.access_token_ciphertext = access_token_ciphertext
        conn.refresh_token_ciphertext = refresh_token_ciphertext
        conn.expires_at = expires_at
        if scopes:
            conn.scopes = list(scopes)
        conn.status = ConnectionStatus.ACTIVE
        conn.error_message = None
        conn.updated_at = utcnow()
        return conn.model_copy(deep=True)

    async def merge_sync_metadata(self, connection_id: uuid.UUID, patch: Dict[str, Any]) -> None:
        conn = self.connections.get(connection_id)
        if conn is None:
            return
        sync = dict(conn.metadata.get("sync") or {})
        sync.update(patch)
        conn.metadata = {**conn.metadata, "sync": sync}

    async def update_connection_status(
        self,
        connection_id: uuid.UUID,
        status: ConnectionStatus,
        error_message: Optional[str] = None,
    ) -> None:
        conn = self.connections.get(connection_id)
        if conn is not None:
            conn.status = status
            conn.error_message = error_message

    async def delete_connection(self, connection_id: uuid.UUID) -> bool:
        return self.connections.pop(connection_id, None) is not None

    # ── Jobs ────────────────────────────────────────────────────────────

    async def enqueue_job(self, job: SyncJob) -> SyncJob:
        self.jobs[job.id] = job.model_copy(deep=True)
        return job

    async def has_pending_job(
        self,
        connection_id: uuid.UUID,
        job_type: Optional[JobType] = None,
        exclude_job_id: Optional[uuid.UUID] = None,
    ) -> bool:
        return any(
            j.connection_id == connection_id
            and j.state in PENDING_STATES
            and (job_type is None or j.job_type == job_type)
            and j.id != exclude_job_id
            for j in self.jobs.values()
        )

    async def claim_due_jobs(self, now: datetime, limit: int, per_tenant_limit: int = 0) -> List[SyncJob]:
        running = [j for j in self.jobs.values() if j.state == JobState.RUNNING]
        busy = {j.connection_id for j in running}
        load: Dict[uuid.UUID, int] = {}
        for j in running:
            load[j.tenant_id] = load.get(j.tenant_id, 0) + 1

        due = sorted(
            (
                j for j in self.jobs.values()
                if j.state in (JobState.QUEUED, JobState.RETRIED) and j.scheduled_at <= now
            ),
            key=lambda j: (j.scheduled_at, j.created_at),
        )
        claimed: List[SyncJob] = []
        for job in due:
            if len(claimed) >= limit:
                break
            if job.connection_id in busy:
                continue
            if per_tenant_limit > 0 and load.get(job.tenant_id, 0) >= per_tenant_limit:
                continue
            busy.add(job.connection_id)
            load[job.tenant_id] = load.get(job.tenant_id, 0) + 1
            job.state = JobState.RUNNING
            job.started_at = now
            job.finished_at = None
            claimed.append(job.model_copy(deep=True))
        return claimed

    async def update_job(self, job: SyncJob) -> None:
        self.jobs[job.id] = job.model_copy(deep=True)

    async def get_job(self, job_id: uuid.UUID) -> Optional[SyncJob]:
        job = self.jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(
        self,
        tenant_id: uuid.UUID,
        connection_id: Optional[uuid.UUID] = None,
        limit: int = 50,
    ) -> List[SyncJob]:
        rows = [
            j for j in self.jobs.values()
            if j.tenant_id == tenant_id and (connection_id is None or j.connection_id == connection_id)
        ]
        rows.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in rows[:limit]]

    async def last_finished_incremental(self, connection_id: uuid.UUID) -> Optional[datetime]:
        finished = [
            j.finished_at for j in self.jobs.values()
            if j.connection_id == connection_id and j.job_type == JobType.INCREMENTAL and j.finished_at
        ]
        return max(finished) if finished else None

    async def requeue_stale_running(self, now: datetime, older_than: timedelta) -> int:
        count = 0
        for job in self.jobs.values():
            if job.state == JobState.RUNNING and (job.started_at is None or job.started_at < now - older_than):
                job.state = JobState.RETRIED
                job.scheduled_at = now
                job.started_at = None
                count += 1
        return count

    # ── Signals ─────────────────────────────────────────────────────────

    async def insert_signals(self, signals: Sequence[Signal]) -> int:
        existing = {(s.tenant_id, s.source, s.dedupe_key) for s in self.signals.values()}
        inserted = 0
        for signal in signals:
            key = (signal.tenant_id, signal.source, signal.dedupe_key)
            if key in existing:
                continue
            existing.add(key)
            self.signals[signal.id] = signal.model_copy(deep=True)
            inserted += 1
        return inserted

    async def list_signals(
        self,
        tenant_id: uuid.UUID,
        provider: Optional[str] = None,
        kind: Optional[str] = None,
        limit: int = 50,
        after: Optional[SignalKey] = None,
    ) -> List[Signal]:
        rows = [
            s for s in self.signals.values()
            if s.tenant_id == tenant_id
            and (provider is None or s.source == provider)
            and (kind is None or s.kind == kind)
        ]
        rows.sort(key=lambda s: (s.occurred_at, s.id), reverse=True)
        if after is not None:
            rows = [s for s in rows if (s.occurred_at, s.id) < after]
        return [s.model_copy(deep=True) for s in rows[:limit]]

    # ── OAuth state ─────────────────────────────────────────────────────

    async def save_oauth_state(self, record: OAuthStateRecord) -> None:
        self.oauth_states[record.nonce] = record.model_copy(deep=True)

    async def consume_oauth_state(self, nonce: str) -> Optional[OAuthStateRecord]:
        return self.oauth_states.pop(nonce, None)


# ── Connectors ──────────────────────────────────────────────────────────


TEST_KEY = base64.b64encode(bytes(range(32))).decode("ascii")


class StubConnector(BaseConnector):
    """
    Scriptable connector.

    ``sync_results`` and ``refresh_results`` are queues; an entry that is an
    exception instance is raised instead of returned.
    """

    def __init__(self, name: str = "github", webhook_triggers_sync: bool = False) -> None:
        super().__init__()
        self._name = name
        self.webhook_triggers_sync = webhook_triggers_sync
        self.sync_results: List[Any] = []
        self.refresh_results: List[Any] = []
        self.webhook_drafts: List[SignalDraft] = []
        self.sync_calls: List[Tuple[str, Any]] = []
        self.refresh_calls: List[Optional[str]] = []
        self.revoked: List[str] = []
        self.refresh_delay = 0.0
        self.sync_delay = 0.0
        self.exchange_result: Optional[TokenSet] = None

    @property
    def provider_name(self) -> str:
        return self._name

    @property
    def display_name(self) -> str:
        return self._name.title()

    @property
    def scopes(self) -> List[str]:
        return ["read"]

    @property
    def supports_webhooks(self) -> bool:
        return True

    def get_auth_url(self, state: str) -> str:
        return f"https://auth.example.com/authorize?state={state}"

    async def exchange_code(self, code: str) -> TokenSet:
        return self.exchange_result

    async def refresh_token(self, refresh_token: Optional[str]) -> TokenSet:
        self.refresh_calls.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        return _next(self.refresh_results)

    async def revoke_token(self, access_token: str) -> bool:
        self.revoked.append(access_token)
        return True

    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        self.sync_calls.append((access_token, cursor))
        if self.sync_delay:
            await asyncio.sleep(self.sync_delay)
        return _next(self.sync_results)

    async def handle_webhook(self, envelope: WebhookEnvelope) -> list:
        return list(self.webhook_drafts)


def _next(queue: List[Any]) -> Any:
    item = queue.pop(0)
    if isinstance(item, BaseException):
        raise item
    return item


def draft(external_id: str, when: Optional[datetime] = None, kind: str = "issue_created") -> SignalDraft:
    return SignalDraft(
        kind=kind,
        external_id=external_id,
        occurred_at=when or datetime(2024, 1, 1, tzinfo=timezone.utc),
        raw={"id": external_id},
    )


def stored_connection(
    repo: FakeRepository,
    vault: TokenVault,
    provider: str = "github",
    access: str = "access-1",
    refresh: Optional[str] = "refresh-1",
    expires_at: Optional[datetime] = None,
    **fields: Any,
) -> Connection:
    """Persist a connection whose tokens are encrypted under ``vault``."""
    tenant_id = fields.pop("tenant_id", uuid.uuid4())
    account = fields.pop("external_account_id", "acct-1")
    aad = build_aad(tenant_id, provider, account)
    conn = Connection(
        tenant_id=tenant_id,
        provider_name=provider,
        external_account_id=account,
        access_token_ciphertext=vault.encrypt(access, aad),
        refresh_token_ciphertext=vault.encrypt(refresh, aad) if refresh else None,
        expires_at=expires_at,
        **fields,
    )
    return repo.add_connection(conn)
