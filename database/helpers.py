"""
Database helper functions that convert between ORM rows and domain models.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict

from database.models import ConnectionRow, OAuthStateRow, SignalRow, SyncJobRow
from utils.schemas import (
    Connection,
    ConnectionStatus,
    JobState,
    JobType,
    OAuthStateRecord,
    Signal,
    SyncJob,
)


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


# ── Connections ─────────────────────────────────────────────────────────


def connection_from_row(row: ConnectionRow) -> Connection:
    return Connection(
        id=row.id,
        tenant_id=row.tenant_id,
        provider_name=row.provider_name,
        external_account_id=row.external_account_id,
        access_token_ciphertext=bytes(row.access_token_ciphertext),
        refresh_token_ciphertext=bytes(row.refresh_token_ciphertext) if row.refresh_token_ciphertext else None,
        expires_at=row.expires_at,
        scopes=list(row.scopes or []),
        status=ConnectionStatus(row.status),
        error_message=row.error_message,
        metadata=dict(row.metadata_json or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def connection_values(conn: Connection) -> Dict[str, Any]:
    return {
        "id": conn.id,
        "tenant_id": conn.tenant_id,
        "provider_name": conn.provider_name,
        "external_account_id": conn.external_account_id,
        "access_token_ciphertext": conn.access_token_ciphertext,
        "refresh_token_ciphertext": conn.refresh_token_ciphertext,
        "expires_at": conn.expires_at,
        "scopes": list(conn.scopes),
        "status": conn.status.value,
        "error_message": conn.error_message,
        "metadata_json": dict(conn.metadata),
        "created_at": conn.created_at,
        "updated_at": conn.updated_at,
    }


# ── Jobs ────────────────────────────────────────────────────────────────


def job_from_row(row: SyncJobRow) -> SyncJob:
    return SyncJob(
        id=row.id,
        connection_id=row.connection_id,
        tenant_id=row.tenant_id,
        provider_name=row.provider_name,
        job_type=JobType(row.job_type),
        state=JobState(row.state),
        cursor_in=row.cursor_in,
        cursor_out=row.cursor_out,
        attempt_count=row.attempt_count,
        error=row.error,
        scheduled_at=row.scheduled_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
        created_at=row.created_at,
    )


def job_values(job: SyncJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "connection_id": job.connection_id,
        "tenant_id": job.tenant_id,
        "provider_name": job.provider_name,
        "job_type": job.job_type.value,
        "state": job.state.value,
        "cursor_in": job.cursor_in,
        "cursor_out": job.cursor_out,
        "attempt_count": job.attempt_count,
        "error": job.error,
        "scheduled_at": job.scheduled_at,
        "started_at": job.started_at,
        "finished_at": job.finished_at,
        "created_at": job.created_at,
    }


# ── Signals / OAuth state ───────────────────────────────────────────────


def signal_from_row(row: SignalRow) -> Signal:
    return Signal(
        id=row.id,
        tenant_id=row.tenant_id,
        source=row.source,
        kind=row.kind,
        payload=dict(row.payload or {}),
        occurred_at=row.occurred_at,
        dedupe_key=row.dedupe_key,
        created_at=row.created_at,
    )


def signal_values(signal: Signal) -> Dict[str, Any]:
    return signal.model_dump(mode="python")


def oauth_state_from_row(row: OAuthStateRow) -> OAuthStateRecord:
    return OAuthStateRecord(
        nonce=row.nonce,
        tenant_id=row.tenant_id,
        provider=row.provider,
        expires_at=row.expires_at,
    )
