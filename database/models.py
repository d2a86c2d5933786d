"""
SQLAlchemy ORM models for connections, sync jobs, signals, and OAuth state.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ConnectionRow(Base):
    __tablename__ = "connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    provider_name = Column(String(32), nullable=False)
    external_account_id = Column(String(256), nullable=False)
    access_token_ciphertext = Column(LargeBinary, nullable=False)
    refresh_token_ciphertext = Column(LargeBinary)
    expires_at = Column(DateTime(timezone=True))
    scopes = Column(ARRAY(Text), default=list)
    status = Column(String(16), nullable=False, default="active")
    error_message = Column(Text)
    # ``metadata`` is reserved on declarative classes
    metadata_json = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_name", "external_account_id", name="uq_connections_account"),
        Index("ix_connections_tenant_provider", "tenant_id", "provider_name"),
        Index("ix_connections_status_expires", "status", "expires_at"),
    )


class SyncJobRow(Base):
    __tablename__ = "sync_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # no cascade: jobs are kept for audit after a connection is removed
    connection_id = Column(UUID(as_uuid=True), nullable=False)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    provider_name = Column(String(32), nullable=False)
    job_type = Column(String(16), nullable=False)
    state = Column(String(16), nullable=False, default="queued")
    cursor_in = Column(JSONB)
    cursor_out = Column(JSONB)
    attempt_count = Column(Integer, nullable=False, default=0)
    error = Column(Text)
    scheduled_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("ix_sync_jobs_claim", "state", "scheduled_at"),
        Index("ix_sync_jobs_connection_state", "connection_id", "state"),
        Index("ix_sync_jobs_tenant_created", "tenant_id", "created_at"),
        # at most one running job per connection, across every executor process
        Index(
            "uq_sync_jobs_one_running",
            "connection_id",
            unique=True,
            postgresql_where=text("state = 'running'"),
        ),
    )


class SignalRow(Base):
    __tablename__ = "signals"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    source = Column(String(32), nullable=False)
    kind = Column(String(64), nullable=False)
    payload = Column(JSONB, nullable=False, default=dict)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    dedupe_key = Column(String(512), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("tenant_id", "source", "dedupe_key", name="uq_signals_dedupe"),
        Index("ix_signals_tenant_occurred", "tenant_id", "occurred_at", "id"),
    )


class OAuthStateRow(Base):
    __tablename__ = "oauth_states"

    nonce = Column(String(128), primary_key=True)
    tenant_id = Column(UUID(as_uuid=True), nullable=False)
    provider = Column(String(32), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
