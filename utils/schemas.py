"""
Pydantic schemas for the connector engine.
"""

from __future__ import annotations

import base64
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════════
# Providers & credentials
# ═══════════════════════════════════════════════════════════════════════════════


class AuthType(str, Enum):
    OAUTH2 = "oauth2"
    CUSTOM_WEBHOOK = "custom-webhook"


class ProviderMetadata(BaseModel):
    name: str
    display_name: str
    auth_type: AuthType = AuthType.OAUTH2
    scopes: List[str] = Field(default_factory=list)
    webhooks: bool = False

    model_config = {"frozen": True}


class TokenSet(BaseModel):
    """
    Result of a token exchange or refresh.

    ``refresh_token_rotated`` is the explicit "unchanged" signal: when it is
    False the caller keeps the refresh token it already has, whatever
    ``refresh_token`` holds.
    """

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    refresh_token_rotated: bool = False
    expires_at: Optional[datetime] = None   # None = non-expiring until next refresh
    scopes: List[str] = Field(default_factory=list)
    account_id: str = ""
    account_label: str = ""
    provider_meta: Dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# Connections
# ═══════════════════════════════════════════════════════════════════════════════


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    REVOKED = "revoked"


class Connection(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    tenant_id: uuid.UUID
    provider_name: str
    external_account_id: str
    access_token_ciphertext: bytes
    refresh_token_ciphertext: Optional[bytes] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def sync_metadata(self) -> Dict[str, Any]:
        return dict(self.metadata.get("sync") or {})

    @property
    def cursor(self) -> Any:
        return self.sync_metadata.get("cursor")

    def public_dict(self) -> Dict[str, Any]:
        """Serializable view with no token material."""
        return {
            "id": str(self.id),
            "tenant_id": str(self.tenant_id),
            "provider": self.provider_name,
            "external_account_id": self.external_account_id,
            "status": self.status.value,
            "scopes": list(self.scopes),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "error_message": self.error_message,
            "metadata": {k: v for k, v in self.metadata.items() if k != "sync"},
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class OAuthStateRecord(BaseModel):
    nonce: str
    tenant_id: uuid.UUID
    provider: str
    expires_at: datetime


# ═══════════════════════════════════════════════════════════════════════════════
# Sync jobs
# ═══════════════════════════════════════════════════════════════════════════════


class JobType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    WEBHOOK = "webhook"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRIED = "retried"


PENDING_STATES = (JobState.QUEUED, JobState.RUNNING, JobState.RETRIED)


class SyncJob(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    connection_id: uuid.UUID
    tenant_id: uuid.UUID
    provider_name: str
    job_type: JobType = JobType.INCREMENTAL
    state: JobState = JobState.QUEUED
    cursor_in: Any = None
    cursor_out: Any = None
    attempt_count: int = 0
    error: Optional[str] = None
    scheduled_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    def public_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json")
        if self.job_type == JobType.WEBHOOK:
            # envelope bodies can be large; expose only when it arrived
            data["cursor_in"] = {"received_at": (self.cursor_in or {}).get("received_at")}
        return data


# ═══════════════════════════════════════════════════════════════════════════════
# Signals & webhooks
# ═══════════════════════════════════════════════════════════════════════════════


class SignalDraft(BaseModel):
    """
    Provider-side view of one event, before tenant scoping and dedupe keys.

    ``version`` overrides the timestamp component of the dedupe key for
    providers whose events are versioned by something other than time.
    """

    kind: str
    external_id: str
    occurred_at: datetime
    raw: Dict[str, Any] = Field(default_factory=dict)
    normalized: Dict[str, Any] = Field(default_factory=dict)
    version: Optional[str] = None


class Signal(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    tenant_id: uuid.UUID
    source: str
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime
    dedupe_key: str
    created_at: datetime = Field(default_factory=utcnow)


class SyncResult(BaseModel):
    signals: List[SignalDraft] = Field(default_factory=list)
    next_cursor: Any = None
    has_more: bool = False


class WebhookEnvelope(BaseModel):
    tenant_id: uuid.UUID
    provider: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: bytes = b""
    payload: Optional[Any] = None
    received_at: datetime = Field(default_factory=utcnow)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    def to_cursor(self) -> Dict[str, Any]:
        """Serialize into the JSON shape stored as a webhook job's ``cursor_in``."""
        return {
            "webhook_headers": dict(self.headers),
            "webhook_body": base64.b64encode(self.body).decode("ascii"),
            "webhook_payload": self.payload,
            "received_at": self.received_at.isoformat(),
        }

    @classmethod
    def from_cursor(cls, tenant_id: uuid.UUID, provider: str, cursor: Dict[str, Any]) -> "WebhookEnvelope":
        return cls(
            tenant_id=tenant_id,
            provider=provider,
            headers=cursor.get("webhook_headers") or {},
            body=base64.b64decode(cursor.get("webhook_body") or ""),
            payload=cursor.get("webhook_payload"),
            received_at=datetime.fromisoformat(cursor["received_at"]) if cursor.get("received_at") else utcnow(),
        )
