"""
BaseConnector — capability interface implemented once per provider.

Every provider (GitHub, Jira, Gmail, Slack, …) subclasses this and
implements the OAuth exchange/refresh plus incremental ``sync`` and
``handle_webhook``.  Connectors raise only the typed errors from
``connectors.errors``; interpretation (retry, backoff, terminal failure)
belongs to the sync executor.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from connectors.errors import AuthenticationRequired, UpstreamFailure, Unsupported, raise_for_status
from utils.schemas import AuthType, Connection, ProviderMetadata, SyncResult, TokenSet, WebhookEnvelope

logger = logging.getLogger(__name__)

_HTTP_TIMEOUT = httpx.Timeout(20.0, connect=10.0)


def expires_at_from(expires_in: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Convert a relative ``expires_in`` (seconds) into an absolute UTC instant.

    Missing or non-numeric values mean the token is treated as non-expiring
    until the next refresh, so ``None`` is returned.
    """
    if expires_in is None or expires_in == "":
        return None
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=seconds)


class BaseConnector(ABC):
    """Abstract base for all provider connectors."""

    #: when True, a webhook that yields no signals enqueues an incremental sync
    webhook_triggers_sync: bool = False

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'github', 'jira', 'google-drive', …"""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    @property
    def auth_type(self) -> AuthType:
        return AuthType.OAUTH2

    @property
    def supports_webhooks(self) -> bool:
        return False

    def metadata(self) -> ProviderMetadata:
        return ProviderMetadata(
            name=self.provider_name,
            display_name=self.display_name,
            auth_type=self.auth_type,
            scopes=sorted(set(self.scopes)),
            webhooks=self.supports_webhooks,
        )

    def is_configured(self) -> bool:
        """
        Return True if this connector has the client credentials it needs
        to run the OAuth flow.
        """
        return True

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Opaque, single-use state bound to (tenant, provider).
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenSet:
        """
        Exchange the authorization code for tokens and identify the account.

        Returns
        -------
        TokenSet with ``account_id`` set to the provider's stable id for the
        authorized account.
        """
        ...

    async def refresh_token(self, refresh_token: Optional[str]) -> TokenSet:
        """
        Exchange a refresh token for a new access token.

        The returned TokenSet sets ``refresh_token_rotated`` only when the
        provider issued a new refresh token.

        Raises
        ------
        Unsupported
            If there is no refresh token, or the provider has no refresh flow.
        """
        raise Unsupported(f"{self.provider_name} does not support token refresh")

    async def revoke_token(self, access_token: str) -> bool:
        """Best-effort revocation; False if the provider has no revoke endpoint."""
        return False

    # ── Ingestion ───────────────────────────────────────────────────────

    @abstractmethod
    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        """
        Fetch activity newer than ``cursor``.

        All-or-nothing: on any error, raise and return nothing.  ``cursor`` is
        opaque JSON owned by the connector.
        """
        ...

    async def handle_webhook(self, envelope: WebhookEnvelope) -> list:
        """
        Turn a verified webhook into signal drafts.

        May legitimately return ``[]`` (see ``webhook_triggers_sync``).
        """
        raise Unsupported(f"{self.provider_name} does not accept webhooks")

    # ── HTTP helpers ────────────────────────────────────────────────────

    def _client(self, **kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=_HTTP_TIMEOUT, **kwargs)

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and map transport errors and error statuses onto the taxonomy."""
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            raise UpstreamFailure(f"{self.provider_name} request timed out") from None
        except httpx.TransportError as exc:
            raise UpstreamFailure(f"{self.provider_name} transport error: {type(exc).__name__}") from None
        raise_for_status(resp, self.provider_name)
        return resp

    async def _token_request(self, client: httpx.AsyncClient, url: str, **kwargs: Any) -> Dict[str, Any]:
        """
        POST to a token endpoint.  ``invalid_grant`` style 400s mean the grant
        is dead and map to AuthenticationRequired.
        """
        try:
            resp = await client.post(url, **kwargs)
        except httpx.TransportError as exc:
            raise UpstreamFailure(f"{self.provider_name} token endpoint unreachable: {type(exc).__name__}") from None
        if resp.status_code in (400, 401):
            raise AuthenticationRequired(f"{self.provider_name} token endpoint rejected the grant")
        raise_for_status(resp, self.provider_name)
        data = resp.json()
        if "error" in data:
            raise AuthenticationRequired(f"{self.provider_name} token error: {data.get('error')}")
        return data
