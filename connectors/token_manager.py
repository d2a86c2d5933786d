"""
Token manager: OAuth flow, encrypted storage, and serialized refresh.

This is the single interface that the executor, the refresh service, and
the routes use to get a usable access token for a connection.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import httpx

from connectors.errors import (
    AuthenticationRequired,
    ConnectorsError,
    Unsupported,
    sanitize_error,
)
from connectors.oauth_state import OAuthStateManager
from connectors.registry import ProviderRegistry
from connectors.vault import TokenVault, build_aad
from core.leases import KeyedLocks
from utils.schemas import Connection, ConnectionStatus, utcnow

logger = logging.getLogger(__name__)


class TokenManager:
    def __init__(
        self,
        repository,
        vault: TokenVault,
        registry: ProviderRegistry,
        state_manager: Optional[OAuthStateManager] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self._repo = repository
        self._vault = vault
        self._registry = registry
        self._states = state_manager
        self._locks = locks or KeyedLocks()

    # ── OAuth flow ──────────────────────────────────────────────────────

    async def authorize(self, tenant_id: uuid.UUID, provider: str) -> str:
        """Return the provider consent URL carrying a fresh single-use state."""
        connector = self._registry.get(provider)
        if not connector.is_configured():
            raise Unsupported(f"{provider} OAuth client is not configured")
        if self._states is None:
            raise RuntimeError("TokenManager built without an OAuth state manager")
        state = await self._states.issue(tenant_id, provider)
        return connector.get_auth_url(state)

    async def exchange_token(self, code: str, state: str, provider: str) -> Connection:
        """
        Complete the callback: verify state, exchange the code, store the
        connection.

        Re-authorizing the same account updates the existing connection in
        place; its sync cursor survives.
        """
        connector = self._registry.get(provider)
        if self._states is None:
            raise RuntimeError("TokenManager built without an OAuth state manager")
        tenant_id = await self._states.consume(state, provider)

        tokens = await connector.exchange_code(code)
        if not tokens.account_id:
            raise AuthenticationRequired(f"{provider} did not identify the authorized account")

        aad = build_aad(tenant_id, provider, tokens.account_id)
        metadata = dict(tokens.provider_meta)
        if tokens.account_label:
            metadata["account_label"] = tokens.account_label

        conn = Connection(
            tenant_id=tenant_id,
            provider_name=provider,
            external_account_id=tokens.account_id,
            access_token_ciphertext=self._vault.encrypt(tokens.access_token, aad),
            refresh_token_ciphertext=(
                self._vault.encrypt(tokens.refresh_token, aad) if tokens.refresh_token else None
            ),
            expires_at=tokens.expires_at,
            scopes=sorted(set(tokens.scopes)),
            metadata=metadata,
        )
        stored = await self._repo.upsert_connection(conn)
        logger.info("Stored %s connection %s for tenant %s", provider, stored.id, tenant_id)
        return stored

    # ── Token access ────────────────────────────────────────────────────

    def _aad(self, conn: Connection) -> bytes:
        return build_aad(conn.tenant_id, conn.provider_name, conn.external_account_id)

    def decrypt_access(self, conn: Connection) -> str:
        return self._vault.decrypt(conn.access_token_ciphertext, self._aad(conn))

    def decrypt_refresh(self, conn: Connection) -> Optional[str]:
        if not conn.refresh_token_ciphertext:
            return None
        return self._vault.decrypt(conn.refresh_token_ciphertext, self._aad(conn))

    @staticmethod
    def expires_within(conn: Connection, seconds: float, now: Optional[datetime] = None) -> bool:
        if conn.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return conn.expires_at - now <= timedelta(seconds=seconds)

    async def ensure_fresh(self, conn: Connection, margin_seconds: float) -> Tuple[Connection, str]:
        """
        Return ``(connection, access_token)``, refreshing first when the
        token expires within ``margin_seconds``.
        """
        if self.expires_within(conn, margin_seconds):
            conn = await self.refresh(conn)
        return conn, self.decrypt_access(conn)

    async def refresh(self, conn: Connection, force: bool = False) -> Connection:
        """
        Refresh the access token, at most one refresh in flight per connection.

        If the stored token already differs from ``conn`` another task won
        the race and its result is returned without calling the provider.
        A permanent refusal marks the connection ``error`` and raises
        ``AuthenticationRequired``; transient provider errors propagate
        unchanged.
        """
        async with self._locks.hold(conn.id):
            current = await self._repo.get_connection(conn.id)
            if current is None:
                raise AuthenticationRequired("connection no longer exists")
            if current.access_token_ciphertext != conn.access_token_ciphertext:
                logger.debug("Connection %s refreshed concurrently; reusing", conn.id)
                return current
            if not force and current.expires_at is None:
                return current

            refresh_plain = self.decrypt_refresh(current)
            if refresh_plain is None:
                await self._mark_error(current, "no refresh token")
                raise AuthenticationRequired("no refresh token available")

            connector = self._registry.get(current.provider_name)
            try:
                tokens = await connector.refresh_token(refresh_plain)
            except (AuthenticationRequired, Unsupported) as exc:
                await self._mark_error(current, sanitize_error(exc))
                raise AuthenticationRequired(str(exc)) from exc

            aad = self._aad(current)
            if tokens.refresh_token_rotated and tokens.refresh_token:
                refresh_ct = self._vault.encrypt(tokens.refresh_token, aad)
            else:
                refresh_ct = current.refresh_token_ciphertext

            updated = await self._repo.update_connection_tokens(
                current.id,
                self._vault.encrypt(tokens.access_token, aad),
                refresh_ct,
                tokens.expires_at,
                sorted(set(tokens.scopes)) or None,
            )
            if updated is None:
                raise AuthenticationRequired("connection no longer exists")
            logger.info("Refreshed %s token for connection %s", current.provider_name, current.id)
            return updated

    async def _mark_error(self, conn: Connection, message: str) -> None:
        logger.warning("Token refresh failed for connection %s: %s", conn.id, message)
        await self._repo.update_connection_status(conn.id, ConnectionStatus.ERROR, message)

    # ── Disconnect ──────────────────────────────────────────────────────

    async def disconnect(self, tenant_id: uuid.UUID, connection_id: uuid.UUID) -> bool:
        """Revoke upstream (best effort) and delete the connection."""
        conn = await self._repo.get_connection(connection_id)
        if conn is None or conn.tenant_id != tenant_id:
            return False
        try:
            connector = self._registry.get(conn.provider_name)
            await connector.revoke_token(self.decrypt_access(conn))
        except (ConnectorsError, httpx.HTTPError) as exc:
            logger.warning("Revoke failed for connection %s: %s", conn.id, sanitize_error(exc))
        deleted = await self._repo.delete_connection(conn.id)
        if deleted:
            logger.info("Disconnected %s connection %s at %s", conn.provider_name, conn.id, utcnow().isoformat())
        return deleted
