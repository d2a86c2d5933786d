"""
HMAC-signed, single-use OAuth CSRF state.

The state string is ``base64url(json) + "." + hex(hmac_sha256)``.  The JSON
carries the tenant, provider, a random nonce, and an expiry; the nonce is
also persisted so a state can be consumed exactly once.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid
from datetime import datetime, timezone

from connectors.errors import InvalidOAuthState
from utils.schemas import OAuthStateRecord

logger = logging.getLogger(__name__)

_DEFAULT_TTL = 600


class OAuthStateManager:
    def __init__(self, repository, secret: str, ttl_seconds: int = _DEFAULT_TTL) -> None:
        if not secret:
            raise ValueError("OAuth state secret must not be empty")
        self._repo = repository
        self._secret = secret.encode("utf-8")
        self._ttl = ttl_seconds

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    async def issue(self, tenant_id: uuid.UUID, provider: str) -> str:
        nonce = secrets.token_urlsafe(24)
        expires = int(time.time()) + self._ttl
        body = json.dumps(
            {"t": str(tenant_id), "p": provider, "n": nonce, "exp": expires},
            separators=(",", ":"),
        )
        payload = base64.urlsafe_b64encode(body.encode("utf-8")).decode("ascii")
        await self._repo.save_oauth_state(
            OAuthStateRecord(
                nonce=nonce,
                tenant_id=tenant_id,
                provider=provider,
                expires_at=datetime.fromtimestamp(expires, tz=timezone.utc),
            )
        )
        return f"{payload}.{self._sign(payload)}"

    async def consume(self, state: str, provider: str) -> uuid.UUID:
        """
        Verify ``state`` for ``provider`` and burn its nonce.

        Returns the tenant the flow was started for.  Any problem (bad
        signature, expiry, wrong provider, reuse) raises ``InvalidOAuthState``.
        """
        try:
            payload, sig = state.rsplit(".", 1)
        except (AttributeError, ValueError):
            raise InvalidOAuthState("malformed state") from None

        if not hmac.compare_digest(self._sign(payload), sig):
            raise InvalidOAuthState("signature mismatch")

        try:
            data = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
            tenant_id = uuid.UUID(data["t"])
            nonce = str(data["n"])
            expires = int(data["exp"])
            state_provider = str(data["p"])
        except (ValueError, KeyError, TypeError):
            raise InvalidOAuthState("malformed state") from None

        if time.time() > expires:
            raise InvalidOAuthState("state expired")
        if state_provider != provider:
            raise InvalidOAuthState("provider mismatch")

        record = await self._repo.consume_oauth_state(nonce)
        if record is None:
            logger.warning("OAuth state replay or unknown nonce for %s", provider)
            raise InvalidOAuthState("state already used")
        if record.tenant_id != tenant_id or record.provider != provider:
            raise InvalidOAuthState("state record mismatch")
        return tenant_id
