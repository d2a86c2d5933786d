"""
OIDC bearer verification for Google Pub/Sub push subscriptions.

Pub/Sub signs each push with a Google-issued ID token.  Signer keys are
fetched from the JWKS endpoint and cached by ``kid`` (PyJWT's
``PyJWKClient``); ``iss`` must be in the configured allow-list and ``aud``
must equal the configured audience exactly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, Optional

import jwt

logger = logging.getLogger(__name__)

KeyResolver = Callable[[str], Any]

_ALGORITHMS = ["RS256"]


class OidcVerificationError(Exception):
    """Raised for any token problem; the message is never sent to callers."""


class OidcVerifier:
    def __init__(
        self,
        audience: str,
        issuers: Iterable[str],
        jwks_url: str,
        leeway_seconds: int = 300,
        key_resolver: Optional[KeyResolver] = None,
    ) -> None:
        self.audience = audience
        self.issuers = [i for i in issuers if i]
        self.leeway_seconds = leeway_seconds
        if key_resolver is None:
            jwk_client = jwt.PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)
            key_resolver = lambda token: jwk_client.get_signing_key_from_jwt(token).key  # noqa: E731
        self._resolve_key = key_resolver

    @property
    def configured(self) -> bool:
        return bool(self.audience and self.issuers)

    async def verify(self, token: str) -> Dict[str, Any]:
        """
        Validate signature, issuer, audience, and expiry / issued-at skew.

        Returns the decoded claims.  Key lookups may hit the network, so they
        run in a worker thread.
        """
        try:
            key = await asyncio.to_thread(self._resolve_key, token)
            claims = jwt.decode(
                token,
                key,
                algorithms=_ALGORITHMS,
                audience=self.audience,
                leeway=self.leeway_seconds,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except (jwt.PyJWTError, ValueError, KeyError) as exc:
            raise OidcVerificationError(type(exc).__name__) from None

        if claims.get("iss") not in self.issuers:
            raise OidcVerificationError("issuer not allowed")
        return claims
