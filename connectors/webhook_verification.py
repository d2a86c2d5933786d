"""
Webhook verification: decides whether an inbound webhook is authentic.

Decision precedence (identical for every provider):

1. valid operator bearer token   → accept (signature check skipped)
2. unknown provider              → reject, not found
3. no verification secret        → reject, unauthorized
4. provider algorithm fails      → reject, unauthorized; else accept

Every rejection is a ``WebhookRejected`` whose public detail is fixed; the
``reason`` code is for internal logs only.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from connectors.errors import (
    InvalidSignature,
    ReplayRejected,
    Unauthorized,
    WebhookProviderNotFound,
    WebhookRateLimited,
)
from connectors.oidc import OidcVerificationError, OidcVerifier

logger = logging.getLogger(__name__)

SENSITIVE_HEADERS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "proxy-authorization",
        "www-authenticate",
        "authentication-info",
        "x-api-key",
        "x-auth-token",
        "x-csrf-token",
        "x-xsrf-token",
    }
)


def sanitize_headers(headers: Iterable[Tuple[str, str]]) -> Dict[str, str]:
    """Lower-case header names and drop authentication-bearing headers."""
    clean: Dict[str, str] = {}
    for name, value in headers:
        key = name.lower()
        if key not in SENSITIVE_HEADERS:
            clean[key] = value
    return clean


def _bearer_token(headers: Mapping[str, str]) -> Optional[str]:
    value = headers.get("authorization")
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _consteq(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ── Algorithms ──────────────────────────────────────────────────────────


def verify_github_signature(secret: str, body: bytes, header: Optional[str]) -> None:
    """``X-Hub-Signature-256: sha256=<hex>`` over the raw body."""
    if not header:
        raise InvalidSignature("missing_header")
    if not header.startswith("sha256="):
        raise InvalidSignature("bad_format")
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not _consteq(expected, header):
        raise InvalidSignature("mismatch")


def verify_slack_signature(
    secret: str,
    body: bytes,
    timestamp: Optional[str],
    signature: Optional[str],
    *,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """
    Slack v0 signing: ``v0=hex(hmac(secret, "v0:{ts}:{body}"))``.

    A timestamp exactly ``tolerance_seconds`` old is accepted; one second
    more is a replay.
    """
    if not timestamp or not signature:
        raise InvalidSignature("missing_header")
    try:
        ts = int(timestamp)
    except ValueError:
        raise InvalidSignature("bad_format") from None
    current = int(now if now is not None else time.time())
    if abs(current - ts) > tolerance_seconds:
        raise ReplayRejected()
    if not signature.startswith("v0="):
        raise InvalidSignature("bad_format")
    base = b"v0:" + timestamp.encode("ascii") + b":" + body
    expected = "v0=" + hmac.new(secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    if not _consteq(expected, signature):
        raise InvalidSignature("mismatch")


def verify_shared_token(secret: str, presented: Optional[str]) -> None:
    if presented is None:
        raise Unauthorized("missing_header")
    if not _consteq(secret, presented):
        raise Unauthorized("mismatch")


# ── Rate limiting ───────────────────────────────────────────────────────


@dataclass
class _Window:
    started: float
    count: int = 0


@dataclass
class WebhookRateLimiter:
    """Fixed one-minute window per (provider, tenant)."""

    limit_per_minute: int = 300
    clock: Callable[[], float] = time.monotonic
    _windows: Dict[Tuple[str, str], _Window] = field(default_factory=dict)

    def check(self, provider: str, tenant_id: str) -> None:
        now = self.clock()
        key = (provider, tenant_id)
        window = self._windows.get(key)
        if window is None or now - window.started >= 60:
            window = _Window(started=now)
            self._windows[key] = window
            self._evict(now)
        window.count += 1
        if window.count > self.limit_per_minute:
            raise WebhookRateLimited(retry_after=max(1, int(60 - (now - window.started))))

    def _evict(self, now: float) -> None:
        if len(self._windows) < 10_000:
            return
        for key in [k for k, w in self._windows.items() if now - w.started >= 60]:
            del self._windows[key]


# ── Verifier ────────────────────────────────────────────────────────────


@dataclass
class WebhookSecrets:
    github: str = ""
    slack: str = ""
    jira: str = ""
    zoho_cliq: str = ""
    google_channel: str = ""

    @classmethod
    def from_config(cls, cfg) -> "WebhookSecrets":
        return cls(
            github=cfg.github_webhook_secret,
            slack=cfg.slack_signing_secret,
            jira=cfg.jira_webhook_token,
            zoho_cliq=cfg.zoho_cliq_webhook_token,
            google_channel=cfg.google_channel_token,
        )


class WebhookVerifier:
    """
    Applies the precedence rules and the per-provider algorithm.

    Parameters
    ----------
    known_providers : names from the provider registry
    operator_tokens : bearer tokens that bypass signature checks
    oidc            : verifier for Pub/Sub pushes (gmail)
    clock           : wall clock for Slack replay checks
    """

    def __init__(
        self,
        known_providers: Iterable[str],
        operator_tokens: Iterable[str],
        secrets: WebhookSecrets,
        oidc: Optional[OidcVerifier] = None,
        slack_tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._known = frozenset(known_providers)
        self._operator_tokens: List[str] = [t for t in operator_tokens if t]
        self._secrets = secrets
        self._oidc = oidc
        self._slack_tolerance = slack_tolerance_seconds
        self._clock = clock

    def is_operator(self, headers: Mapping[str, str]) -> bool:
        token = _bearer_token(headers)
        if token is None:
            return False
        # compare against every token so timing does not reveal which matched
        matched = False
        for candidate in self._operator_tokens:
            matched |= _consteq(candidate, token)
        return matched

    async def verify(self, provider: str, headers: Mapping[str, str], body: bytes) -> None:
        """
        Raise ``WebhookRejected`` unless the request is authentic.

        ``headers`` must have lower-cased names and still include
        ``authorization``.
        """
        if self.is_operator(headers):
            return
        if provider not in self._known:
            raise WebhookProviderNotFound()

        if provider == "github":
            secret = self._require(self._secrets.github)
            verify_github_signature(secret, body, headers.get("x-hub-signature-256"))
        elif provider == "slack":
            secret = self._require(self._secrets.slack)
            verify_slack_signature(
                secret,
                body,
                headers.get("x-slack-request-timestamp"),
                headers.get("x-slack-signature"),
                tolerance_seconds=self._slack_tolerance,
                now=self._clock(),
            )
        elif provider == "gmail":
            if self._oidc is None or not self._oidc.configured:
                raise Unauthorized("not_configured")
            token = _bearer_token(headers)
            if token is None:
                raise Unauthorized("missing_header")
            try:
                await self._oidc.verify(token)
            except OidcVerificationError:
                raise Unauthorized("oidc_invalid") from None
        elif provider == "jira":
            verify_shared_token(self._require(self._secrets.jira), _bearer_token(headers))
        elif provider == "zoho-cliq":
            verify_shared_token(self._require(self._secrets.zoho_cliq), _bearer_token(headers))
        elif provider in ("google-drive", "google-calendar"):
            verify_shared_token(self._require(self._secrets.google_channel), headers.get("x-goog-channel-token"))
        else:
            # known provider without a webhook verification scheme
            raise Unauthorized("not_configured")

    @staticmethod
    def _require(secret: str) -> str:
        if not secret:
            raise Unauthorized("not_configured")
        return secret
