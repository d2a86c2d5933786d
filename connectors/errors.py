"""
Typed error taxonomy for the connector engine.

Connector-level errors (``ConnectorError`` subclasses) are raised by
provider adapters and interpreted only by the sync executor.  Webhook
rejections carry a coarse reason code that is safe to log and never
reaches the caller.
"""

from __future__ import annotations

import re
import time
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx


class ConnectorsError(Exception):
    """Root of every error raised by this service."""

    code = "error"


# ── Startup / configuration ─────────────────────────────────────────────


class CryptoConfigError(ConnectorsError):
    """The crypto key is missing or malformed.  Fatal at startup."""

    code = "crypto_config"


class DecryptionError(ConnectorsError):
    """Ciphertext failed authentication.  Never carries key or plaintext material."""

    code = "decryption_failed"

    def __init__(self) -> None:
        super().__init__("token decryption failed")


# ── Registry / OAuth ────────────────────────────────────────────────────


class UnknownProvider(ConnectorsError):
    code = "unknown_provider"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"unknown provider: {name}")


class InvalidOAuthState(ConnectorsError):
    code = "invalid_state"


# ── Webhook verification ────────────────────────────────────────────────

# Bounded set of reason codes allowed in logs.
REASON_CODES = frozenset(
    {
        "missing_header",
        "bad_format",
        "mismatch",
        "stale",
        "not_configured",
        "oidc_invalid",
        "rate_limited",
        "unknown_provider",
    }
)


class WebhookRejected(ConnectorsError):
    """
    Uniform webhook rejection.

    ``reason`` is one of :data:`REASON_CODES` and is only for internal logs;
    the HTTP response never includes it.
    """

    code = "webhook_rejected"
    status_code = 401
    public_detail = "unauthorized"

    def __init__(self, reason: str) -> None:
        self.reason = reason if reason in REASON_CODES else "mismatch"
        super().__init__(self.public_detail)


class Unauthorized(WebhookRejected):
    code = "unauthorized"


class InvalidSignature(WebhookRejected):
    code = "invalid_signature"


class ReplayRejected(WebhookRejected):
    code = "replay_rejected"

    def __init__(self) -> None:
        super().__init__("stale")


class WebhookProviderNotFound(WebhookRejected):
    code = "unknown_provider"
    status_code = 404
    public_detail = "not found"

    def __init__(self) -> None:
        super().__init__("unknown_provider")


class WebhookRateLimited(WebhookRejected):
    code = "rate_limited"
    status_code = 429
    public_detail = "too many requests"

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__("rate_limited")


# ── Connector errors (interpreted by the executor) ──────────────────────


class ConnectorError(ConnectorsError):
    code = "connector_error"


class RateLimited(ConnectorError):
    code = "rate_limited"

    def __init__(self, retry_after: Optional[float] = None, message: str = "rate limited") -> None:
        self.retry_after = retry_after
        super().__init__(message)


class AuthenticationRequired(ConnectorError):
    code = "authentication_required"


class PermissionDenied(ConnectorError):
    code = "permission_denied"


class UpstreamFailure(ConnectorError):
    code = "upstream_failure"

    def __init__(
        self,
        message: str = "upstream failure",
        *,
        retryable: bool = True,
        status_code: Optional[int] = None,
    ) -> None:
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class Unsupported(ConnectorError):
    code = "unsupported"


class InvalidCursor(ConnectorError):
    code = "invalid_cursor"


# ── HTTP response classification ────────────────────────────────────────


def parse_retry_after(response: httpx.Response) -> Optional[float]:
    """
    Read a retry hint from ``Retry-After`` (seconds or HTTP date) or
    GitHub-style ``x-ratelimit-reset`` (epoch seconds).
    """
    value = response.headers.get("retry-after")
    if value:
        value = value.strip()
        if value.isdigit():
            return float(value)
        try:
            when = parsedate_to_datetime(value)
            return max(0.0, when.timestamp() - time.time())
        except (TypeError, ValueError):
            pass
    reset = response.headers.get("x-ratelimit-reset")
    if reset and reset.strip().isdigit():
        return max(0.0, float(reset) - time.time())
    return None


def raise_for_status(response: httpx.Response, provider: str) -> None:
    """
    Translate an upstream HTTP status into the typed taxonomy.

    429 (or 403 with an exhausted rate-limit budget) → RateLimited,
    401 → AuthenticationRequired, 403 → PermissionDenied,
    5xx → retryable UpstreamFailure, other 4xx → permanent UpstreamFailure.
    """
    status = response.status_code
    if status < 400:
        return
    if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
        raise RateLimited(parse_retry_after(response), f"{provider} rate limited")
    if status == 401:
        raise AuthenticationRequired(f"{provider} rejected credentials")
    if status == 403:
        raise PermissionDenied(f"{provider} denied access")
    if status >= 500:
        raise UpstreamFailure(f"{provider} returned {status}", retryable=True, status_code=status)
    raise UpstreamFailure(f"{provider} returned {status}", retryable=False, status_code=status)


# ── Sanitizing ──────────────────────────────────────────────────────────

_SECRET_PATTERNS = [
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"(?i)(access_token|refresh_token|client_secret|code)=[^&\s]+"),
    re.compile(r"sha256=[0-9a-fA-F]+"),
    re.compile(r"v0=[0-9a-fA-F]+"),
]

_MAX_ERROR_LEN = 500


def sanitize_error(exc: BaseException) -> str:
    """Render ``exc`` as ``code: message`` with secret-looking fragments redacted."""
    code = getattr(exc, "code", type(exc).__name__)
    message = str(exc) or type(exc).__name__
    for pattern in _SECRET_PATTERNS:
        message = pattern.sub("[redacted]", message)
    text = f"{code}: {message}"
    return text[:_MAX_ERROR_LEN]
