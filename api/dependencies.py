"""
FastAPI dependencies (shared across routes).

Long-lived services are built once in ``main.create_app`` and hung off
``app.state``; these helpers hand them to route functions.
"""

from __future__ import annotations

import hmac
import uuid
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from connectors.registry import ProviderRegistry
from connectors.token_manager import TokenManager


def get_repository(request: Request):
    return request.app.state.repository


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.tokens


async def require_operator(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> None:
    """Accept only ``Authorization: Bearer <token>`` matching a configured operator token."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )
    token = authorization[7:].strip().encode("utf-8")
    matched = False
    for candidate in request.app.state.settings.operator_token_list:
        matched |= hmac.compare_digest(candidate.encode("utf-8"), token)
    if not matched:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="unauthorized",
        )


async def get_tenant_id(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
) -> uuid.UUID:
    if not x_tenant_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-Id header is required")
    try:
        return uuid.UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Tenant-Id must be a UUID") from None
