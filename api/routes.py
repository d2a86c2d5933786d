"""
REST API routes for operators: providers, connections, jobs, signals.

Route prefix: /api/v1. Every route requires an operator bearer token, and
tenant-scoped routes read the tenant from ``X-Tenant-Id``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_registry, get_repository, get_tenant_id, get_token_manager, require_operator
from connectors.registry import ProviderRegistry
from connectors.token_manager import TokenManager
from utils.pagination import InvalidPageCursor, decode_cursor, encode_cursor
from utils.schemas import JobType, SyncJob

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_operator)])


@router.get("/providers")
async def list_providers(registry: ProviderRegistry = Depends(get_registry)) -> List[Dict[str, Any]]:
    """All supported providers, sorted by name."""
    return [m.model_dump(mode="json") for m in registry.list_metadata()]


# ── Connections ─────────────────────────────────────────────────────────


@router.get("/connections")
async def list_connections(
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    repository=Depends(get_repository),
) -> List[Dict[str, Any]]:
    """List the tenant's connections (no token material)."""
    return [c.public_dict() for c in await repository.list_connections(tenant_id)]


async def _tenant_connection(repository, tenant_id: uuid.UUID, connection_id: uuid.UUID):
    conn = await repository.get_connection(connection_id)
    if conn is None or conn.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return conn


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> Dict[str, Any]:
    """Revoke upstream (best effort) and delete the connection."""
    if not await tokens.disconnect(tenant_id, connection_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return {"status": "disconnected", "connection_id": str(connection_id)}


@router.post("/connections/{connection_id}/sync", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    connection_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    repository=Depends(get_repository),
) -> Dict[str, Any]:
    """Enqueue a full sync starting from the stored cursor."""
    conn = await _tenant_connection(repository, tenant_id, connection_id)
    job = await repository.enqueue_job(
        SyncJob(
            connection_id=conn.id,
            tenant_id=conn.tenant_id,
            provider_name=conn.provider_name,
            job_type=JobType.FULL,
            cursor_in=conn.cursor,
        )
    )
    logger.info("Manual full sync %s queued for connection %s", job.id, conn.id)
    return {"status": "queued", "job_id": str(job.id)}


# ── Jobs ────────────────────────────────────────────────────────────────


@router.get("/jobs")
async def list_jobs(
    connection_id: Optional[uuid.UUID] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    repository=Depends(get_repository),
) -> List[Dict[str, Any]]:
    jobs = await repository.list_jobs(tenant_id, connection_id=connection_id, limit=limit)
    return [j.public_dict() for j in jobs]


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    repository=Depends(get_repository),
) -> Dict[str, Any]:
    job = await repository.get_job(job_id)
    if job is None or job.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job.public_dict()


# ── Signals ─────────────────────────────────────────────────────────────


@router.get("/signals")
async def list_signals(
    provider: Optional[str] = Query(None),
    kind: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = Query(None),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    repository=Depends(get_repository),
) -> Dict[str, Any]:
    """
    Newest-first signal feed with keyset pagination.

    Pass ``next_cursor`` from one page as ``cursor`` to get the next; it is
    ``null`` on the last page.
    """
    after = None
    if cursor:
        try:
            after = decode_cursor(cursor)
        except InvalidPageCursor:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid cursor") from None

    rows = await repository.list_signals(tenant_id, provider=provider, kind=kind, limit=limit + 1, after=after)
    page = rows[:limit]
    next_cursor = encode_cursor(page[-1].occurred_at, page[-1].id) if len(rows) > limit else None
    return {
        "items": [s.model_dump(mode="json") for s in page],
        "next_cursor": next_cursor,
    }
