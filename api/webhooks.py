"""
Inbound provider webhooks.

``POST /webhooks/{provider}/{tenant_id}`` only verifies and enqueues; the
sync executor turns the stored envelope into signals.  Rejections carry a
fixed public detail and log nothing but the reason code.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from connectors.errors import WebhookProviderNotFound, WebhookRateLimited, WebhookRejected
from connectors.webhook_verification import sanitize_headers
from utils.schemas import ConnectionStatus, JobType, SyncJob, WebhookEnvelope

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def _rejection(exc: WebhookRejected) -> JSONResponse:
    headers = {}
    if isinstance(exc, WebhookRateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_detail}, headers=headers)


def _parse_payload(body: bytes) -> Optional[Any]:
    if not body:
        return None
    try:
        return json.loads(body)
    except (UnicodeDecodeError, ValueError):
        return None


@router.post("/webhooks/{provider}/{tenant_id}", status_code=status.HTTP_202_ACCEPTED)
async def receive_webhook(provider: str, tenant_id: str, request: Request):
    state = request.app.state
    body = await request.body()
    raw_headers: Dict[str, str] = {k.lower(): v for k, v in request.headers.items()}

    try:
        tenant = uuid.UUID(tenant_id)
    except ValueError:
        return _rejection(WebhookProviderNotFound())

    try:
        await state.verifier.verify(provider, raw_headers, body)
        state.webhook_limiter.check(provider, str(tenant))
    except WebhookRejected as exc:
        logger.warning("Webhook rejected: provider=%s reason=%s", provider, exc.reason)
        return _rejection(exc)

    payload = _parse_payload(body)
    if provider == "slack" and isinstance(payload, dict) and payload.get("type") == "url_verification":
        return JSONResponse(status_code=status.HTTP_200_OK, content={"challenge": payload.get("challenge")})

    repository = state.repository
    conn = None
    connection_header = raw_headers.get("x-connection-id")
    if connection_header:
        try:
            conn = await repository.get_connection(uuid.UUID(connection_header))
        except ValueError:
            conn = None
        if conn is None or conn.tenant_id != tenant or conn.provider_name != provider:
            return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "not found"})
    else:
        candidates = await repository.find_connections(tenant, provider)
        conn = next((c for c in candidates if c.status == ConnectionStatus.ACTIVE), None)

    if conn is None:
        logger.info("Webhook for %s/%s has no active connection; ignored", provider, tenant)
        return {"status": "ignored"}

    envelope = WebhookEnvelope(
        tenant_id=tenant,
        provider=provider,
        headers=sanitize_headers(request.headers.items()),
        body=body,
        payload=payload,
    )
    job = await repository.enqueue_job(
        SyncJob(
            connection_id=conn.id,
            tenant_id=tenant,
            provider_name=provider,
            job_type=JobType.WEBHOOK,
            cursor_in=envelope.to_cursor(),
        )
    )
    logger.debug("Webhook job %s queued for connection %s", job.id, conn.id)
    return {"status": "accepted"}
