"""
Request-scoped middleware: request ids and access logging.

Only the path is logged. Query strings on the OAuth callback carry
authorization codes and webhook URLs carry tenant ids in the path, which is
acceptable, but bodies and headers never reach the log.
"""

from __future__ import annotations

import logging
import re
import time
import uuid

from fastapi import FastAPI, Request

logger = logging.getLogger("api.access")

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def _request_id(request: Request) -> str:
    supplied = request.headers.get("x-request-id", "")
    return supplied if _REQUEST_ID_RE.match(supplied) else uuid.uuid4().hex


def register_middleware(app: FastAPI) -> None:
    """Attach request-id propagation and the access log."""

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        request_id = _request_id(request)
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        level = logging.INFO if response.status_code >= 400 else logging.DEBUG
        logger.log(
            level,
            "%s %s -> %d in %.3fs [%s]",
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
            request_id,
        )
        return response
