"""
Connector API routes — OAuth authorize URL and provider callback.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import html
import json
import logging
import uuid
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import HTMLResponse

from api.dependencies import get_registry, get_tenant_id, get_token_manager, require_operator
from connectors.errors import ConnectorsError, InvalidOAuthState, UnknownProvider, Unsupported, sanitize_error
from connectors.registry import ProviderRegistry
from connectors.token_manager import TokenManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


@router.get("/{provider}/auth-url", dependencies=[Depends(require_operator)])
async def get_auth_url(
    provider: str,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    tokens: TokenManager = Depends(get_token_manager),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a provider.

    The operator's frontend should open this URL in a popup window; the
    embedded state is single-use and bound to (tenant, provider).
    """
    try:
        auth_url = await tokens.authorize(tenant_id, provider)
    except UnknownProvider:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found") from None
    except Unsupported as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from None
    return {"auth_url": auth_url, "provider": provider}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str = Query(...),
    state: str = Query(...),
    tokens: TokenManager = Depends(get_token_manager),
    registry: ProviderRegistry = Depends(get_registry),
) -> HTMLResponse:
    """
    OAuth callback. The provider redirects here after consent.

    Exchanges the auth code for tokens, stores the encrypted connection, and
    returns a small HTML page that notifies the opener window and auto-closes.
    """
    if provider not in registry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    try:
        conn = await tokens.exchange_token(code, state, provider)
    except InvalidOAuthState:
        logger.warning("Rejected OAuth callback for %s: invalid state", provider)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid or expired OAuth state") from None
    except ConnectorsError as exc:
        logger.error("OAuth callback failed for %s: %s", provider, sanitize_error(exc))
        return HTMLResponse(
            content=_callback_html(success=False, message="Connection failed", provider=provider),
            status_code=200,
        )

    display_name = registry.get_metadata(provider).display_name
    label = conn.metadata.get("account_label") or conn.external_account_id
    logger.info("OAuth connected: tenant=%s provider=%s connection=%s", conn.tenant_id, provider, conn.id)
    return HTMLResponse(
        content=_callback_html(success=True, message=f"Connected {display_name} as {label}", provider=provider),
        status_code=200,
    )


# ── Callback HTML template ─────────────────────────────────────────────


def _callback_html(success: bool, message: str, provider: str) -> str:
    """
    Small HTML page shown in the OAuth popup after redirect.
    Sends a postMessage to the opener and auto-closes.
    """
    status_text = "Connected!" if success else "Failed"
    color = "#00d992" if success else "#ef4444"
    notice = json.dumps({"type": "oauth-callback", "provider": provider, "success": success, "message": message})
    # keep "</script>" in a message from closing the inline script
    notice = notice.replace("</", "<\\/")

    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Poblysh — {html.escape(provider)} {status_text}</title>
    <style>
        body {{
            font-family: system-ui, sans-serif;
            display: flex; align-items: center; justify-content: center;
            height: 100vh; margin: 0;
        }}
        h2 {{ color: {color}; }}
    </style>
</head>
<body>
    <div>
        <h2>{status_text}</h2>
        <p>{html.escape(message)}</p>
        <p>This window will close automatically…</p>
    </div>
    <script>
        if (window.opener) {{
            window.opener.postMessage({notice}, '*');
        }}
        setTimeout(() => window.close(), 2000);
    </script>
</body>
</html>"""
