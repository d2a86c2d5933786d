"""
Shared Google OAuth2 web flow for Gmail, Drive, and Calendar connectors.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from config.settings import config
from connectors.base import BaseConnector, TokenSet, expires_at_from
from connectors.errors import Unsupported

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

_USERINFO_SCOPES = ["openid", "https://www.googleapis.com/auth/userinfo.email"]


class GoogleOAuthConnector(BaseConnector):
    """OAuth2 plumbing common to every Google API connector."""

    webhook_triggers_sync = True

    @property
    def supports_webhooks(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return bool(config.google_client_id and config.google_client_secret)

    def _redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/connectors/{self.provider_name}/callback"

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": config.google_client_id,
            "redirect_uri": self._redirect_uri(),
            "response_type": "code",
            "scope": " ".join(self.scopes + _USERINFO_SCOPES),
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{_GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange auth code for tokens and fetch the account email."""
        async with self._client() as client:
            token_data = await self._token_request(
                client,
                _GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": config.google_client_id,
                    "client_secret": config.google_client_secret,
                    "redirect_uri": self._redirect_uri(),
                    "grant_type": "authorization_code",
                },
            )
            headers = {"Authorization": f"Bearer {token_data['access_token']}"}
            user_resp = await self._request(client, "GET", _GOOGLE_USERINFO_URL, headers=headers)
            user_info = user_resp.json()

        return TokenSet(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            refresh_token_rotated=bool(token_data.get("refresh_token")),
            expires_at=expires_at_from(token_data.get("expires_in")),
            scopes=token_data.get("scope", "").split(),
            account_id=str(user_info.get("id") or user_info.get("email", "")),
            account_label=user_info.get("email", ""),
            provider_meta={"email": user_info.get("email"), "name": user_info.get("name")},
        )

    async def refresh_token(self, refresh_token: Optional[str]) -> TokenSet:
        """Use the refresh token to get a new access token.  Google rarely rotates it."""
        if not refresh_token:
            raise Unsupported(f"{self.provider_name} connection has no refresh token")
        async with self._client() as client:
            data = await self._token_request(
                client,
                _GOOGLE_TOKEN_URL,
                data={
                    "client_id": config.google_client_id,
                    "client_secret": config.google_client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            refresh_token_rotated=bool(data.get("refresh_token")),
            expires_at=expires_at_from(data.get("expires_in")),
            scopes=data.get("scope", "").split(),
        )

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke the token at Google."""
        async with self._client() as client:
            resp = await client.post(_GOOGLE_REVOKE_URL, params={"token": access_token})
        return resp.status_code == 200

    @staticmethod
    def _bearer(access_token: str) -> Dict[str, Any]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
