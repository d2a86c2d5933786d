"""
Shared Zoho OAuth2 flow for Zoho Cliq and Zoho Mail.

Zoho runs isolated data centers; the accounts host and the API host both
depend on ``config.zoho_dc``.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional
from urllib.parse import urlencode

from config.settings import config
from connectors.base import BaseConnector, TokenSet, expires_at_from
from connectors.errors import Unsupported

logger = logging.getLogger(__name__)

_ACCOUNTS_HOSTS: Dict[str, str] = {
    "us": "https://accounts.zoho.com",
    "eu": "https://accounts.zoho.eu",
    "in": "https://accounts.zoho.in",
    "au": "https://accounts.zoho.com.au",
    "jp": "https://accounts.zoho.jp",
    "ca": "https://accounts.zohocloud.ca",
    "sa": "https://accounts.zoho.sa",
    "uk": "https://accounts.zoho.uk",
}


def accounts_host(dc: Optional[str] = None) -> str:
    return _ACCOUNTS_HOSTS.get((dc or config.zoho_dc).lower(), _ACCOUNTS_HOSTS["us"])


class ZohoOAuthConnector(BaseConnector):
    """OAuth2 plumbing common to Zoho products."""

    def is_configured(self) -> bool:
        return bool(config.zoho_client_id and config.zoho_client_secret)

    def _redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/connectors/{self.provider_name}/callback"

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": config.zoho_client_id,
            "response_type": "code",
            "scope": ",".join(self.scopes),
            "redirect_uri": self._redirect_uri(),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{accounts_host()}/oauth/v2/auth?{urlencode(params)}"

    async def _exchange(self, code: str) -> Dict:
        async with self._client() as client:
            return await self._token_request(
                client,
                f"{accounts_host()}/oauth/v2/token",
                data={
                    "grant_type": "authorization_code",
                    "client_id": config.zoho_client_id,
                    "client_secret": config.zoho_client_secret,
                    "redirect_uri": self._redirect_uri(),
                    "code": code,
                },
            )

    async def refresh_token(self, refresh_token: Optional[str]) -> TokenSet:
        """Zoho never rotates refresh tokens; the stored one stays valid."""
        if not refresh_token:
            raise Unsupported(f"{self.provider_name} connection has no refresh token")
        async with self._client() as client:
            data = await self._token_request(
                client,
                f"{accounts_host()}/oauth/v2/token",
                data={
                    "grant_type": "refresh_token",
                    "client_id": config.zoho_client_id,
                    "client_secret": config.zoho_client_secret,
                    "refresh_token": refresh_token,
                },
            )
        return TokenSet(
            access_token=data["access_token"],
            refresh_token_rotated=False,
            expires_at=expires_at_from(data.get("expires_in")),
        )

    async def revoke_token(self, access_token: str) -> bool:
        async with self._client() as client:
            resp = await client.post(f"{accounts_host()}/oauth/v2/token/revoke", params={"token": access_token})
        return resp.status_code == 200

    @staticmethod
    def _auth_headers(access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Zoho-oauthtoken {access_token}", "Accept": "application/json"}
