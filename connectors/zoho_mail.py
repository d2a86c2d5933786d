"""
ZohoMailConnector — inbound mail activity for Zoho Mail.

The first sync only records a ``since_ms`` baseline at now; later syncs list
messages newest-first and stop at the first page that reaches past
``since_ms - overlap``.  The overlap absorbs clock skew; duplicates are
collapsed by dedupe key.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from config.settings import config
from connectors.base import TokenSet, expires_at_from
from connectors.errors import PermissionDenied
from connectors.zoho import ZohoOAuthConnector
from core.normalizer import SignalKind, parse_timestamp
from utils.schemas import Connection, SignalDraft, SyncResult

logger = logging.getLogger(__name__)

_MAIL_HOSTS: Dict[str, str] = {
    "us": "https://mail.zoho.com",
    "eu": "https://mail.zoho.eu",
    "in": "https://mail.zoho.in",
    "au": "https://mail.zoho.com.au",
    "jp": "https://mail.zoho.jp",
    "ca": "https://mail.zohocloud.ca",
    "sa": "https://mail.zoho.sa",
    "uk": "https://mail.zoho.uk",
}

_PAGE_SIZE = 200
_MAX_PAGES = 5
_OVERLAP_MS = 5 * 60 * 1000


def mail_host() -> str:
    return _MAIL_HOSTS.get(config.zoho_dc.lower(), _MAIL_HOSTS["us"])


class ZohoMailConnector(ZohoOAuthConnector):
    """OAuth2 connector for Zoho Mail."""

    @property
    def provider_name(self) -> str:
        return "zoho-mail"

    @property
    def display_name(self) -> str:
        return "Zoho Mail"

    @property
    def scopes(self) -> List[str]:
        return ["ZohoMail.messages.READ", "ZohoMail.accounts.READ"]

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._exchange(code)
        async with self._client() as client:
            resp = await self._request(
                client, "GET", f"{mail_host()}/api/accounts", headers=self._auth_headers(data["access_token"])
            )
            accounts = resp.json().get("data") or []
        if not accounts:
            raise PermissionDenied("zoho mail grant has no mail accounts")
        account = accounts[0]
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            refresh_token_rotated=bool(data.get("refresh_token")),
            expires_at=expires_at_from(data.get("expires_in")),
            scopes=data.get("scope", "").split(),
            account_id=str(account.get("accountId", "")),
            account_label=account.get("primaryEmailAddress") or account.get("mailboxAddress", ""),
            provider_meta={"account_id": str(account.get("accountId", ""))},
        )

    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        account_id = connection.metadata.get("account_id") or connection.external_account_id
        now_ms = int(datetime.now(timezone.utc).timestamp() * 1000)
        if not cursor or "since_ms" not in cursor:
            logger.info("Zoho Mail baseline established for connection %s", connection.id)
            return SyncResult(signals=[], next_cursor={"since_ms": now_ms}, has_more=False)

        since_ms = int(cursor["since_ms"])
        floor_ms = since_ms - _OVERLAP_MS
        drafts: List[SignalDraft] = []
        newest = since_ms
        reached_floor = False

        async with self._client() as client:
            for page in range(_MAX_PAGES):
                resp = await self._request(
                    client,
                    "GET",
                    f"{mail_host()}/api/accounts/{account_id}/messages/view",
                    headers=self._auth_headers(access_token),
                    params={"start": page * _PAGE_SIZE + 1, "limit": _PAGE_SIZE, "sortorder": "false"},
                )
                messages = resp.json().get("data") or []
                for message in messages:
                    received = int(message.get("receivedTime") or 0)
                    if received < floor_ms:
                        reached_floor = True
                        break
                    newest = max(newest, received)
                    drafts.append(self._message_draft(message, received))
                if reached_floor or len(messages) < _PAGE_SIZE:
                    reached_floor = True
                    break

        if not reached_floor:
            logger.warning("Zoho Mail sync for %s hit the page cap; older messages skipped", connection.id)
        return SyncResult(signals=drafts, next_cursor={"since_ms": newest}, has_more=False)

    @staticmethod
    def _message_draft(message: Dict[str, Any], received_ms: int) -> SignalDraft:
        return SignalDraft(
            kind=SignalKind.EMAIL_RECEIVED.value,
            external_id=str(message.get("messageId", "")),
            occurred_at=parse_timestamp(received_ms) or datetime.now(timezone.utc),
            raw=message,
            normalized={
                "message_id": message.get("messageId"),
                "folder_id": message.get("folderId"),
                "subject": message.get("subject"),
                "from": message.get("fromAddress") or message.get("sender"),
            },
        )
