"""
GmailConnector — incremental mailbox activity via the Gmail History API.

The first sync records the mailbox's current ``historyId`` as a baseline and
emits nothing.  Later syncs walk ``users.history.list`` from that id.
Pub/Sub push notifications (OIDC-verified upstream) carry only a
``historyId`` and trigger a sync instead of producing signals.
"""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from connectors.errors import InvalidCursor, UpstreamFailure
from connectors.google import GoogleOAuthConnector
from core.normalizer import SignalKind, gmail_added_kind
from utils.schemas import Connection, SignalDraft, SyncResult, WebhookEnvelope

logger = logging.getLogger(__name__)

_GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
_PAGE_SIZE = 500


class GmailConnector(GoogleOAuthConnector):
    """OAuth2 connector for Gmail."""

    @property
    def provider_name(self) -> str:
        return "gmail"

    @property
    def display_name(self) -> str:
        return "Gmail"

    @property
    def scopes(self) -> List[str]:
        return ["https://www.googleapis.com/auth/gmail.readonly"]

    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        headers = self._bearer(access_token)
        async with self._client() as client:
            if not cursor or not cursor.get("history_id"):
                resp = await self._request(client, "GET", f"{_GMAIL_API}/profile", headers=headers)
                history_id = str(resp.json().get("historyId", ""))
                if not history_id:
                    raise UpstreamFailure("gmail profile returned no historyId")
                logger.info("Gmail baseline established for connection %s", connection.id)
                return SyncResult(signals=[], next_cursor={"history_id": history_id}, has_more=False)

            params: Dict[str, Any] = {
                "startHistoryId": cursor["history_id"],
                "maxResults": _PAGE_SIZE,
                "historyTypes": ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"],
            }
            if cursor.get("page_token"):
                params["pageToken"] = cursor["page_token"]
            try:
                resp = await self._request(client, "GET", f"{_GMAIL_API}/history", headers=headers, params=params)
            except UpstreamFailure as exc:
                # 404 means startHistoryId fell out of Gmail's retention window
                if exc.status_code == 404:
                    raise InvalidCursor("gmail startHistoryId expired") from None
                raise
            data = resp.json()

        drafts = [d for record in data.get("history", []) for d in self._history_drafts(record)]
        next_page = data.get("nextPageToken")
        if next_page:
            next_cursor = {"history_id": cursor["history_id"], "page_token": next_page}
        else:
            next_cursor = {"history_id": str(data.get("historyId") or cursor["history_id"])}
        return SyncResult(signals=drafts, next_cursor=next_cursor, has_more=bool(next_page))

    def _history_drafts(self, record: Dict[str, Any]) -> List[SignalDraft]:
        history_id = str(record.get("id", ""))
        now = datetime.now(timezone.utc)
        drafts: List[SignalDraft] = []

        def draft(kind: SignalKind, message: Dict[str, Any]) -> SignalDraft:
            return SignalDraft(
                kind=kind.value,
                external_id=str(message.get("id", "")),
                occurred_at=now,
                version=history_id,
                raw={"history_id": history_id, "message": message},
                normalized={
                    "message_id": message.get("id"),
                    "thread_id": message.get("threadId"),
                    "labels": message.get("labelIds", []),
                },
            )

        for added in record.get("messagesAdded", []):
            message = added.get("message", {})
            drafts.append(draft(gmail_added_kind(message.get("labelIds", [])), message))
        for deleted in record.get("messagesDeleted", []):
            drafts.append(draft(SignalKind.EMAIL_DELETED, deleted.get("message", {})))
        for changed in record.get("labelsAdded", []) + record.get("labelsRemoved", []):
            drafts.append(draft(SignalKind.EMAIL_UPDATED, changed.get("message", {})))
        return drafts

    async def handle_webhook(self, envelope: WebhookEnvelope) -> list:
        """
        Pub/Sub push: ``{"message": {"data": base64({"emailAddress", "historyId"})}}``.
        Nothing to emit; the platform enqueues a sync.
        """
        message = (envelope.payload or {}).get("message") or {}
        data = message.get("data")
        if data:
            try:
                decoded = json.loads(base64.b64decode(data))
                logger.debug("Gmail push for historyId=%s", decoded.get("historyId"))
            except (ValueError, TypeError):
                logger.warning("Gmail push carried undecodable data; syncing anyway")
        return []
