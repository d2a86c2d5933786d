"""
GoogleDriveConnector — file activity via the Drive Changes API.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from connectors.errors import InvalidCursor, UpstreamFailure
from connectors.google import GoogleOAuthConnector
from core.normalizer import drive_change_kind, parse_timestamp
from utils.schemas import Connection, SignalDraft, SyncResult, WebhookEnvelope

logger = logging.getLogger(__name__)

_DRIVE_API = "https://www.googleapis.com/drive/v3"
_CHANGE_FIELDS = (
    "nextPageToken,newStartPageToken,"
    "changes(changeType,fileId,removed,time,"
    "file(id,name,mimeType,createdTime,modifiedTime,trashed,parents,webViewLink))"
)


class GoogleDriveConnector(GoogleOAuthConnector):
    """OAuth2 connector for Google Drive."""

    @property
    def provider_name(self) -> str:
        return "google-drive"

    @property
    def display_name(self) -> str:
        return "Google Drive"

    @property
    def scopes(self) -> List[str]:
        return ["https://www.googleapis.com/auth/drive.readonly"]

    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        headers = self._bearer(access_token)
        async with self._client() as client:
            if not cursor or not cursor.get("page_token"):
                resp = await self._request(client, "GET", f"{_DRIVE_API}/changes/startPageToken", headers=headers)
                token = resp.json().get("startPageToken")
                if not token:
                    raise UpstreamFailure("drive returned no startPageToken")
                logger.info("Drive baseline established for connection %s", connection.id)
                return SyncResult(signals=[], next_cursor={"page_token": token}, has_more=False)

            try:
                resp = await self._request(
                    client,
                    "GET",
                    f"{_DRIVE_API}/changes",
                    headers=headers,
                    params={
                        "pageToken": cursor["page_token"],
                        "pageSize": 1000,
                        "includeRemoved": "true",
                        "spaces": "drive",
                        "fields": _CHANGE_FIELDS,
                    },
                )
            except UpstreamFailure as exc:
                if exc.status_code in (400, 404):
                    raise InvalidCursor("drive page token rejected") from None
                raise
            data = resp.json()

        drafts = [self._change_draft(c) for c in data.get("changes", []) if c.get("changeType", "file") == "file"]
        if data.get("nextPageToken"):
            return SyncResult(signals=drafts, next_cursor={"page_token": data["nextPageToken"]}, has_more=True)
        return SyncResult(
            signals=drafts,
            next_cursor={"page_token": data.get("newStartPageToken") or cursor["page_token"]},
            has_more=False,
        )

    def _change_draft(self, change: Dict[str, Any]) -> SignalDraft:
        file = change.get("file") or {}
        kind = drive_change_kind(change)
        return SignalDraft(
            kind=kind.value,
            external_id=str(change.get("fileId") or file.get("id", "")),
            occurred_at=parse_timestamp(change.get("time") or file.get("modifiedTime")) or datetime.now(timezone.utc),
            raw=change,
            normalized={
                "file_id": change.get("fileId"),
                "name": file.get("name"),
                "mime_type": file.get("mimeType"),
                "url": file.get("webViewLink"),
            },
        )

    async def handle_webhook(self, envelope: WebhookEnvelope) -> list:
        """Watch notifications carry only headers; the platform enqueues a sync."""
        logger.debug(
            "Drive notification state=%s channel=%s",
            envelope.header("x-goog-resource-state"),
            envelope.header("x-goog-channel-id"),
        )
        return []
