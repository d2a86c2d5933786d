"""
GoogleCalendarConnector — primary-calendar event activity via sync tokens.

Without a cursor the connector pages through events from
``now - google_calendar_backfill_days`` to obtain a ``nextSyncToken``.  With
the default of zero days this only establishes a token baseline and emits
nothing; a positive value also emits the backfilled events.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from config.settings import config
from connectors.errors import InvalidCursor, UpstreamFailure
from connectors.google import GoogleOAuthConnector
from core.normalizer import calendar_event_kind, parse_timestamp
from utils.schemas import Connection, SignalDraft, SyncResult, WebhookEnvelope

logger = logging.getLogger(__name__)

_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
_PAGE_SIZE = 250


class GoogleCalendarConnector(GoogleOAuthConnector):
    """OAuth2 connector for Google Calendar."""

    def __init__(self, transport=None, backfill_days: Optional[int] = None) -> None:
        super().__init__(transport)
        self._backfill_days = config.google_calendar_backfill_days if backfill_days is None else backfill_days

    @property
    def provider_name(self) -> str:
        return "google-calendar"

    @property
    def display_name(self) -> str:
        return "Google Calendar"

    @property
    def scopes(self) -> List[str]:
        return ["https://www.googleapis.com/auth/calendar.readonly"]

    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        cursor = cursor or {}
        baseline = not cursor.get("sync_token")
        params: Dict[str, Any] = {"maxResults": _PAGE_SIZE, "singleEvents": "true", "showDeleted": "true"}
        if baseline:
            since = datetime.now(timezone.utc) - timedelta(days=self._backfill_days)
            params["timeMin"] = cursor.get("time_min") or since.strftime("%Y-%m-%dT%H:%M:%SZ")
        else:
            params["syncToken"] = cursor["sync_token"]
        if cursor.get("page_token"):
            params["pageToken"] = cursor["page_token"]

        async with self._client() as client:
            try:
                resp = await self._request(client, "GET", _EVENTS_URL, headers=self._bearer(access_token), params=params)
            except UpstreamFailure as exc:
                # 410 Gone: the sync token was invalidated; a full baseline is required
                if exc.status_code == 410:
                    raise InvalidCursor("calendar sync token expired") from None
                raise
            data = resp.json()

        emit = not baseline or self._backfill_days > 0
        drafts = [self._event_draft(e) for e in data.get("items", [])] if emit else []

        if data.get("nextPageToken"):
            next_cursor = {"sync_token": cursor.get("sync_token"), "page_token": data["nextPageToken"]}
            if baseline:
                # paging must repeat the original query
                next_cursor["time_min"] = params["timeMin"]
            return SyncResult(signals=drafts, next_cursor=next_cursor, has_more=True)
        if baseline:
            logger.info("Calendar baseline established for connection %s", connection.id)
        return SyncResult(
            signals=drafts,
            next_cursor={"sync_token": data.get("nextSyncToken") or cursor.get("sync_token")},
            has_more=False,
        )

    def _event_draft(self, event: Dict[str, Any]) -> SignalDraft:
        kind = calendar_event_kind(event)
        start = event.get("start") or {}
        end = event.get("end") or {}
        return SignalDraft(
            kind=kind.value,
            external_id=str(event.get("id", "")),
            occurred_at=parse_timestamp(event.get("updated")) or datetime.now(timezone.utc),
            raw=event,
            normalized={
                "event_id": event.get("id"),
                "summary": event.get("summary"),
                "status": event.get("status"),
                "start": start.get("dateTime") or start.get("date"),
                "end": end.get("dateTime") or end.get("date"),
                "organizer": (event.get("organizer") or {}).get("email"),
                "url": event.get("htmlLink"),
            },
        )

    async def handle_webhook(self, envelope: WebhookEnvelope) -> list:
        """Watch notifications carry no event data; the platform enqueues a sync."""
        logger.debug(
            "Calendar notification state=%s message=%s",
            envelope.header("x-goog-resource-state"),
            envelope.header("x-goog-message-number"),
        )
        return []
