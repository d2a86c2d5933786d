"""
SlackConnector — OAuth v2 and channel message activity for Slack.

Slack's Web API answers most failures with HTTP 200 and ``{"ok": false}``,
so every call goes through :meth:`SlackConnector._api` which maps the
``error`` field onto the typed taxonomy.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.base import BaseConnector, TokenSet, expires_at_from
from connectors.errors import (
    AuthenticationRequired,
    PermissionDenied,
    RateLimited,
    UpstreamFailure,
    Unsupported,
    parse_retry_after,
)
from core.normalizer import SignalKind, parse_timestamp, slack_event_kind
from utils.schemas import Connection, SignalDraft, SyncResult, WebhookEnvelope

logger = logging.getLogger(__name__)

# Slack OAuth2 endpoints
_SLACK_AUTH_URL = "https://slack.com/oauth/v2/authorize"
_SLACK_TOKEN_URL = "https://slack.com/api/oauth.v2.access"
_SLACK_API = "https://slack.com/api"

_AUTH_ERRORS = {"invalid_auth", "not_authed", "token_expired", "token_revoked", "account_inactive"}
_PERMISSION_ERRORS = {"missing_scope", "not_allowed_token_type", "no_permission", "ekm_access_denied"}
_HISTORY_LIMIT = 200
# channels walked per sync run; the rest continue on the follow-up job
_CHANNELS_PER_RUN = 20


class SlackConnector(BaseConnector):
    """OAuth2 connector for Slack workspaces."""

    @property
    def provider_name(self) -> str:
        return "slack"

    @property
    def display_name(self) -> str:
        return "Slack"

    @property
    def scopes(self) -> List[str]:
        return ["channels:history", "channels:read", "groups:history", "groups:read", "reactions:read"]

    @property
    def supports_webhooks(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return bool(config.slack_client_id and config.slack_client_secret)

    def _redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/connectors/slack/callback"

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": config.slack_client_id,
            "scope": ",".join(self.scopes),
            "redirect_uri": self._redirect_uri(),
            "state": state,
        }
        return f"{_SLACK_AUTH_URL}?{urlencode(params)}"

    def _check(self, resp: httpx.Response) -> Dict[str, Any]:
        if resp.status_code == 429:
            raise RateLimited(parse_retry_after(resp), "slack rate limited")
        if resp.status_code >= 500:
            raise UpstreamFailure(f"slack returned {resp.status_code}", status_code=resp.status_code)
        data = resp.json()
        if data.get("ok"):
            return data
        error = data.get("error", "unknown_error")
        if error == "ratelimited":
            raise RateLimited(parse_retry_after(resp), "slack rate limited")
        if error in _AUTH_ERRORS or error in ("invalid_grant", "invalid_refresh_token"):
            raise AuthenticationRequired(f"slack: {error}")
        if error in _PERMISSION_ERRORS:
            raise PermissionDenied(f"slack: {error}")
        raise UpstreamFailure(f"slack: {error}", retryable=error in ("internal_error", "fatal_error", "service_unavailable"))

    async def _api(self, client: httpx.AsyncClient, method: str, access_token: str, **params: Any) -> Dict[str, Any]:
        try:
            resp = await client.get(
                f"{_SLACK_API}/{method}",
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
            )
        except httpx.TransportError as exc:
            raise UpstreamFailure(f"slack transport error: {type(exc).__name__}") from None
        return self._check(resp)

    async def _oauth_access(self, form: Dict[str, str]) -> Dict[str, Any]:
        async with self._client() as client:
            try:
                resp = await client.post(
                    _SLACK_TOKEN_URL,
                    data=form,
                    auth=(config.slack_client_id, config.slack_client_secret),
                )
            except httpx.TransportError as exc:
                raise UpstreamFailure(f"slack token endpoint unreachable: {type(exc).__name__}") from None
        return self._check(resp)

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._oauth_access({"code": code, "redirect_uri": self._redirect_uri()})
        team = data.get("team") or {}
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            refresh_token_rotated=bool(data.get("refresh_token")),
            # only workspaces with token rotation enabled return expires_in
            expires_at=expires_at_from(data.get("expires_in")),
            scopes=[s for s in data.get("scope", "").split(",") if s],
            account_id=str(team.get("id", "")),
            account_label=team.get("name", ""),
            provider_meta={"team_id": team.get("id"), "bot_user_id": data.get("bot_user_id")},
        )

    async def refresh_token(self, refresh_token: Optional[str]) -> TokenSet:
        if not refresh_token:
            raise Unsupported("slack connection has no refresh token (token rotation disabled)")
        data = await self._oauth_access({"grant_type": "refresh_token", "refresh_token": refresh_token})
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            refresh_token_rotated=bool(data.get("refresh_token")),
            expires_at=expires_at_from(data.get("expires_in")),
        )

    async def revoke_token(self, access_token: str) -> bool:
        async with self._client() as client:
            data = await self._api(client, "auth.revoke", access_token)
        return bool(data.get("revoked"))

    # ── Sync ────────────────────────────────────────────────────────────

    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        """
        Walk every member channel's history newer than its stored ``oldest``.

        Cursor: ``{"channels": {channel_id: latest_ts}, "pending": [channel_id, …],
        "pages": {channel_id: {"cursor": …, "high": ts}}}``.  A channel with more
        history keeps its old mark until its page walk finishes.
        A channel seen for the first time starts at ``now`` (no backfill).
        """
        cursor = cursor or {}
        marks: Dict[str, str] = dict(cursor.get("channels") or {})
        pages: Dict[str, Dict[str, str]] = dict(cursor.get("pages") or {})
        now_ts = f"{datetime.now(timezone.utc).timestamp():.6f}"
        drafts: List[SignalDraft] = []

        async with self._client() as client:
            pending: List[str] = list(cursor.get("pending") or [])
            if not pending:
                pending = await self._member_channels(client, access_token)
            batch, rest = pending[:_CHANNELS_PER_RUN], pending[_CHANNELS_PER_RUN:]

            for channel in batch:
                oldest = marks.get(channel)
                if oldest is None:
                    marks[channel] = now_ts
                    continue
                page = pages.pop(channel, None)
                params: Dict[str, Any] = {"channel": channel, "oldest": oldest, "inclusive": "true", "limit": _HISTORY_LIMIT}
                if page:
                    params["cursor"] = page["cursor"]
                data = await self._api(client, "conversations.history", access_token, **params)
                messages = data.get("messages", [])
                for message in messages:
                    draft = self._message_draft(channel, message)
                    if draft is not None:
                        drafts.append(draft)
                seen = [page["high"] if page else oldest] + [m["ts"] for m in messages if m.get("ts")]
                high = max(seen, key=float)
                next_page = (data.get("response_metadata") or {}).get("next_cursor") if data.get("has_more") else None
                if next_page:
                    pages[channel] = {"cursor": next_page, "high": high}
                    rest.append(channel)
                else:
                    marks[channel] = high

        next_cursor = {"channels": marks, "pending": rest, "pages": pages}
        return SyncResult(signals=drafts, next_cursor=next_cursor, has_more=bool(rest))

    async def _member_channels(self, client: httpx.AsyncClient, access_token: str) -> List[str]:
        channels: List[str] = []
        page_cursor: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"types": "public_channel,private_channel", "exclude_archived": "true", "limit": 200}
            if page_cursor:
                params["cursor"] = page_cursor
            data = await self._api(client, "users.conversations", access_token, **params)
            channels.extend(c["id"] for c in data.get("channels", []) if c.get("id"))
            page_cursor = (data.get("response_metadata") or {}).get("next_cursor")
            if not page_cursor:
                return channels

    @staticmethod
    def _message_draft(channel: str, event: Dict[str, Any]) -> Optional[SignalDraft]:
        kind = slack_event_kind({"type": "message", **event})
        if kind is None:
            return None
        message = event
        if kind == SignalKind.MESSAGE_UPDATED:
            message = event.get("message") or {}
        elif kind == SignalKind.MESSAGE_DELETED:
            message = event.get("previous_message") or {"ts": event.get("deleted_ts")}
        ts = message.get("ts") or event.get("ts", "")
        event_ts = event.get("event_ts") or event.get("ts") or ts
        # edits and deletions are distinct events on the same message
        version_ts = ts if kind == SignalKind.MESSAGE_POSTED else event_ts
        return SignalDraft(
            kind=kind.value,
            external_id=f"{channel}:{ts}",
            occurred_at=parse_timestamp(version_ts) or datetime.now(timezone.utc),
            raw=event,
            normalized={
                "channel": channel,
                "ts": ts,
                "user": message.get("user"),
                "text": message.get("text"),
                "thread_ts": message.get("thread_ts"),
            },
        )

    # ── Webhooks ────────────────────────────────────────────────────────

    async def handle_webhook(self, envelope: WebhookEnvelope) -> list:
        payload = envelope.payload or {}
        if payload.get("type") != "event_callback":
            return []
        event = payload.get("event") or {}
        if event.get("type") == "reaction_added":
            item = event.get("item") or {}
            return [
                SignalDraft(
                    kind=SignalKind.REACTION_ADDED.value,
                    external_id=f"{item.get('channel')}:{item.get('ts')}:{event.get('user')}:{event.get('reaction')}",
                    occurred_at=parse_timestamp(event.get("event_ts")) or envelope.received_at,
                    raw=payload,
                    normalized={
                        "channel": item.get("channel"),
                        "ts": item.get("ts"),
                        "user": event.get("user"),
                        "reaction": event.get("reaction"),
                    },
                )
            ]
        if event.get("type") == "message":
            draft = self._message_draft(event.get("channel", ""), event)
            return [draft] if draft is not None else []
        logger.debug("Ignoring Slack event %s", event.get("type"))
        return []
