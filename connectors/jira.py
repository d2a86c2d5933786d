"""
JiraConnector — Atlassian OAuth 2.0 (3LO) and issue activity for Jira Cloud.

The cloud id of the authorized site is resolved at token exchange from
``accessible-resources`` and stored in the connection metadata; every API
call goes through ``api.atlassian.com/ex/jira/{cloud_id}``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from config.settings import config
from connectors.base import BaseConnector, TokenSet, expires_at_from
from connectors.errors import PermissionDenied, Unsupported
from core.normalizer import SignalKind, jira_polled_kind, jira_webhook_kind, parse_timestamp
from utils.schemas import Connection, SignalDraft, SyncResult, WebhookEnvelope

logger = logging.getLogger(__name__)

# Atlassian OAuth2 endpoints
_JIRA_AUTH_URL = "https://auth.atlassian.com/authorize"
_JIRA_TOKEN_URL = "https://auth.atlassian.com/oauth/token"
_JIRA_RESOURCES_URL = "https://api.atlassian.com/oauth/token/accessible-resources"
_JIRA_API = "https://api.atlassian.com/ex/jira"

_PAGE_SIZE = 100
_FIELDS = "summary,status,updated,created,resolutiondate,issuetype,assignee,reporter,project"
# first sync looks back this far instead of replaying the whole project history
_INITIAL_LOOKBACK = timedelta(days=1)


class JiraConnector(BaseConnector):
    """OAuth2 connector for Jira Cloud."""

    @property
    def provider_name(self) -> str:
        return "jira"

    @property
    def display_name(self) -> str:
        return "Jira"

    @property
    def scopes(self) -> List[str]:
        return ["read:jira-work", "read:jira-user", "offline_access"]

    @property
    def supports_webhooks(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return bool(config.jira_client_id and config.jira_client_secret)

    def _redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/connectors/jira/callback"

    def get_auth_url(self, state: str) -> str:
        params = {
            "audience": "api.atlassian.com",
            "client_id": config.jira_client_id,
            "scope": " ".join(self.scopes),
            "redirect_uri": self._redirect_uri(),
            "state": state,
            "response_type": "code",
            "prompt": "consent",
        }
        return f"{_JIRA_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        async with self._client() as client:
            token_data = await self._token_request(
                client,
                _JIRA_TOKEN_URL,
                json={
                    "grant_type": "authorization_code",
                    "client_id": config.jira_client_id,
                    "client_secret": config.jira_client_secret,
                    "code": code,
                    "redirect_uri": self._redirect_uri(),
                },
            )
            resp = await self._request(
                client,
                "GET",
                _JIRA_RESOURCES_URL,
                headers={"Authorization": f"Bearer {token_data['access_token']}", "Accept": "application/json"},
            )
            resources = resp.json()

        if not resources:
            raise PermissionDenied("jira grant covers no accessible sites")
        site = resources[0]
        return TokenSet(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            refresh_token_rotated=bool(token_data.get("refresh_token")),
            expires_at=expires_at_from(token_data.get("expires_in")),
            scopes=token_data.get("scope", "").split(),
            account_id=str(site.get("id", "")),
            account_label=site.get("name", ""),
            provider_meta={"cloud_id": site.get("id"), "site_url": site.get("url"), "site_name": site.get("name")},
        )

    async def refresh_token(self, refresh_token: Optional[str]) -> TokenSet:
        """Atlassian rotates refresh tokens on every use."""
        if not refresh_token:
            raise Unsupported("jira connection has no refresh token")
        async with self._client() as client:
            data = await self._token_request(
                client,
                _JIRA_TOKEN_URL,
                json={
                    "grant_type": "refresh_token",
                    "client_id": config.jira_client_id,
                    "client_secret": config.jira_client_secret,
                    "refresh_token": refresh_token,
                },
            )
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            refresh_token_rotated=bool(data.get("refresh_token")),
            expires_at=expires_at_from(data.get("expires_in")),
            scopes=data.get("scope", "").split(),
        )

    # ── Sync ────────────────────────────────────────────────────────────

    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        cloud_id = connection.metadata.get("cloud_id")
        if not cloud_id:
            raise PermissionDenied("jira connection has no cloud_id; reconnect required")

        cursor = cursor or {}
        since = parse_timestamp(cursor.get("updated_since")) or (datetime.now(timezone.utc) - _INITIAL_LOOKBACK)
        start_at = int(cursor.get("start_at", 0))
        # JQL only understands minute precision in the site's timezone; UTC sites assumed
        jql = f'updated >= "{since.strftime("%Y-%m-%d %H:%M")}" ORDER BY updated ASC'

        async with self._client() as client:
            resp = await self._request(
                client,
                "GET",
                f"{_JIRA_API}/{cloud_id}/rest/api/3/search",
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
                params={"jql": jql, "startAt": start_at, "maxResults": _PAGE_SIZE, "fields": _FIELDS},
            )
            data = resp.json()

        issues = data.get("issues", [])
        drafts = [self._issue_draft(jira_polled_kind(issue), issue) for issue in issues]
        total = int(data.get("total", 0))
        fetched = start_at + len(issues)
        since_text = since.strftime("%Y-%m-%dT%H:%M:%SZ")

        latest = max(
            filter(None, [parse_timestamp((i.get("fields") or {}).get("updated")) for i in issues]),
            default=None,
        )
        high_water = max(filter(None, [latest, parse_timestamp(cursor.get("high_water")), since]))

        if issues and fetched < total:
            next_cursor = {
                "updated_since": since_text,
                "start_at": fetched,
                "high_water": high_water.strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
            return SyncResult(signals=drafts, next_cursor=next_cursor, has_more=True)

        return SyncResult(
            signals=drafts,
            next_cursor={"updated_since": high_water.strftime("%Y-%m-%dT%H:%M:%SZ")},
            has_more=False,
        )

    @staticmethod
    def _issue_draft(kind: SignalKind, issue: Dict[str, Any]) -> SignalDraft:
        fields = issue.get("fields") or {}
        return SignalDraft(
            kind=kind.value,
            external_id=str(issue.get("id", "")),
            occurred_at=parse_timestamp(fields.get("updated")) or datetime.now(timezone.utc),
            raw=issue,
            normalized={
                "key": issue.get("key"),
                "summary": fields.get("summary"),
                "status": (fields.get("status") or {}).get("name"),
                "type": (fields.get("issuetype") or {}).get("name"),
                "assignee": (fields.get("assignee") or {}).get("displayName"),
                "project": (fields.get("project") or {}).get("key"),
            },
        )

    # ── Webhooks ────────────────────────────────────────────────────────

    async def handle_webhook(self, envelope: WebhookEnvelope) -> list:
        payload = envelope.payload or {}
        event = payload.get("webhookEvent", "")
        issue = payload.get("issue") or {}
        kind = jira_webhook_kind(event, issue)
        if kind is None:
            logger.debug("Ignoring Jira event %s", event)
            return []

        if kind == SignalKind.ISSUE_COMMENT:
            comment = payload.get("comment") or {}
            return [
                SignalDraft(
                    kind=kind.value,
                    external_id=str(comment.get("id", "")),
                    occurred_at=parse_timestamp(comment.get("updated")) or envelope.received_at,
                    raw=payload,
                    normalized={
                        "issue_key": issue.get("key"),
                        "author": (comment.get("author") or {}).get("displayName"),
                    },
                )
            ]
        if kind == SignalKind.ISSUE_CLOSED:
            # deletions carry no fresh ``updated``; key on the delivery timestamp
            ts = parse_timestamp(payload.get("timestamp")) or envelope.received_at
            draft = self._issue_draft(kind, issue)
            return [draft.model_copy(update={"occurred_at": ts})]
        return [self._issue_draft(kind, issue)]
