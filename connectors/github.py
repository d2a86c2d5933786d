"""
GitHubConnector — OAuth2 plus issue / pull-request activity for GitHub.

Polling walks ``/user/issues`` (issues and PRs across every repository the
user can see) sorted by ``updated`` ascending, resuming from the cursor's
``since`` and following ``Link: rel="next"`` pages.  Webhooks cover the
richer event set (comments, reviews, pushes, releases). Pull requests are
keyed by ``owner/repo#number`` on both paths.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from config.settings import config
from connectors.base import BaseConnector, TokenSet, expires_at_from
from connectors.errors import Unsupported
from core.normalizer import (
    SignalKind,
    github_issue_kind,
    github_polled_kind,
    github_pr_kind,
    parse_timestamp,
)
from utils.schemas import Connection, SignalDraft, SyncResult, WebhookEnvelope

logger = logging.getLogger(__name__)

# GitHub OAuth2 endpoints
_GH_AUTH_URL = "https://github.com/login/oauth/authorize"
_GH_TOKEN_URL = "https://github.com/login/oauth/access_token"
_GH_API = "https://api.github.com"

_PER_PAGE = 100


def pull_request_key(item: Dict[str, Any], repo: Dict[str, Any]) -> str:
    """
    Stable external id for a pull request: ``owner/repo#number``.

    The issues listing returns a PR under its issue id while webhooks carry
    the pull-request id, so neither numeric id is usable on both paths.
    """
    full_name = repo.get("full_name") or ((item.get("base") or {}).get("repo") or {}).get("full_name")
    if not full_name:
        # issues listing: https://api.github.com/repos/{owner}/{repo}
        repo_url = item.get("repository_url") or ""
        full_name = "/".join(repo_url.rstrip("/").split("/")[-2:]) if "/repos/" in repo_url else ""
    return f"{full_name}#{item.get('number')}"


class GitHubConnector(BaseConnector):
    """OAuth2 connector for GitHub."""

    @property
    def provider_name(self) -> str:
        return "github"

    @property
    def display_name(self) -> str:
        return "GitHub"

    @property
    def scopes(self) -> List[str]:
        return ["repo", "read:user", "user:email"]

    @property
    def supports_webhooks(self) -> bool:
        return True

    def is_configured(self) -> bool:
        return bool(config.github_client_id and config.github_client_secret)

    def _redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/connectors/github/callback"

    def get_auth_url(self, state: str) -> str:
        params = {
            "client_id": config.github_client_id,
            "redirect_uri": self._redirect_uri(),
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{_GH_AUTH_URL}?{urlencode(params)}"

    @staticmethod
    def _api_headers(access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange auth code for tokens and fetch user profile."""
        async with self._client() as client:
            # 1. Exchange code for token
            token_data = await self._token_request(
                client,
                _GH_TOKEN_URL,
                data={
                    "client_id": config.github_client_id,
                    "client_secret": config.github_client_secret,
                    "code": code,
                    "redirect_uri": self._redirect_uri(),
                },
                headers={"Accept": "application/json"},
            )

            # 2. Fetch user profile
            user_resp = await self._request(
                client, "GET", f"{_GH_API}/user", headers=self._api_headers(token_data["access_token"])
            )
            user = user_resp.json()

        return TokenSet(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            refresh_token_rotated=bool(token_data.get("refresh_token")),
            # classic OAuth tokens carry no expires_in and do not expire
            expires_at=expires_at_from(token_data.get("expires_in")),
            scopes=[s for s in token_data.get("scope", "").split(",") if s],
            account_id=str(user.get("id", "")),
            account_label=user.get("login", ""),
            provider_meta={"login": user.get("login"), "name": user.get("name")},
        )

    async def refresh_token(self, refresh_token: Optional[str]) -> TokenSet:
        """
        Refresh the access token using a GitHub App refresh token.

        Note: Only GitHub Apps with "Expire user authorization tokens"
        enabled provide refresh tokens. Classic OAuth tokens don't expire.
        GitHub rotates the refresh token on every use.
        """
        if not refresh_token:
            raise Unsupported("github connection has no refresh token")
        async with self._client() as client:
            data = await self._token_request(
                client,
                _GH_TOKEN_URL,
                data={
                    "client_id": config.github_client_id,
                    "client_secret": config.github_client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            refresh_token_rotated=bool(data.get("refresh_token")),
            expires_at=expires_at_from(data.get("expires_in")),
        )

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke the token via GitHub's OAuth application API."""
        async with self._client() as client:
            resp = await client.request(
                "DELETE",
                f"{_GH_API}/applications/{config.github_client_id}/token",
                auth=(config.github_client_id, config.github_client_secret),
                json={"access_token": access_token},
            )
        return resp.status_code == 204

    # ── Sync ────────────────────────────────────────────────────────────

    async def sync(self, connection: Connection, access_token: str, cursor: Any = None) -> SyncResult:
        cursor = cursor or {}
        since: Optional[str] = cursor.get("since")
        async with self._client() as client:
            if cursor.get("next_url"):
                resp = await self._request(client, "GET", cursor["next_url"], headers=self._api_headers(access_token))
            else:
                params = {
                    "filter": "all",
                    "state": "all",
                    "sort": "updated",
                    "direction": "asc",
                    "per_page": _PER_PAGE,
                }
                if since:
                    params["since"] = since
                resp = await self._request(
                    client, "GET", f"{_GH_API}/user/issues", headers=self._api_headers(access_token), params=params
                )
            items = resp.json()
            next_url = resp.links.get("next", {}).get("url")

        drafts = [self._polled_draft(item) for item in items]
        latest = max((item["updated_at"] for item in items if item.get("updated_at")), default=since)
        if next_url:
            # keep the original ``since`` until the page walk finishes
            return SyncResult(signals=drafts, next_cursor={"since": since, "next_url": next_url, "high_water": latest}, has_more=True)
        high_water = max(filter(None, [latest, cursor.get("high_water")]), default=None)
        return SyncResult(signals=drafts, next_cursor={"since": high_water} if high_water else {}, has_more=False)

    def _polled_draft(self, item: Dict[str, Any]) -> SignalDraft:
        kind = github_polled_kind(item)
        repo = item.get("repository") or {}
        if item.get("pull_request") is not None:
            return self._issue_draft(kind, item, repo, external_id=pull_request_key(item, repo))
        return self._issue_draft(kind, item, repo)

    @staticmethod
    def _issue_draft(
        kind: SignalKind,
        item: Dict[str, Any],
        repo: Dict[str, Any],
        external_id: Optional[str] = None,
    ) -> SignalDraft:
        return SignalDraft(
            kind=kind.value,
            external_id=external_id or str(item.get("id", "")),
            occurred_at=parse_timestamp(item.get("updated_at")) or datetime.now(timezone.utc),
            raw=item,
            normalized={
                "number": item.get("number"),
                "title": item.get("title"),
                "state": item.get("state"),
                "url": item.get("html_url"),
                "author": (item.get("user") or {}).get("login"),
                "repository": repo.get("full_name"),
            },
        )

    # ── Webhooks ────────────────────────────────────────────────────────

    async def handle_webhook(self, envelope: WebhookEnvelope) -> list:
        event = envelope.header("x-github-event") or ""
        payload = envelope.payload or {}
        action = payload.get("action", "")
        repo = payload.get("repository") or {}

        if event == "issues":
            kind = github_issue_kind(action)
            return [self._issue_draft(kind, payload["issue"], repo)] if kind else []

        if event == "pull_request":
            pr = payload.get("pull_request") or {}
            kind = github_pr_kind(action, bool(pr.get("merged")))
            return [self._issue_draft(kind, pr, repo, external_id=pull_request_key(pr, repo))] if kind else []

        if event == "issue_comment" and action == "created":
            comment = payload.get("comment") or {}
            return [
                SignalDraft(
                    kind=SignalKind.ISSUE_COMMENT.value,
                    external_id=str(comment.get("id", "")),
                    occurred_at=parse_timestamp(comment.get("updated_at")) or envelope.received_at,
                    raw=payload,
                    normalized={
                        "issue_number": (payload.get("issue") or {}).get("number"),
                        "author": (comment.get("user") or {}).get("login"),
                        "url": comment.get("html_url"),
                        "repository": repo.get("full_name"),
                    },
                )
            ]

        if event == "pull_request_review" and action == "submitted":
            review = payload.get("review") or {}
            return [
                SignalDraft(
                    kind=SignalKind.PR_REVIEW.value,
                    external_id=str(review.get("id", "")),
                    occurred_at=parse_timestamp(review.get("submitted_at")) or envelope.received_at,
                    raw=payload,
                    normalized={
                        "pr_number": (payload.get("pull_request") or {}).get("number"),
                        "state": review.get("state"),
                        "reviewer": (review.get("user") or {}).get("login"),
                        "repository": repo.get("full_name"),
                    },
                )
            ]

        if event == "push":
            head = payload.get("head_commit") or {}
            return [
                SignalDraft(
                    kind=SignalKind.CODE_PUSHED.value,
                    external_id=str(payload.get("after", "")),
                    occurred_at=parse_timestamp(head.get("timestamp")) or envelope.received_at,
                    raw=payload,
                    normalized={
                        "ref": payload.get("ref"),
                        "commits": len(payload.get("commits") or []),
                        "pusher": (payload.get("pusher") or {}).get("name"),
                        "repository": repo.get("full_name"),
                    },
                )
            ]

        if event == "release" and action == "published":
            release = payload.get("release") or {}
            return [
                SignalDraft(
                    kind=SignalKind.RELEASE_PUBLISHED.value,
                    external_id=str(release.get("id", "")),
                    occurred_at=parse_timestamp(release.get("published_at")) or envelope.received_at,
                    raw=payload,
                    normalized={
                        "tag": release.get("tag_name"),
                        "name": release.get("name"),
                        "url": release.get("html_url"),
                        "repository": repo.get("full_name"),
                    },
                )
            ]

        logger.debug("Ignoring GitHub event %s/%s", event, action)
        return []
