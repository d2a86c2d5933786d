"""
Signal normalizer — canonical kind taxonomy, dedupe keys, and the
provider-event → kind mappings shared by polling and webhook code paths.

The dedupe key is ``{provider}:{kind}:{external_id}:{timestamp}`` with the
timestamp rendered as second-precision RFC3339 UTC, so the same upstream
event observed through a webhook and a later poll collapses to one row.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from utils.schemas import Signal, SignalDraft

logger = logging.getLogger(__name__)


class SignalKind(str, Enum):
    # Issues
    ISSUE_CREATED = "issue_created"
    ISSUE_UPDATED = "issue_updated"
    ISSUE_CLOSED = "issue_closed"
    ISSUE_REOPENED = "issue_reopened"
    ISSUE_RESOLVED = "issue_resolved"
    ISSUE_COMMENT = "issue_comment"
    # Pull requests / code
    PR_OPENED = "pr_opened"
    PR_UPDATED = "pr_updated"
    PR_CLOSED = "pr_closed"
    PR_MERGED = "pr_merged"
    PR_REOPENED = "pr_reopened"
    PR_REVIEW = "pr_review"
    CODE_PUSHED = "code_pushed"
    RELEASE_PUBLISHED = "release_published"
    # Messaging
    MESSAGE_POSTED = "message_posted"
    MESSAGE_UPDATED = "message_updated"
    MESSAGE_DELETED = "message_deleted"
    REACTION_ADDED = "reaction_added"
    # Files
    FILE_CREATED = "file_created"
    FILE_UPDATED = "file_updated"
    FILE_DELETED = "file_deleted"
    FILE_MOVED = "file_moved"
    # Calendar
    CALENDAR_EVENT_CREATED = "calendar_event_created"
    CALENDAR_EVENT_UPDATED = "calendar_event_updated"
    CALENDAR_EVENT_DELETED = "calendar_event_deleted"
    # Email
    EMAIL_RECEIVED = "email_received"
    EMAIL_SENT = "email_sent"
    EMAIL_UPDATED = "email_updated"
    EMAIL_DELETED = "email_deleted"


# ── Timestamps & keys ───────────────────────────────────────────────────


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse provider timestamps into aware UTC datetimes.

    Accepts RFC3339 / ISO-8601 strings (``Z`` or offset), Jira's
    ``+0000`` offsets, epoch seconds, and epoch milliseconds.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.replace(".", "", 1).isdigit()):
        number = float(value)
        if number > 1e12:
            number /= 1000.0
        return datetime.fromtimestamp(number, tz=timezone.utc)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # 2024-01-02T03:04:05.000+0000 → +00:00
    if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
        text = f"{text[:-2]}:{text[-2:]}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def dedupe_key(provider: str, kind: str, external_id: str, timestamp: Union[datetime, str]) -> str:
    stamp = format_timestamp(timestamp) if isinstance(timestamp, datetime) else timestamp
    return f"{provider}:{kind}:{external_id}:{stamp}"


class SignalNormalizer:
    """Turns connector drafts into tenant-scoped, dedupe-keyed Signals."""

    def finalize(self, tenant_id: uuid.UUID, provider: str, drafts: Iterable[SignalDraft]) -> List[Signal]:
        signals: List[Signal] = []
        seen: set[str] = set()
        for draft in drafts:
            kind = SignalKind(draft.kind).value
            key = dedupe_key(provider, kind, draft.external_id, draft.version or draft.occurred_at)
            if key in seen:
                continue
            seen.add(key)
            signals.append(
                Signal(
                    tenant_id=tenant_id,
                    source=provider,
                    kind=kind,
                    payload={"raw": draft.raw, "normalized": draft.normalized},
                    occurred_at=draft.occurred_at,
                    dedupe_key=key,
                )
            )
        logger.debug("Normalized %d signal(s) for %s/%s", len(signals), provider, tenant_id)
        return signals


# ── Provider mappings ───────────────────────────────────────────────────
# Each helper returns None when the event carries nothing worth a signal.

_GITHUB_ISSUE_ACTIONS = {
    "opened": SignalKind.ISSUE_CREATED,
    "edited": SignalKind.ISSUE_UPDATED,
    "closed": SignalKind.ISSUE_CLOSED,
    "reopened": SignalKind.ISSUE_REOPENED,
}

_GITHUB_PR_ACTIONS = {
    "opened": SignalKind.PR_OPENED,
    "reopened": SignalKind.PR_REOPENED,
    "edited": SignalKind.PR_UPDATED,
    "synchronize": SignalKind.PR_UPDATED,
    "ready_for_review": SignalKind.PR_UPDATED,
}


def github_issue_kind(action: str) -> Optional[SignalKind]:
    return _GITHUB_ISSUE_ACTIONS.get(action)


def github_pr_kind(action: str, merged: bool) -> Optional[SignalKind]:
    if action == "closed":
        return SignalKind.PR_MERGED if merged else SignalKind.PR_CLOSED
    return _GITHUB_PR_ACTIONS.get(action)


def github_polled_kind(item: Dict[str, Any]) -> SignalKind:
    """
    Infer a kind for an item returned by the issues listing (issues and PRs).

    GitHub keeps ``closed_at`` on an item after it is reopened, so an open
    item with a ``closed_at`` is reported as reopened, matching the
    ``reopened`` webhook action.
    """
    created = item.get("created_at")
    updated = item.get("updated_at")
    closed_at = item.get("closed_at")
    is_open = item.get("state") != "closed"
    pr = item.get("pull_request")
    if pr is not None:
        if pr.get("merged_at"):
            return SignalKind.PR_MERGED
        if not is_open:
            return SignalKind.PR_CLOSED
        if closed_at:
            return SignalKind.PR_REOPENED
        return SignalKind.PR_OPENED if created == updated else SignalKind.PR_UPDATED
    if not is_open:
        return SignalKind.ISSUE_CLOSED if closed_at and closed_at == updated else SignalKind.ISSUE_UPDATED
    if closed_at:
        return SignalKind.ISSUE_REOPENED
    return SignalKind.ISSUE_CREATED if created == updated else SignalKind.ISSUE_UPDATED


_JIRA_EVENTS = {
    "jira:issue_created": SignalKind.ISSUE_CREATED,
    "jira:issue_updated": SignalKind.ISSUE_UPDATED,
    "jira:issue_deleted": SignalKind.ISSUE_CLOSED,
    "comment_created": SignalKind.ISSUE_COMMENT,
}


def jira_webhook_kind(event: str, issue: Dict[str, Any]) -> Optional[SignalKind]:
    kind = _JIRA_EVENTS.get(event)
    if kind == SignalKind.ISSUE_UPDATED and jira_is_resolved_now(issue):
        return SignalKind.ISSUE_RESOLVED
    return kind


def jira_is_resolved_now(issue: Dict[str, Any]) -> bool:
    fields = issue.get("fields") or {}
    resolved = fields.get("resolutiondate")
    return bool(resolved) and resolved == fields.get("updated")


def jira_polled_kind(issue: Dict[str, Any]) -> SignalKind:
    fields = issue.get("fields") or {}
    if jira_is_resolved_now(issue):
        return SignalKind.ISSUE_RESOLVED
    if fields.get("created") and fields.get("created") == fields.get("updated"):
        return SignalKind.ISSUE_CREATED
    return SignalKind.ISSUE_UPDATED


def slack_event_kind(event: Dict[str, Any]) -> Optional[SignalKind]:
    etype = event.get("type")
    if etype == "reaction_added":
        return SignalKind.REACTION_ADDED
    if etype != "message":
        return None
    subtype = event.get("subtype")
    if subtype == "message_changed":
        return SignalKind.MESSAGE_UPDATED
    if subtype == "message_deleted":
        return SignalKind.MESSAGE_DELETED
    if subtype in (None, "thread_broadcast", "file_share"):
        return SignalKind.MESSAGE_POSTED
    return None


_ZOHO_CLIQ_EVENTS = {
    "message_posted": SignalKind.MESSAGE_POSTED,
    "message_sent": SignalKind.MESSAGE_POSTED,
    "message_updated": SignalKind.MESSAGE_UPDATED,
    "message_edited": SignalKind.MESSAGE_UPDATED,
    "message_deleted": SignalKind.MESSAGE_DELETED,
}


def zoho_cliq_kind(event_type: str) -> Optional[SignalKind]:
    return _ZOHO_CLIQ_EVENTS.get(event_type)


def drive_change_kind(change: Dict[str, Any]) -> SignalKind:
    file = change.get("file") or {}
    if change.get("removed") or file.get("trashed"):
        return SignalKind.FILE_DELETED
    if file.get("createdTime") and file.get("createdTime") == file.get("modifiedTime"):
        return SignalKind.FILE_CREATED
    return SignalKind.FILE_UPDATED


def calendar_event_kind(event: Dict[str, Any]) -> SignalKind:
    if event.get("status") == "cancelled":
        return SignalKind.CALENDAR_EVENT_DELETED
    created = parse_timestamp(event.get("created"))
    updated = parse_timestamp(event.get("updated"))
    # Google stamps ``updated`` a few ms after ``created`` on insert
    if created and updated and abs((updated - created).total_seconds()) < 2:
        return SignalKind.CALENDAR_EVENT_CREATED
    return SignalKind.CALENDAR_EVENT_UPDATED


def gmail_added_kind(label_ids: Iterable[str]) -> SignalKind:
    return SignalKind.EMAIL_SENT if "SENT" in set(label_ids or ()) else SignalKind.EMAIL_RECEIVED
