"""
Tests for kind mapping, timestamp parsing, and dedupe keys.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from core.normalizer import (
    SignalKind,
    SignalNormalizer,
    calendar_event_kind,
    dedupe_key,
    drive_change_kind,
    github_issue_kind,
    github_polled_kind,
    github_pr_kind,
    gmail_added_kind,
    jira_polled_kind,
    jira_webhook_kind,
    parse_timestamp,
    slack_event_kind,
)
from utils.schemas import SignalDraft

UTC = timezone.utc


class TestParseTimestamp:
    def test_zulu(self):
        assert parse_timestamp("2024-03-01T12:00:05Z") == datetime(2024, 3, 1, 12, 0, 5, tzinfo=UTC)

    def test_jira_offset(self):
        assert parse_timestamp("2024-03-01T14:00:05.123+0200") == datetime(2024, 3, 1, 12, 0, 5, 123000, tzinfo=UTC)

    def test_epoch_seconds_and_millis(self):
        expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=UTC)
        assert parse_timestamp(1700000000) == expected
        assert parse_timestamp("1700000000000") == expected

    def test_naive_datetime_assumed_utc(self):
        assert parse_timestamp(datetime(2024, 1, 1)).tzinfo == UTC

    def test_empty(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None


class TestDedupeKey:
    def test_second_precision_utc(self):
        ts = datetime(2024, 3, 1, 14, 0, 5, 987654, tzinfo=timezone(timedelta(hours=2)))
        assert dedupe_key("github", "issue_updated", "42", ts) == "github:issue_updated:42:2024-03-01T12:00:05Z"

    def test_version_marker(self):
        assert dedupe_key("gmail", "email_received", "m1", "9911") == "gmail:email_received:m1:9911"


class TestSignalNormalizer:
    def setup_method(self):
        self.normalizer = SignalNormalizer()
        self.tenant = uuid.uuid4()
        self.when = datetime(2024, 5, 1, 9, 30, tzinfo=UTC)

    def test_finalize_assigns_keys_and_payload(self):
        draft = SignalDraft(
            kind="issue_created", external_id="7", occurred_at=self.when, raw={"id": 7}, normalized={"title": "t"}
        )
        [signal] = self.normalizer.finalize(self.tenant, "jira", [draft])
        assert signal.tenant_id == self.tenant
        assert signal.source == "jira"
        assert signal.dedupe_key == "jira:issue_created:7:2024-05-01T09:30:00Z"
        assert signal.payload == {"raw": {"id": 7}, "normalized": {"title": "t"}}

    def test_duplicates_within_batch_dropped(self):
        a = SignalDraft(kind="issue_updated", external_id="7", occurred_at=self.when)
        b = SignalDraft(kind="issue_updated", external_id="7", occurred_at=self.when + timedelta(milliseconds=400))
        assert len(self.normalizer.finalize(self.tenant, "github", [a, b])) == 1

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            self.normalizer.finalize(self.tenant, "github", [SignalDraft(kind="nope", external_id="1", occurred_at=self.when)])


class TestProviderMappings:
    def test_github_pr_merge_vs_close(self):
        assert github_pr_kind("closed", True) == SignalKind.PR_MERGED
        assert github_pr_kind("closed", False) == SignalKind.PR_CLOSED
        assert github_pr_kind("labeled", False) is None

    def test_github_polled(self):
        assert github_polled_kind({"created_at": "a", "updated_at": "a", "state": "open"}) == SignalKind.ISSUE_CREATED
        assert github_polled_kind({"created_at": "a", "updated_at": "b", "state": "open"}) == SignalKind.ISSUE_UPDATED
        assert github_polled_kind(
            {"created_at": "a", "updated_at": "c", "closed_at": "c", "state": "closed"}
        ) == SignalKind.ISSUE_CLOSED
        assert github_polled_kind(
            {"created_at": "a", "updated_at": "b", "pull_request": {"merged_at": "b"}}
        ) == SignalKind.PR_MERGED

    def test_github_polled_reopened_matches_webhook_action(self):
        reopened_issue = {"created_at": "a", "updated_at": "c", "closed_at": "b", "state": "open"}
        reopened_pr = {**reopened_issue, "pull_request": {"merged_at": None}}
        assert github_polled_kind(reopened_issue) == github_issue_kind("reopened")
        assert github_polled_kind(reopened_pr) == github_pr_kind("reopened", False)

    def test_jira(self):
        resolved = {"fields": {"resolutiondate": "x", "updated": "x"}}
        assert jira_webhook_kind("jira:issue_updated", resolved) == SignalKind.ISSUE_RESOLVED
        assert jira_webhook_kind("jira:issue_updated", {"fields": {}}) == SignalKind.ISSUE_UPDATED
        assert jira_webhook_kind("sprint_started", {}) is None
        assert jira_polled_kind({"fields": {"created": "a", "updated": "a"}}) == SignalKind.ISSUE_CREATED

    def test_slack(self):
        assert slack_event_kind({"type": "message"}) == SignalKind.MESSAGE_POSTED
        assert slack_event_kind({"type": "message", "subtype": "message_changed"}) == SignalKind.MESSAGE_UPDATED
        assert slack_event_kind({"type": "message", "subtype": "channel_join"}) is None
        assert slack_event_kind({"type": "reaction_added"}) == SignalKind.REACTION_ADDED

    def test_drive(self):
        assert drive_change_kind({"removed": True}) == SignalKind.FILE_DELETED
        assert drive_change_kind({"file": {"createdTime": "a", "modifiedTime": "a"}}) == SignalKind.FILE_CREATED
        assert drive_change_kind({"file": {"createdTime": "a", "modifiedTime": "b"}}) == SignalKind.FILE_UPDATED

    def test_calendar(self):
        assert calendar_event_kind({"status": "cancelled"}) == SignalKind.CALENDAR_EVENT_DELETED
        assert calendar_event_kind(
            {"created": "2024-01-01T00:00:00.000Z", "updated": "2024-01-01T00:00:00.450Z"}
        ) == SignalKind.CALENDAR_EVENT_CREATED
        assert calendar_event_kind(
            {"created": "2024-01-01T00:00:00Z", "updated": "2024-01-02T00:00:00Z"}
        ) == SignalKind.CALENDAR_EVENT_UPDATED

    def test_gmail(self):
        assert gmail_added_kind(["INBOX", "UNREAD"]) == SignalKind.EMAIL_RECEIVED
        assert gmail_added_kind(["SENT"]) == SignalKind.EMAIL_SENT
