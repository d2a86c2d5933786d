"""
Tests for the public webhook intake endpoint.
"""

import base64
import hashlib
import hmac
import json
import time
import uuid

from fastapi.testclient import TestClient

from connectors.registry import ProviderRegistry
from main import create_app
from tests.fakes import FakeRepository, StubConnector, stored_connection
from tests.test_routes import ApiHarness, make_settings
from utils.schemas import JobType


def github_headers(body: bytes, secret: str = "gh-secret", event: str = "issues"):
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return {"X-Hub-Signature-256": f"sha256={digest}", "X-GitHub-Event": event, "Content-Type": "application/json"}


def slack_headers(body: bytes, secret: str = "slack-secret", timestamp=None):
    ts = str(timestamp if timestamp is not None else int(time.time()))
    digest = hmac.new(secret.encode(), b"v0:" + ts.encode() + b":" + body, hashlib.sha256).hexdigest()
    return {"X-Slack-Request-Timestamp": ts, "X-Slack-Signature": f"v0={digest}"}


class TestWebhookIntake(ApiHarness):
    BODY = json.dumps({"action": "opened", "issue": {"id": 1}}).encode()

    def url(self, provider: str = "github", tenant=None) -> str:
        return f"/webhooks/{provider}/{tenant or self.tenant}"

    def test_signed_webhook_enqueues_job(self):
        conn = stored_connection(self.repo, self.vault, tenant_id=self.tenant)

        resp = self.client.post(self.url(), content=self.BODY, headers=github_headers(self.BODY))

        assert resp.status_code == 202
        assert resp.json() == {"status": "accepted"}
        [job] = self.repo.jobs_for(conn.id)
        assert job.job_type == JobType.WEBHOOK
        assert base64.b64decode(job.cursor_in["webhook_body"]) == self.BODY
        assert job.cursor_in["webhook_payload"]["action"] == "opened"
        assert job.cursor_in["webhook_headers"]["x-github-event"] == "issues"

    def test_bad_signature_rejected_with_fixed_body(self):
        stored_connection(self.repo, self.vault, tenant_id=self.tenant)

        resp = self.client.post(self.url(), content=self.BODY, headers=github_headers(self.BODY, secret="wrong"))

        assert resp.status_code == 401
        assert resp.json() == {"detail": "unauthorized"}
        assert self.repo.jobs == {}

    def test_missing_signature_rejected(self):
        resp = self.client.post(self.url(), content=self.BODY)
        assert resp.status_code == 401
        assert resp.json() == {"detail": "unauthorized"}

    def test_unknown_provider_not_found(self):
        resp = self.client.post(self.url("myspace"), content=self.BODY)
        assert resp.status_code == 404
        assert resp.json() == {"detail": "not found"}

    def test_invalid_tenant_not_found(self):
        resp = self.client.post("/webhooks/github/not-a-uuid", content=self.BODY, headers=github_headers(self.BODY))
        assert resp.status_code == 404

    def test_operator_token_bypasses_signature_and_is_not_stored(self):
        conn = stored_connection(self.repo, self.vault, tenant_id=self.tenant)

        resp = self.client.post(self.url(), content=self.BODY, headers={"Authorization": "Bearer op-token"})

        assert resp.status_code == 202
        [job] = self.repo.jobs_for(conn.id)
        assert "authorization" not in job.cursor_in["webhook_headers"]

    def test_no_connection_is_ignored(self):
        resp = self.client.post(self.url(), content=self.BODY, headers=github_headers(self.BODY))
        assert resp.status_code == 202
        assert resp.json() == {"status": "ignored"}
        assert self.repo.jobs == {}

    def test_connection_header_must_match_tenant(self):
        other = stored_connection(self.repo, self.vault, tenant_id=uuid.uuid4())
        headers = {**github_headers(self.BODY), "X-Connection-Id": str(other.id)}

        resp = self.client.post(self.url(), content=self.BODY, headers=headers)

        assert resp.status_code == 404
        assert self.repo.jobs == {}

    def test_connection_header_selects_connection(self):
        stored_connection(self.repo, self.vault, tenant_id=self.tenant, external_account_id="first")
        second = stored_connection(self.repo, self.vault, tenant_id=self.tenant, external_account_id="second")
        headers = {**github_headers(self.BODY), "X-Connection-Id": str(second.id)}

        resp = self.client.post(self.url(), content=self.BODY, headers=headers)

        assert resp.status_code == 202
        assert len(self.repo.jobs_for(second.id)) == 1

    def test_slack_url_verification_echoes_challenge(self):
        body = json.dumps({"type": "url_verification", "challenge": "abc123"}).encode()

        resp = self.client.post(self.url("slack"), content=body, headers=slack_headers(body))

        assert resp.status_code == 200
        assert resp.json() == {"challenge": "abc123"}

    def test_slack_replay_rejected(self):
        body = b'{"type": "event_callback"}'
        headers = slack_headers(body, timestamp=int(time.time()) - 301)

        resp = self.client.post(self.url("slack"), content=body, headers=headers)

        assert resp.status_code == 401
        assert resp.json() == {"detail": "unauthorized"}


class TestWebhookRateLimit:
    def test_limit_per_tenant_and_provider(self):
        repo = FakeRepository()
        app = create_app(
            make_settings(webhook_rate_limit_per_minute=2),
            repository=repo,
            registry=ProviderRegistry([StubConnector("github")]),
            start_background=False,
        )
        client = TestClient(app)
        tenant = uuid.uuid4()
        headers = {"Authorization": "Bearer op-token"}

        statuses = [client.post(f"/webhooks/github/{tenant}", content=b"{}", headers=headers).status_code for _ in range(3)]

        assert statuses == [202, 202, 429]
        limited = client.post(f"/webhooks/github/{tenant}", content=b"{}", headers=headers)
        assert 1 <= int(limited.headers["Retry-After"]) <= 60
        assert client.post(f"/webhooks/github/{uuid.uuid4()}", content=b"{}", headers=headers).status_code == 202
