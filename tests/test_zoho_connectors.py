"""
Tests for the Zoho Cliq and Zoho Mail connectors against a mocked API.
"""

import uuid
from datetime import datetime, timezone

import httpx
import pytest

from connectors.errors import AuthenticationRequired, PermissionDenied
from connectors.zoho_cliq import ZohoCliqConnector
from connectors.zoho_mail import ZohoMailConnector
from utils.schemas import AuthType, Connection, WebhookEnvelope

SINCE_MS = 1709290800000  # 2024-03-01T11:00:00Z


def _connection(provider: str, **metadata) -> Connection:
    return Connection(
        tenant_id=uuid.uuid4(),
        provider_name=provider,
        external_account_id="acc-1",
        access_token_ciphertext=b"\x01",
        metadata=metadata,
    )


def _mail(message_id: str, received_ms: int) -> dict:
    return {
        "messageId": message_id,
        "folderId": "inbox-1",
        "subject": f"Subject {message_id}",
        "fromAddress": "sender@example.com",
        "receivedTime": str(received_ms),
    }


class TestZohoCliq:
    def setup_method(self):
        self.connector = ZohoCliqConnector()

    def _envelope(self, payload) -> WebhookEnvelope:
        return WebhookEnvelope(tenant_id=uuid.uuid4(), provider="zoho-cliq", payload=payload)

    def test_webhook_first_auth_type(self):
        assert self.connector.auth_type == AuthType.CUSTOM_WEBHOOK

    @pytest.mark.asyncio
    async def test_sync_keeps_cursor_and_emits_nothing(self):
        result = await self.connector.sync(_connection("zoho-cliq"), "tok", {"kept": 1})
        assert result.signals == []
        assert result.next_cursor == {"kept": 1}
        assert result.has_more is False

    @pytest.mark.asyncio
    async def test_message_event_kinds(self):
        for event_type, kind in [
            ("message_sent", "message_posted"),
            ("message_edited", "message_updated"),
            ("message_deleted", "message_deleted"),
        ]:
            payload = {
                "event_type": event_type,
                "chat_id": "chat-1",
                "message": {"id": "m-1", "text": "hi", "time": SINCE_MS, "sender": {"id": "u-1", "name": "Ada"}},
            }
            [draft] = await self.connector.handle_webhook(self._envelope(payload))
            assert draft.kind == kind
            assert draft.external_id == "m-1"
            assert draft.occurred_at == datetime(2024, 3, 1, 11, tzinfo=timezone.utc)
            assert draft.normalized == {"chat_id": "chat-1", "text": "hi", "sender": "Ada"}

    @pytest.mark.asyncio
    async def test_unknown_event_or_missing_message_id_ignored(self):
        assert await self.connector.handle_webhook(self._envelope({"event_type": "bot_mention", "message": {"id": "m"}})) == []
        assert await self.connector.handle_webhook(self._envelope({"event_type": "message_sent", "message": {}})) == []

    @pytest.mark.asyncio
    async def test_exchange_uses_api_domain_as_account(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.host == "accounts.zoho.com"
            assert request.url.path == "/oauth/v2/token"
            return httpx.Response(
                200,
                json={"access_token": "a1", "refresh_token": "r1", "expires_in": 3600, "api_domain": "https://www.zohoapis.com"},
            )

        tokens = await ZohoCliqConnector(transport=httpx.MockTransport(handler)).exchange_code("code")
        assert tokens.account_id == "https://www.zohoapis.com"
        assert tokens.refresh_token == "r1"

    @pytest.mark.asyncio
    async def test_rejected_refresh_needs_reauthorization(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"error": "invalid_code"}))
        with pytest.raises(AuthenticationRequired):
            await ZohoCliqConnector(transport=transport).refresh_token("r1")


class TestZohoMail:
    @pytest.mark.asyncio
    async def test_first_sync_records_baseline_only(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("baseline must not list messages")

        result = await ZohoMailConnector(transport=httpx.MockTransport(handler)).sync(
            _connection("zoho-mail", account_id="acc-1"), "tok"
        )

        assert result.signals == []
        assert result.has_more is False
        assert result.next_cursor["since_ms"] > SINCE_MS

    @pytest.mark.asyncio
    async def test_incremental_stops_past_overlap_window(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            assert request.url.host == "mail.zoho.com"
            assert request.url.path == "/api/accounts/acc-1/messages/view"
            assert request.headers["authorization"] == "Zoho-oauthtoken tok"
            assert request.url.params["start"] == "1"
            assert request.url.params["sortorder"] == "false"
            return httpx.Response(
                200,
                json={
                    "data": [
                        _mail("new", SINCE_MS + 60_000),
                        _mail("overlap", SINCE_MS - 60_000),
                        _mail("old", SINCE_MS - 600_000),
                    ]
                },
            )

        result = await ZohoMailConnector(transport=httpx.MockTransport(handler)).sync(
            _connection("zoho-mail", account_id="acc-1"), "tok", {"since_ms": SINCE_MS}
        )

        assert [d.external_id for d in result.signals] == ["new", "overlap"]
        assert {d.kind for d in result.signals} == {"email_received"}
        assert result.signals[0].normalized["subject"] == "Subject new"
        assert result.next_cursor == {"since_ms": SINCE_MS + 60_000}
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_nothing_new_keeps_since(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"data": []}))
        result = await ZohoMailConnector(transport=transport).sync(
            _connection("zoho-mail", account_id="acc-1"), "tok", {"since_ms": SINCE_MS}
        )
        assert result.signals == []
        assert result.next_cursor == {"since_ms": SINCE_MS}

    @pytest.mark.asyncio
    async def test_full_pages_stop_at_page_cap(self):
        starts = []

        def handler(request: httpx.Request) -> httpx.Response:
            start = int(request.url.params["start"])
            starts.append(start)
            page = [_mail(f"m{start + i}", SINCE_MS + 1000) for i in range(200)]
            return httpx.Response(200, json={"data": page})

        result = await ZohoMailConnector(transport=httpx.MockTransport(handler)).sync(
            _connection("zoho-mail", account_id="acc-1"), "tok", {"since_ms": SINCE_MS}
        )

        assert starts == [1, 201, 401, 601, 801]
        assert len(result.signals) == 1000
        assert result.has_more is False

    @pytest.mark.asyncio
    async def test_exchange_reads_mail_account(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/oauth/v2/token":
                return httpx.Response(200, json={"access_token": "a1", "refresh_token": "r1"})
            assert request.url.path == "/api/accounts"
            return httpx.Response(200, json={"data": [{"accountId": 77, "primaryEmailAddress": "me@example.com"}]})

        tokens = await ZohoMailConnector(transport=httpx.MockTransport(handler)).exchange_code("code")
        assert tokens.account_id == "77"
        assert tokens.account_label == "me@example.com"
        assert tokens.provider_meta == {"account_id": "77"}

    @pytest.mark.asyncio
    async def test_exchange_without_mail_accounts_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/oauth/v2/token":
                return httpx.Response(200, json={"access_token": "a1"})
            return httpx.Response(200, json={"data": []})

        with pytest.raises(PermissionDenied):
            await ZohoMailConnector(transport=httpx.MockTransport(handler)).exchange_code("code")
