"""
Tests for the proactive token refresh service.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from connectors.errors import AuthenticationRequired, UpstreamFailure
from connectors.registry import ProviderRegistry
from connectors.token_manager import TokenManager
from connectors.vault import TokenVault
from core.token_refresh import TokenRefreshService
from tests.fakes import TEST_KEY, FakeRepository, StubConnector, stored_connection
from utils.schemas import ConnectionStatus, TokenSet


class TestTokenRefreshService:
    def setup_method(self):
        self.repo = FakeRepository()
        self.vault = TokenVault.from_base64(TEST_KEY)
        self.connector = StubConnector("google-drive")
        self.tokens = TokenManager(self.repo, self.vault, ProviderRegistry([self.connector]))
        self.now = datetime.now(timezone.utc)
        self.sleep = AsyncMock()

        self.service = TokenRefreshService(
            self.repo,
            self.tokens,
            lead_seconds=600,
            jitter_seconds=60,
            clock=lambda: self.now,
            sleep=self.sleep,
        )

    def _conn(self, expires_in: timedelta, **fields):
        return stored_connection(
            self.repo,
            self.vault,
            provider="google-drive",
            expires_at=self.now + expires_in,
            **fields,
        )

    @pytest.mark.asyncio
    async def test_only_connections_inside_lead_window_refreshed(self):
        soon = self._conn(timedelta(minutes=5))
        later = self._conn(timedelta(hours=2), external_account_id="acct-2")
        self.connector.refresh_results = [
            TokenSet(access_token="fresh", expires_at=self.now + timedelta(hours=1))
        ]

        counts = await self.service.tick()

        assert counts == {"refreshed": 1, "failed": 0, "deferred": 0}
        assert self.tokens.decrypt_access(await self.repo.get_connection(soon.id)) == "fresh"
        assert self.tokens.decrypt_access(await self.repo.get_connection(later.id)) == "access-1"
        self.sleep.assert_awaited_once()
        assert 0 <= self.sleep.await_args.args[0] <= 60

    @pytest.mark.asyncio
    async def test_connections_without_refresh_token_skipped(self):
        self._conn(timedelta(minutes=5), refresh=None)
        counts = await self.service.tick()
        assert counts == {"refreshed": 0, "failed": 0, "deferred": 0}
        assert self.connector.refresh_calls == []

    @pytest.mark.asyncio
    async def test_refused_refresh_counted_as_failed(self):
        conn = self._conn(timedelta(minutes=5))
        self.connector.refresh_results = [AuthenticationRequired("invalid_grant")]

        counts = await self.service.tick()

        assert counts["failed"] == 1
        assert (await self.repo.get_connection(conn.id)).status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_transient_failure_deferred_to_next_tick(self):
        conn = self._conn(timedelta(minutes=5))
        self.connector.refresh_results = [UpstreamFailure("503")]

        counts = await self.service.tick()

        assert counts["deferred"] == 1
        assert (await self.repo.get_connection(conn.id)).status == ConnectionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_no_jitter_sleep_when_disabled(self):
        self.service.jitter_seconds = 0
        self._conn(timedelta(minutes=1))
        self.connector.refresh_results = [TokenSet(access_token="fresh")]

        await self.service.tick()

        self.sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        self.service.start()
        await self.service.stop()
        assert self.service._task is None
