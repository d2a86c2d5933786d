"""
Proactive token refresh. Renews access tokens shortly before they expire so
sync jobs rarely pay for a refresh inline.
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from connectors.errors import AuthenticationRequired, ConnectorsError, sanitize_error
from connectors.token_manager import TokenManager
from utils.schemas import Connection

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenRefreshService:
    def __init__(
        self,
        repository,
        tokens: TokenManager,
        tick_seconds: float = 3600,
        lead_seconds: float = 600,
        concurrency: int = 4,
        jitter_seconds: float = 60,
        batch_size: int = 500,
        clock: Callable[[], datetime] = _utcnow,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._repo = repository
        self._tokens = tokens
        self.tick_seconds = tick_seconds
        self.lead_seconds = lead_seconds
        self.concurrency = max(1, concurrency)
        self.jitter_seconds = jitter_seconds
        self.batch_size = batch_size
        self._clock = clock
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @classmethod
    def from_config(cls, repository, tokens, cfg, **kwargs: Any) -> "TokenRefreshService":
        return cls(
            repository,
            tokens,
            tick_seconds=cfg.token_refresh_tick_seconds,
            lead_seconds=cfg.token_refresh_lead_seconds,
            concurrency=cfg.token_refresh_concurrency,
            jitter_seconds=cfg.token_refresh_jitter_seconds,
            **kwargs,
        )

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="token-refresh")
        logger.info("Token refresh service started (tick=%ss, lead=%ss)", self.tick_seconds, self.lead_seconds)

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Token refresh tick failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> Dict[str, int]:
        """Refresh every connection expiring within the lead window.  Returns outcome counts."""
        horizon = self._clock() + timedelta(seconds=self.lead_seconds)
        connections = await self._repo.list_expiring_connections(horizon, self.batch_size)
        counts = {"refreshed": 0, "failed": 0, "deferred": 0}
        if not connections:
            return counts

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _one(conn: Connection) -> str:
            async with semaphore:
                if self.jitter_seconds > 0:
                    await self._sleep(self._rng.uniform(0, self.jitter_seconds))
                try:
                    await self._tokens.refresh(conn)
                    return "refreshed"
                except AuthenticationRequired:
                    # already marked ``error`` by the token manager
                    return "failed"
                except ConnectorsError as exc:
                    logger.warning("Deferred refresh of connection %s: %s", conn.id, sanitize_error(exc))
                    return "deferred"

        for outcome in await asyncio.gather(*(_one(c) for c in connections)):
            counts[outcome] += 1
        logger.info(
            "Token refresh: %d refreshed, %d failed, %d deferred",
            counts["refreshed"], counts["failed"], counts["deferred"],
        )
        return counts
