"""
Poblysh Connectors — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from api.routes import router as api_router
from api.webhooks import router as webhook_router
from config.settings import Settings, config
from connectors.oauth_state import OAuthStateManager
from connectors.oidc import OidcVerifier
from connectors.registry import ProviderRegistry
from connectors.routes import router as connectors_router
from connectors.token_manager import TokenManager
from connectors.vault import TokenVault
from connectors.webhook_verification import WebhookRateLimiter, WebhookSecrets, WebhookVerifier
from core.executor import SyncExecutor
from core.scheduler import SyncScheduler
from core.token_refresh import TokenRefreshService
from database.models import Base
from database.repository import SqlRepository
from database.session import build_engine, build_session_factory

logging.basicConfig(
    level=logging.DEBUG if config.debug else getattr(logging, config.log_level.upper(), logging.INFO),
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "sqlalchemy.engine", "urllib3"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    repository=None,
    registry: Optional[ProviderRegistry] = None,
    oidc: Optional[OidcVerifier] = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Build the application and its long-lived services.

    The token vault is built first so a missing or malformed crypto key
    aborts startup before anything else happens.
    """
    settings = settings or config
    vault = TokenVault.from_base64(settings.crypto_key)

    engine = None
    if repository is None:
        engine = build_engine(settings)
        repository = SqlRepository(build_session_factory(engine))

    registry = registry or ProviderRegistry()
    if oidc is None:
        oidc = OidcVerifier(
            audience=settings.pubsub_oidc_audience,
            issuers=settings.pubsub_oidc_issuer_list,
            jwks_url=settings.pubsub_oidc_jwks_url,
            leeway_seconds=settings.pubsub_oidc_leeway_seconds,
        )
    tokens = TokenManager(
        repository,
        vault,
        registry,
        OAuthStateManager(repository, settings.oauth_state_secret, settings.oauth_state_ttl_seconds),
    )

    app = FastAPI(
        title="Poblysh Connectors",
        version="0.1.0",
        description="Provider connectors: OAuth, webhooks, sync jobs, and normalized signals.",
    )
    app.state.settings = settings
    app.state.repository = repository
    app.state.registry = registry
    app.state.tokens = tokens
    app.state.verifier = WebhookVerifier(
        known_providers=registry.names(),
        operator_tokens=settings.operator_token_list,
        secrets=WebhookSecrets.from_config(settings),
        oidc=oidc,
        slack_tolerance_seconds=settings.slack_webhook_tolerance_seconds,
    )
    app.state.webhook_limiter = WebhookRateLimiter(limit_per_minute=settings.webhook_rate_limit_per_minute)
    app.state.scheduler = SyncScheduler.from_config(repository, settings)
    app.state.executor = SyncExecutor.from_config(repository, registry, tokens, settings)
    app.state.token_refresh = TokenRefreshService.from_config(repository, tokens, settings)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(api_router, prefix="/api/v1")
    app.include_router(connectors_router, prefix="/api/v1/connectors")
    app.include_router(webhook_router)

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.on_event("startup")
    async def on_startup():
        if engine is not None:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Providers: %s (configured: %s)", registry.names(), registry.list_configured())
        if start_background:
            app.state.scheduler.start()
            await app.state.executor.start()
            app.state.token_refresh.start()
        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        if start_background:
            await app.state.scheduler.stop()
            await app.state.executor.stop()
            await app.state.token_refresh.stop()
        if engine is not None:
            await engine.dispose()
        logger.info("Shutdown complete.")

    return app


if __name__ == "__main__":
    uvicorn.run(
        create_app(),
        host=config.host,
        port=config.port,
        log_level="debug" if config.debug else config.log_level,
    )
