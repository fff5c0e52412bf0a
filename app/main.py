from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.endpoints.oauth import limiter
from app.api.v1.router import api_v1_router
from app.core.config import get_settings
from app.core.exceptions import register_exception_handlers
from app.core.http import create_http_client
from app.core.logging import configure_logging
from app.core.security import TokenVault
from app.db.base import Base
from app.db.session import engine
from app.services.oauth.state import StateTokenCodec
from app.services.providers.registry import build_provider_registry

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    # Create database tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Setup HTTP client
    client = create_http_client(settings)

    try:
        # Missing secrets or provider credentials abort start-up here.
        app.state.token_vault = TokenVault.from_settings(settings)
        app.state.state_codec = StateTokenCodec.from_settings(settings)
        app.state.provider_registry = build_provider_registry(settings, client)
        app.state.settings = settings
        if settings.dev_mode:
            logger.warning("app.dev_mode_enabled")

        yield
    finally:
        await client.aclose()
        await engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="socialconnect api",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Add rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    register_exception_handlers(app)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api_v1_router, prefix=settings.api_prefix)
    return app


app = create_app()
