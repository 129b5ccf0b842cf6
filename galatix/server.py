"""
App factory.

    uvicorn galatix.server:create_app --factory

Settings come from the environment unless a `Settings` is passed in (tests
do). Every long-lived handle lives on `app.state`.
"""
from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Optional
import logging

import httpx
import redis.asyncio as redis
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from starlette.middleware.sessions import SessionMiddleware

from .api import admin, auth, public, webhook
from .config import Settings
from .errors import install_error_handlers
from .gateway import new_adapter
from .infra.logs import setup_logging
from .infra.sql import make_async_engine
from .mailer import Mailer
from .model.db import create_schema
from .model.webhookevents import new_store

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    engine, SessionAsync, gated = make_async_engine(
        settings.database_url, settings.db_pool
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "galatix starting: gateway=%s, webhook events=%s",
            settings.payment_gateway, settings.webhook_events_backend,
        )
        async with engine.begin() as conn:
            await create_schema(conn)

        app.state.http = httpx.AsyncClient(
            timeout=5.0,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=64
            ),
        )
        app.state.redis = None
        if settings.webhook_events_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )
        app.state.events = new_store(
            settings.webhook_events_backend,
            sessions=SessionAsync, gated=gated, r=app.state.redis,
        )
        app.state.mailer = Mailer(
            http=app.state.http,
            sessions=SessionAsync,
            api_key=settings.email_api_key,
            api_url=settings.email_api_url,
            sender=settings.email_from,
            admin_email=settings.admin_email,
            base_url=settings.base_url,
        )
        if not settings.email_api_key:
            logger.warning("RESEND_API_KEY not set; emails will be skipped")

        try:
            yield
        finally:
            await app.state.events.close()
            await app.state.http.aclose()
            await engine.dispose()
            logger.info("galatix stopped")

    app = FastAPI(
        title="Galatix",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.sessions = SessionAsync
    app.state.gated = gated
    app.state.adapter = new_adapter(settings)

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        same_site="lax",
        https_only=settings.base_url.startswith("https://"),
    )
    install_error_handlers(app)

    app.include_router(public.router)
    app.include_router(webhook.router)
    app.include_router(auth.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health():
        async with gated():
            async with SessionAsync() as db:
                await db.execute(text("SELECT 1"))
        return {"status": "ok"}

    return app
