"""FastAPI application wiring for the omnichannel inbox.

This module bootstraps the HTTP API used by the project:

- Configures logging, CORS (optional for the admin UI), Prometheus metrics
  and rate limiting.
- Builds the :class:`~inbox.engine.MessagingEngine` during the lifespan,
  backed by PostgreSQL when ``DATABASE_URL`` is set and by the in-memory
  repository otherwise.
- Integrates OpenAI drafts when an API key is configured, falling back to a
  deterministic generator otherwise.
- Runs the ``time_elapsed`` automation sweep in the background.
"""

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from openai import AsyncOpenAI
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .assistant import OpenAIDraftGenerator, StaticDraftGenerator
from .conversations.repository import (
    InMemoryMessagingRepository,
    PostgresMessagingRepository,
)
from .core.settings import EngineSettings
from .engine import MessagingEngine
from .routers import (
    automations,
    configs,
    conversations,
    quick_replies,
    templates,
    webhooks,
)
from .routers.common import limiter

load_dotenv()

logger = logging.getLogger(__name__)


def build_engine(settings: EngineSettings) -> MessagingEngine:
    """Assemble the engine from settings.

    Returns the engine with its repository and draft generator chosen from
    the environment: PostgreSQL and OpenAI when configured, in-memory and a
    static reply otherwise.
    """

    if settings.database_url:
        repository = PostgresMessagingRepository.from_url(settings.database_url)
    else:
        logger.warning("DATABASE_URL not set; using the in-memory repository")
        repository = InMemoryMessagingRepository()

    if settings.openai_api_key:
        generator = OpenAIDraftGenerator(
            AsyncOpenAI(api_key=settings.openai_api_key), model=settings.openai_model
        )
    else:
        generator = StaticDraftGenerator()
    return MessagingEngine(repository, settings=settings, generator=generator)


def create_app(engine: MessagingEngine | None = None) -> FastAPI:
    """Create the API. Tests pass a prebuilt ``engine`` to skip the env."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if engine is None:
            app.state.engine = build_engine(EngineSettings.from_env())
        else:
            app.state.engine = engine
        sweeper = asyncio.create_task(
            app.state.engine.run_sweeper(), name="automation-sweeper"
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await app.state.engine.drain()

    app = FastAPI(title="Omnichannel Inbox", version=__version__, lifespan=lifespan)
    init_logging(app)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    # Optional CORS for admin UI
    admin_ui_origins = os.getenv("ADMIN_UI_ORIGINS")
    if admin_ui_origins:
        origins = [o.strip() for o in admin_ui_origins.split(",") if o.strip()]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.include_router(webhooks.router)
    app.include_router(conversations.router)
    app.include_router(configs.router)
    app.include_router(automations.router)
    app.include_router(templates.router)
    app.include_router(quick_replies.router)

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )

    @app.get("/api/health")
    async def health():
        """Liveness and readiness check with a minimal JSON body."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        """Return version information for the application."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    return app


app = create_app()
