"""
ChatRelay application.

FastAPI application with structured logging, error handling, and the
streaming chat pipeline.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatrelay import __version__
from chatrelay.api import (
    chat_router,
    conversations_router,
    health_router,
    models_router,
    usage_router,
)
from chatrelay.config import Settings, get_settings
from chatrelay.core import get_logger, setup_logging
from chatrelay.core.middleware import (
    RequestContextMiddleware,
    RequestSizeLimitMiddleware,
    setup_exception_handlers,
)
from chatrelay.db import (
    dispose_engine,
    get_session_factory,
    reset_session_factory,
    verify_database_connection,
)
from chatrelay.providers import ProviderManager
from chatrelay.services.chat_service import ChatService
from chatrelay.services.rate_limiter import build_rate_limiter

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings: Settings = app.state.settings

    # Startup
    setup_logging(
        level=settings.log_level,
        json_output=not settings.debug,
        log_file=settings.log_file or None,
    )
    logger.info(
        "Starting ChatRelay",
        data={
            "environment": settings.environment,
            "host": settings.host,
            "port": settings.port,
            "debug": settings.debug,
            "cors_origins": settings.cors_origins_list,
        },
    )

    # Does NOT run migrations
    if verify_database_connection():
        logger.info("Database connection verified")
    else:
        logger.warning("Database connection failed - run 'alembic upgrade head' to initialize")

    app.state.start_time = datetime.now(timezone.utc)

    # Services already attached to app.state (tests) are left alone
    created: list[str] = []
    if getattr(app.state, "provider_manager", None) is None:
        app.state.provider_manager = ProviderManager(settings)
        created.append("provider_manager")
    if getattr(app.state, "rate_limiter", None) is None:
        app.state.rate_limiter = build_rate_limiter(settings)
        created.append("rate_limiter")
    if getattr(app.state, "chat_service", None) is None:
        app.state.chat_service = ChatService(
            app.state.provider_manager, get_session_factory(), settings
        )

    if not app.state.provider_manager.configured_providers:
        logger.warning("No provider API keys configured; chat requests will fail")

    yield

    # Shutdown
    logger.info("Shutting down ChatRelay")
    await app.state.chat_service.shutdown()
    if "rate_limiter" in created:
        await app.state.rate_limiter.aclose()
    if "provider_manager" in created:
        await app.state.provider_manager.aclose()
    dispose_engine()
    reset_session_factory()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="ChatRelay",
        description="Streaming LLM chat relay for OpenRouter and Gemini",
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )
    app.state.settings = settings

    # Setup exception handlers (must be before middleware)
    setup_exception_handlers(app)

    # Add middleware (order matters - last added = first executed)
    app.add_middleware(RequestSizeLimitMiddleware, max_bytes=settings.max_request_bytes)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    # Register routers
    app.include_router(health_router)
    app.include_router(chat_router, prefix="/api")
    app.include_router(models_router, prefix="/api")
    app.include_router(conversations_router, prefix="/api")
    app.include_router(usage_router, prefix="/api")

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "chatrelay.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
