from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from chatrelay.config import Settings
from chatrelay.db import Base, get_db
from chatrelay.db.models import Model, Provider, User
from chatrelay.main import create_app
from chatrelay.services.chat_service import ChatService
from chatrelay.services.rate_limiter import InMemoryRateLimiter


@pytest.fixture(scope="session")
def project_root() -> Path:
    return Path(__file__).resolve().parent.parent


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def engine(db_url: str):
    engine = create_engine(
        db_url,
        poolclass=NullPool,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings(db_url: str) -> Settings:
    return Settings(
        _env_file=None,
        database_url=db_url,
        openrouter_api_key="test-openrouter-key",
        gemini_api_key="",
        provider_max_retries=0,
        provider_timeout_seconds=5,
        sse_ping_interval_seconds=0,
        gemini_simulated_token_delay_ms=0,
        title_generation_enabled=False,
    )


@pytest.fixture
def catalog(db_session: Session) -> dict[str, Any]:
    """Seed two providers, three models, and two users."""
    openrouter = Provider(name="openrouter", display_name="OpenRouter")
    gemini = Provider(name="gemini", display_name="Google Gemini")
    db_session.add_all([openrouter, gemini])
    db_session.flush()

    sonnet = Model(
        provider_id=openrouter.id,
        model_name="Claude Sonnet 4",
        model_identifier="claude-sonnet-4",
        input_price_per_1k=Decimal("0.003"),
        output_price_per_1k=Decimal("0.015"),
        context_length=200000,
    )
    mistral = Model(
        provider_id=openrouter.id,
        model_name="Mistral Small",
        model_identifier="mistral-small-3.2-24b-instruct",
        input_price_per_1k=Decimal("0.0001"),
        output_price_per_1k=None,
        context_length=32000,
    )
    flash = Model(
        provider_id=gemini.id,
        model_name="Gemini 1.5 Flash",
        model_identifier="gemini-1.5-flash",
        input_price_per_1k=Decimal("0.000075"),
        output_price_per_1k=Decimal("0.0003"),
        context_length=1000000,
    )
    db_session.add_all([sonnet, mistral, flash])
    db_session.flush()

    alice = User(email="alice@example.com", name="Alice")
    bob = User(email="bob@example.com", name="Bob", preferred_model_id=flash.id)
    db_session.add_all([alice, bob])
    db_session.commit()

    return {
        "providers": {"openrouter": openrouter, "gemini": gemini},
        "models": {"sonnet": sonnet, "mistral": mistral, "flash": flash},
        "alice": alice,
        "bob": bob,
    }


@pytest.fixture
def make_service(session_factory, settings) -> Callable[..., ChatService]:
    def factory(providers: Any, **overrides: Any) -> ChatService:
        service_settings = settings.model_copy(update=overrides) if overrides else settings
        return ChatService(providers, session_factory, service_settings)

    return factory


@pytest.fixture
def make_client(settings, session_factory) -> Callable[..., TestClient]:
    """Build a TestClient whose app uses the temp database and given providers."""

    def factory(providers: Any, **overrides: Any) -> TestClient:
        app_settings = settings.model_copy(update=overrides) if overrides else settings
        app = create_app(app_settings)

        def override_get_db():
            session = session_factory()
            try:
                yield session
            finally:
                session.close()

        app.dependency_overrides[get_db] = override_get_db
        app.state.provider_manager = providers
        app.state.rate_limiter = InMemoryRateLimiter()
        app.state.chat_service = ChatService(providers, session_factory, app_settings)
        return TestClient(app)

    return factory

