"""
Shared fixtures: settings with a few configured providers, a throwaway
SQLite database, a controllable clock and a scriptable provider endpoint.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from config.settings import Settings
from connectors.encryption import TokenCipher
from connectors.registry import ProviderRegistry
from connectors.service import build_oauth_service
from connectors.token_store import TokenStore
from database.session import init_models, make_session_factory
from fakes import FakeClock, FakeProvider

ENCRYPTION_SECRET = "test-encryption-secret"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        encryption_key=ENCRYPTION_SECRET,
        oauth_state_secret="test-state-secret",
        oauth_redirect_base="https://app.example.com",
        github_client_id="gh-client",
        github_client_secret="gh-secret",
        atlassian_client_id="atl-client",
        atlassian_client_secret="atl-secret",
        google_client_id="g-client",
        google_client_secret="g-secret",
    )


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(ENCRYPTION_SECRET)


@pytest.fixture
def registry(settings) -> ProviderRegistry:
    return ProviderRegistry.from_settings(settings)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'integrations.db'}")
    await init_models(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory, cipher, clock) -> TokenStore:
    return TokenStore(session_factory, cipher, clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def service(settings, session_factory, provider, sleep, clock):
    return build_oauth_service(
        settings,
        session_factory,
        transport=provider.transport,
        sleep=sleep,
        clock=clock,
    )
