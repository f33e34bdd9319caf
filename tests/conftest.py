"""Shared test fixtures.

Every test gets its own SQLite file database. The economy service opens its
own sessions, so a shared in-memory connection would not isolate them.
"""

from __future__ import annotations

import random
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quizecon.config import Settings, get_settings
from quizecon.database import close_db, create_schema, get_session_factory, init_db
from quizecon.db.models import User
from quizecon.economy import ledger
from quizecon.economy.catalog import seed_power_ups
from quizecon.economy.service import EconomyService
from quizecon.users.service import get_or_create_user

TEST_JWT_SECRET = "test-secret-that-is-long-enough-for-hs256-signing"


@pytest.fixture
def settings() -> Settings:
    """Economy settings with fast retries and short lock waits."""
    return Settings(
        redis_url="",
        lock_timeout_seconds=5.0,
        persistence_timeout_seconds=5.0,
        submit_retry_attempts=3,
        submit_retry_base_delay_seconds=0.0,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh schema with the power-up catalog seeded."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'economy.db'}")
    await create_schema()
    factory = get_session_factory()
    async with factory() as db:
        await seed_power_ups(db)
    yield factory
    await close_db()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A direct database session for test setup and assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def economy(session_factory, settings) -> EconomyService:
    """Economy service with a seeded RNG and no Redis."""
    return EconomyService(session_factory, settings=settings, rng=random.Random(42))


@pytest.fixture
def make_user(session_factory) -> Callable[..., Awaitable[User]]:
    """Factory: create a user, optionally with starting tokens."""

    async def _make(external_id: str, *, tokens: int = 0, name: str | None = None) -> User:
        async with session_factory() as db:
            user, _ = await get_or_create_user(db, external_id, display_name=name or external_id)
            if tokens:
                await ledger.record_delta(db, user.id, tokens, "test_grant", ledger.TOKENS)
            await db.commit()
            return user

    return _make


@pytest_asyncio.fixture
async def client(tmp_path, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client with the full app lifespan."""
    monkeypatch.setenv("QUIZECON_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
    monkeypatch.setenv("QUIZECON_REDIS_URL", "")
    monkeypatch.setenv("QUIZECON_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("QUIZECON_LOG_FORMAT", "console")
    get_settings.cache_clear()

    from quizecon.main import create_app

    app = create_app()
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

    get_settings.cache_clear()


@pytest.fixture
def auth_headers(client) -> Callable[..., dict[str, str]]:
    """Factory: bearer header for a principal, signed with the test secret."""
    from quizecon.auth.jwt import create_access_token

    def _headers(external_id: str, name: str | None = None) -> dict[str, str]:
        token = create_access_token(external_id, name=name or external_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers
