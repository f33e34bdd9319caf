"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from quizecon.config import get_settings
from quizecon.database import close_db, create_schema, get_session, get_session_factory, init_db
from quizecon.economy.catalog import seed_power_ups
from quizecon.economy.router import router as economy_router
from quizecon.economy.service import EconomyService
from quizecon.health.router import router as health_router
from quizecon.leaderboard.router import router as leaderboard_router
from quizecon.middleware import setup_middleware
from quizecon.redis_client import close_redis, init_redis
from quizecon.users.router import router as users_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    if settings.database_url.startswith("sqlite"):
        await create_schema()
    redis = await init_redis(settings.redis_url)

    # Power-up catalog (idempotent)
    try:
        async for db in get_session():
            await seed_power_ups(db)
            break
    except Exception:
        logger.warning("Power-up seeding failed (tables may not exist yet)", exc_info=True)

    app.state.economy = EconomyService(get_session_factory(), redis=redis, settings=settings)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Quiz Economy API",
        description="Points, tokens and power-ups for the quiz app",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(economy_router)
    app.include_router(users_router)
    app.include_router(leaderboard_router)

    return app
