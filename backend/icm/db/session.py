from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from icm.core.config import settings

# -----------------------------
# Control-plane engine
# -----------------------------
# Use CLEAN URL to avoid asyncpg errors with sslmode/channel_binding query params.
CONTROL_DATABASE_URL = settings.CONTROL_DATABASE_URL_CLEAN


def create_control_engine(url: str = CONTROL_DATABASE_URL) -> AsyncEngine:
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,  # detects dead connections before using them
        pool_recycle=300,    # recycle connections periodically (seconds)
    )


def create_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine: AsyncEngine = create_control_engine()

AsyncSessionLocal = create_sessionmaker(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides one control-plane AsyncSession per request.
    Always closes the session after the request completes.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()
