from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.database import async_session
from backend.app.services.cache import CacheService


# Request-scoped session; the handler commits, anything else rolls back on close.
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


# Factory for units of work that need their own transaction
# (opportunistic auto-switch checks, per-merchant sweep steps).
def get_session_factory() -> async_sessionmaker:
    return async_session


async def get_cache() -> AsyncGenerator[CacheService, None]:
    redis = await CacheService.get_redis()
    yield CacheService(redis)
