"""
Redis cache for the admin-configurable plan settings, so the opportunistic
check does not reload them from the database on every dashboard read.
Values are stored as JSON; callers treat any cache error as a miss.
"""
import json
from typing import Optional, Any
from redis.asyncio import Redis

from backend.app.core.settings import get_settings


class CacheService:
    _redis: Optional[Redis] = None

    TTL_DEFAULT = 300
    KEY_PLAN = "subscription:plan:{plan_key}"

    @classmethod
    async def get_redis(cls) -> Redis:
        """Shared connection, created on first use."""
        if cls._redis is None:
            settings = get_settings()
            cls._redis = Redis(
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                db=settings.REDIS_DB,
                decode_responses=True,
            )
        return cls._redis

    @classmethod
    async def close(cls):
        if cls._redis:
            await cls._redis.aclose()
            cls._redis = None

    def __init__(self, redis: Redis):
        self.redis = redis

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.redis.get(key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: Any, ttl: int = TTL_DEFAULT):
        await self.redis.set(key, json.dumps(value), ex=ttl)

    async def delete(self, key: str):
        await self.redis.delete(key)

    # -- Plan settings --

    async def get_plan(self, plan_key: str = "default") -> Optional[dict]:
        return await self.get(self.KEY_PLAN.format(plan_key=plan_key))

    async def set_plan(self, plan: dict, plan_key: str = "default"):
        ttl = get_settings().PLAN_CACHE_TTL_SECONDS
        await self.set(self.KEY_PLAN.format(plan_key=plan_key), plan, ttl)

    async def invalidate_plan(self, plan_key: str = "default"):
        await self.delete(self.KEY_PLAN.format(plan_key=plan_key))
