"""
Redis read-through cache in front of an identity directory.
"""

import json
from typing import Awaitable, Callable, Optional, Type, TypeVar

import redis.asyncio as redis
from pydantic import BaseModel

from shared.logging import get_logger
from .identity import IdentityDirectory
from .models import Application, Identity


M = TypeVar("M", bound=BaseModel)


class CachedIdentityDirectory(IdentityDirectory):
    """
    Caches identity and application lookups in Redis.

    The cache is an optimization only: any Redis failure is logged and the
    lookup goes to the wrapped directory. Misses are not cached, so a new
    identity becomes visible as soon as it is imported.
    """

    IDENTITY_PREFIX = "identity:"
    EMAIL_PREFIX = "identity:email:"
    NAME_PREFIX = "identity:name:"
    APPLICATION_PREFIX = "application:"

    def __init__(
        self,
        inner: IdentityDirectory,
        redis_url: str,
        ttl_seconds: int = 300,
        redis_client: Optional[redis.Redis] = None,
    ):
        self.inner = inner
        self.redis_url = redis_url
        self.logger = get_logger("access_review.directory.cache")
        self.redis: Optional[redis.Redis] = redis_client

        self.default_ttl = ttl_seconds
        self.max_ttl = 3600
        self.min_ttl = 30

    async def start(self):
        """Connect to Redis; the directory keeps working uncached if it is down."""
        await self.inner.start()
        if self.redis is not None:
            return
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )
            await self.redis.ping()
            self.logger.info("Identity cache started")
        except (redis.RedisError, OSError) as e:
            self.logger.error("Identity cache unavailable, continuing uncached", error=str(e))
            self.redis = None

    async def stop(self):
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Identity cache stopped")
        await self.inner.stop()

    @property
    def ttl(self) -> int:
        return max(self.min_ttl, min(self.max_ttl, self.default_ttl))

    async def get_identity(self, user_id: str) -> Optional[Identity]:
        return await self._read_through(
            f"{self.IDENTITY_PREFIX}{user_id}", Identity, lambda: self.inner.get_identity(user_id)
        )

    async def find_identity_by_email(self, email: str) -> Optional[Identity]:
        email = (email or "").strip().lower()
        return await self._read_through(
            f"{self.EMAIL_PREFIX}{email}", Identity, lambda: self.inner.find_identity_by_email(email)
        )

    async def find_identity_by_name(self, name: str) -> Optional[Identity]:
        name = (name or "").strip()
        return await self._read_through(
            f"{self.NAME_PREFIX}{name}", Identity, lambda: self.inner.find_identity_by_name(name)
        )

    async def get_application(self, app_id: str) -> Optional[Application]:
        return await self._read_through(
            f"{self.APPLICATION_PREFIX}{app_id}", Application, lambda: self.inner.get_application(app_id)
        )

    async def invalidate(self, prefix: str) -> int:
        """Drop every cached entry under ``prefix``."""
        if self.redis is None:
            return 0
        try:
            keys = [key async for key in self.redis.scan_iter(match=f"{prefix}*")]
            if keys:
                await self.redis.delete(*keys)
                self.logger.info("Invalidated identity cache", prefix=prefix, count=len(keys))
            return len(keys)
        except (redis.RedisError, OSError) as e:
            self.logger.error("Error invalidating identity cache", prefix=prefix, error=str(e))
            return 0

    async def health_check(self) -> bool:
        return await self.inner.health_check()

    async def _read_through(self, key: str, model: Type[M], load: Callable[[], Awaitable[Optional[M]]]) -> Optional[M]:
        cached = await self._get(key)
        if cached is not None:
            return model.model_validate(cached)

        value = await load()
        if value is not None:
            await self._set(key, value)
        return value

    async def _get(self, key: str):
        if self.redis is None:
            return None
        try:
            data = await self.redis.get(key)
            if not data:
                return None
            self.logger.debug("Identity cache hit", cache_key=key)
            return json.loads(data)
        except (redis.RedisError, OSError, ValueError) as e:
            self.logger.error("Error reading identity cache", cache_key=key, error=str(e))
            return None

    async def _set(self, key: str, value: BaseModel) -> bool:
        if self.redis is None:
            return False
        try:
            await self.redis.setex(key, self.ttl, json.dumps(value.model_dump()))
            return True
        except (redis.RedisError, OSError) as e:
            self.logger.error("Error writing identity cache", cache_key=key, error=str(e))
            return False
