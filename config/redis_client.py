"""
config/redis_client.py
Shared async Redis connection plus the key layouts the API relies on:
cached access-code lookups, revoked JWT ids and login attempt counters.
"""

import json
import logging
from typing import Optional

import redis.asyncio as aioredis
from tenacity import before_sleep_log, retry, stop_after_attempt, wait_exponential

from config.settings import settings

logger = logging.getLogger(__name__)

# Set by init_redis() during app startup
redis_client: Optional[aioredis.Redis] = None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, max=4),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def init_redis() -> None:
    global redis_client
    pool = aioredis.ConnectionPool.from_url(
        settings.REDIS_URL, decode_responses=True, max_connections=20
    )
    client = aioredis.Redis.from_pool(pool)
    await client.ping()
    redis_client = client
    logger.info("Redis connected")


async def close_redis() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
    redis_client = None


def get_redis() -> aioredis.Redis:
    """Dependency: the connection opened at startup."""
    if redis_client is None:
        raise RuntimeError("Redis is not connected; init_redis() has not run")
    return redis_client


def congregation_cache_key(access_code: str) -> str:
    return f"congregation:code:{access_code}"


class SchedulerCache:
    """Thin wrapper naming each Redis key family the API uses."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Access-code lookups ───────────────────────────────────
    async def cached_congregation(self, access_code: str) -> Optional[dict]:
        raw = await self.client.get(congregation_cache_key(access_code))
        return json.loads(raw) if raw else None

    async def cache_congregation(self, access_code: str, payload: dict) -> None:
        await self.client.setex(
            congregation_cache_key(access_code), settings.REDIS_CACHE_TTL, json.dumps(payload)
        )

    async def forget_congregation(self, access_code: str) -> None:
        await self.client.delete(congregation_cache_key(access_code))

    # ── Revoked tokens ────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        await self.client.setex(f"jwt_revoked:{jti}", max(ttl_seconds, 1), "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Attempt counters ──────────────────────────────────────
    async def allow_attempt(self, scope: str, identity: str, limit: int, window_seconds: int = 60) -> bool:
        """Fixed-window counter; False once `identity` has used up `limit` in the window."""
        key = f"rate_limit:{scope}:{identity.lower()}"
        count = await self.client.incr(key)
        if count == 1:
            await self.client.expire(key, window_seconds)
        return count <= limit
