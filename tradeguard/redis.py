from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from tradeguard.config import settings

# Shared by request handlers, the rate limiter and the auto-release consumer
redis_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url, max_connections=settings.redis_max_connections
)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()
