"""Token bucket rate limiter backed by Redis."""

import re
import time

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, Response

from tradeguard.config import settings
from tradeguard.redis import get_redis
from tradeguard.utils.crypto import AUTH_SCHEME

# Lua script for atomic token bucket check-and-consume
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(bucket[1])
local last_refill = tonumber(bucket[2])

if tokens == nil then
    tokens = capacity
    last_refill = now
end

local elapsed = now - last_refill
local new_tokens = math.min(capacity, tokens + elapsed * (refill_rate / 60.0))

if new_tokens >= 1 then
    new_tokens = new_tokens - 1
    redis.call('HMSET', key, 'tokens', new_tokens, 'last_refill', now)
    redis.call('EXPIRE', key, 120)
    return {1, math.floor(new_tokens), 0}
else
    local retry_after = 60
    if refill_rate > 0 then
        retry_after = math.ceil((1 - new_tokens) * 60 / refill_rate)
    end
    redis.call('HMSET', key, 'tokens', new_tokens, 'last_refill', now)
    redis.call('EXPIRE', key, 120)
    return {0, 0, retry_after}
end
"""

# Endpoints that move money: hold, release, refund, dispute resolution.
_FUNDS_PATH = re.compile(r"^/reserves(/[^/]+/(release|refund))?/?$|^/disputes/[^/]+/resolve/?$")


def _get_rate_config(method: str, path: str) -> tuple[int, int, str]:
    """Return (capacity, refill_per_min, category) based on endpoint."""
    if method == "POST" and path.rstrip("/") == "/wallets":
        return (
            settings.rate_limit_registration_capacity,
            settings.rate_limit_registration_refill_per_min,
            "registration",
        )
    if method in ("POST", "PATCH", "DELETE"):
        if _FUNDS_PATH.match(path):
            return (
                settings.rate_limit_funds_capacity,
                settings.rate_limit_funds_refill_per_min,
                "funds",
            )
        return (
            settings.rate_limit_write_capacity,
            settings.rate_limit_write_refill_per_min,
            "write",
        )
    return (
        settings.rate_limit_read_capacity,
        settings.rate_limit_read_refill_per_min,
        "read",
    )


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For for reverse proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


async def check_rate_limit(
    request: Request,
    response: Response,
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """Rate limit dependency. Buckets by wallet id when signed, else by client IP."""
    auth_header = request.headers.get("Authorization", "")
    wallet_id: str | None = None
    if auth_header.startswith(f"{AUTH_SCHEME} "):
        wallet_id = auth_header[len(AUTH_SCHEME) + 1:].split(":", 1)[0] or None

    method = request.method.upper()
    capacity, refill_rate, category = _get_rate_config(method, request.url.path)

    if wallet_id:
        bucket_key = f"ratelimit:{wallet_id}:{category}"
    else:
        bucket_key = f"ratelimit:ip:{_get_client_ip(request)}:{category}"

    result = await redis.eval(
        _TOKEN_BUCKET_SCRIPT, 1, bucket_key, capacity, refill_rate, time.time()
    )
    allowed, remaining, retry_after = int(result[0]), int(result[1]), int(result[2])

    response.headers["X-RateLimit-Limit"] = str(capacity)
    response.headers["X-RateLimit-Remaining"] = str(remaining)

    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after)},
        )
