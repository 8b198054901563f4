"""Reserve auto-release queue using a Redis sorted set.

When a reserve is held we ZADD its reserve_id with score = auto_release_at
unix timestamp. A single async consumer sleeps until the earliest entry is
due, then settles the reserve: released to the seller if a proof was
submitted, expired back to the buyer if not.

The database is the source of truth. The queue only decides *when* to look
at a reserve; the settlement re-checks status under the row lock.
"""

import asyncio
import logging
import time
import uuid

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tradeguard.config import settings
from tradeguard.models.reserve import Reserve, ReserveStatus

logger = logging.getLogger(__name__)

AUTO_RELEASE_KEY = "reserve:auto_release"


async def schedule_auto_release(
    redis: aioredis.Redis,
    reserve_id: uuid.UUID,
    release_timestamp: float,
) -> None:
    """Schedule a reserve for auto-release."""
    await redis.zadd(AUTO_RELEASE_KEY, {str(reserve_id): release_timestamp})
    logger.info("Scheduled auto-release for reserve %s at %s", reserve_id, release_timestamp)


async def cancel_auto_release(redis: aioredis.Redis, reserve_id: uuid.UUID) -> None:
    """Remove a reserve from the queue (settled or disputed)."""
    await redis.zrem(AUTO_RELEASE_KEY, str(reserve_id))


async def sync_auto_release(redis: aioredis.Redis, reserve: Reserve) -> None:
    """Make the queue entry match the reserve's committed status.

    Called after every commit that changes a reserve. A Redis outage must not
    fail a request whose money movement already committed; recovery on the
    next startup re-enqueues anything still held.
    """
    try:
        if reserve.status == ReserveStatus.HELD:
            await schedule_auto_release(redis, reserve.reserve_id, reserve.auto_release_at.timestamp())
        else:
            await cancel_auto_release(redis, reserve.reserve_id)
    except RedisError:
        logger.exception("Could not sync auto-release queue for reserve %s", reserve.reserve_id)


async def recover_auto_releases(redis: aioredis.Redis) -> int:
    """Re-enqueue every held reserve from the database. Returns the count."""
    from tradeguard.database import async_session_factory
    from tradeguard.services.reserve import list_held_reserves

    async with async_session_factory() as db:
        reserves = await list_held_reserves(db)

    if reserves:
        await redis.zadd(
            AUTO_RELEASE_KEY,
            {str(r.reserve_id): r.auto_release_at.timestamp() for r in reserves},
        )
    logger.info("Recovered %d held reserve(s) into the auto-release queue", len(reserves))
    return len(reserves)


async def run_auto_release_consumer() -> None:
    """Process reserves as their auto-release time arrives.

    Sleeps until the earliest entry is due (capped, so an earlier reserve
    scheduled meanwhile is picked up) rather than polling on a fixed interval.
    """
    from tradeguard.redis import redis_pool

    redis = aioredis.Redis(connection_pool=redis_pool)

    while True:
        try:
            # Peek at the earliest entry
            entries = await redis.zrangebyscore(
                AUTO_RELEASE_KEY, "-inf", "+inf", start=0, num=1, withscores=True
            )

            if not entries:
                await asyncio.sleep(settings.auto_release_idle_sleep_seconds)
                continue

            reserve_id_bytes, release_ts = entries[0]
            now = time.time()

            if release_ts > now:
                await asyncio.sleep(min(release_ts - now, settings.auto_release_max_sleep_seconds))
                continue

            # Due, remove and process
            removed = await redis.zrem(AUTO_RELEASE_KEY, reserve_id_bytes)
            if not removed:
                # Another consumer got it
                continue

            await settle_due_reserve(redis, uuid.UUID(reserve_id_bytes.decode()))

        except asyncio.CancelledError:
            logger.info("Auto-release consumer shutting down")
            break
        except Exception:
            logger.exception("Auto-release consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()


async def settle_due_reserve(redis: aioredis.Redis, reserve_id: uuid.UUID) -> Reserve | None:
    """Settle a single due reserve in its own session, then resync its queue entry."""
    from tradeguard.database import async_session_factory
    from tradeguard.services.reserve import auto_settle_reserve

    try:
        async with async_session_factory() as db:
            reserve = await auto_settle_reserve(db, reserve_id)
    except Exception:
        logger.exception("Failed to auto-release reserve %s, retrying later", reserve_id)
        try:
            await schedule_auto_release(
                redis, reserve_id, time.time() + settings.auto_release_retry_seconds
            )
        except RedisError:
            logger.exception("Could not requeue reserve %s for auto-release", reserve_id)
        return None

    if reserve is not None:
        await sync_auto_release(redis, reserve)
    return reserve
