"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from tradeguard.config import settings
from tradeguard.middleware import (
    BodySizeLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from tradeguard.routers import disputes, proofs, reserves, wallet

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _recover_auto_releases() -> None:
    """Re-enqueue held reserves after server restart.

    ZADD is idempotent: re-adding an existing reserve_id with the same score
    is a no-op, so this is safe to call unconditionally at startup.
    """
    from tradeguard.redis import redis_pool
    from tradeguard.services.auto_release import recover_auto_releases

    import redis.asyncio as aioredis

    redis = aioredis.Redis(connection_pool=redis_pool)
    try:
        await recover_auto_releases(redis)
    except Exception:
        logger.exception("Auto-release recovery failed")
    finally:
        await redis.aclose()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from tradeguard.services.auto_release import run_auto_release_consumer
    auto_release_task = asyncio.create_task(run_auto_release_consumer())
    await _recover_auto_releases()

    yield

    auto_release_task.cancel()
    try:
        await auto_release_task
    except asyncio.CancelledError:
        pass


app = FastAPI(
    title="TradeGuard",
    description="Escrow reserves for marketplace orders, services and deliveries",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (order matters, outermost first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=65_536)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Nothing is left half-applied, but a failure during commit may still have landed.

    Retrying with the same Idempotency-Key returns the original result if it did.
    """
    logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Ledger unavailable, retry with the same Idempotency-Key"},
    )


# Routers
app.include_router(wallet.router)
app.include_router(reserves.router)
app.include_router(proofs.router)
app.include_router(disputes.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
