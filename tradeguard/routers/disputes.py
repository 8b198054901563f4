"""Dispute endpoints. Raising lives under /reserves/{id}/disputes."""

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.auth.middleware import AuthenticatedWallet, require_arbiter, verify_request
from tradeguard.auth.rate_limit import check_rate_limit
from tradeguard.database import get_db
from tradeguard.models.dispute import DisputeStatus
from tradeguard.redis import get_redis
from tradeguard.schemas.dispute import (
    DisputeResolutionResponse,
    DisputeResolve,
    DisputeResponse,
)
from tradeguard.schemas.reserve import ReserveResponse
from tradeguard.services import dispute as dispute_service
from tradeguard.services.auto_release import sync_auto_release

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.get("", response_model=list[DisputeResponse], dependencies=[Depends(check_rate_limit)])
async def list_disputes(
    status: DisputeStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[DisputeResponse]:
    """Disputes the caller raised or is accused in. Arbiters see every dispute."""
    disputes = await dispute_service.list_disputes(db, auth.wallet, status, limit, offset)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get("/{dispute_id}", response_model=DisputeResponse, dependencies=[Depends(check_rate_limit)])
async def get_dispute(
    dispute_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.get_dispute(db, dispute_id, auth.wallet)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/resolve",
    response_model=DisputeResolutionResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    data: DisputeResolve,
    auth: AuthenticatedWallet = Depends(require_arbiter),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> DisputeResolutionResponse:
    """Arbiter resolves a dispute. Settlement and dispute update commit together."""
    dispute, reserve = await dispute_service.resolve_dispute(db, dispute_id, auth.wallet, data)
    await sync_auto_release(redis, reserve)
    return DisputeResolutionResponse(
        dispute=DisputeResponse.model_validate(dispute),
        reserve=ReserveResponse.model_validate(reserve),
    )
