"""Reserve lifecycle endpoints: hold, proofs, release, refund, disputes."""

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.auth.middleware import AuthenticatedWallet, verify_request
from tradeguard.auth.rate_limit import check_rate_limit
from tradeguard.database import get_db
from tradeguard.models.reserve import ReferenceType, ReserveStatus
from tradeguard.redis import get_redis
from tradeguard.schemas.dispute import DisputeCreate, DisputeResponse
from tradeguard.schemas.proof import ProofResponse, ProofSubmit
from tradeguard.schemas.reserve import (
    RefundRequest,
    ReleaseRequest,
    ReserveAuditEntry,
    ReserveCreate,
    ReserveResponse,
)
from tradeguard.services import dispute as dispute_service
from tradeguard.services import proof as proof_service
from tradeguard.services import reserve as reserve_service
from tradeguard.services.auto_release import sync_auto_release

router = APIRouter(prefix="/reserves", tags=["reserves"])

IdempotencyKeyHeader = Header(None, alias="Idempotency-Key", min_length=1, max_length=128)


@router.post("", response_model=ReserveResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def hold_reserve(
    data: ReserveCreate,
    idempotency_key: str | None = IdempotencyKeyHeader,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> ReserveResponse:
    """Buyer holds funds against an order, service booking or delivery."""
    reserve = await reserve_service.hold_reserve(db, auth.wallet_id, data, idempotency_key)
    await sync_auto_release(redis, reserve)
    return ReserveResponse.model_validate(reserve)


@router.get("", response_model=list[ReserveResponse], dependencies=[Depends(check_rate_limit)])
async def list_reserves(
    status: ReserveStatus | None = Query(None),
    reference_type: ReferenceType | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[ReserveResponse]:
    """Reserves where the caller is buyer, seller or driver."""
    reserves = await reserve_service.list_reserves(
        db, auth.wallet_id, status, reference_type, limit, offset,
    )
    return [ReserveResponse.model_validate(r) for r in reserves]


@router.get("/{reserve_id}", response_model=ReserveResponse, dependencies=[Depends(check_rate_limit)])
async def get_reserve(
    reserve_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ReserveResponse:
    """Get reserve details. Parties and arbiters only."""
    reserve = await reserve_service.get_reserve(db, reserve_id)
    reserve_service.assert_can_view(reserve, auth.wallet)
    return ReserveResponse.model_validate(reserve)


@router.post("/{reserve_id}/release", response_model=ReserveResponse, dependencies=[Depends(check_rate_limit)])
async def release_reserve(
    reserve_id: uuid.UUID,
    data: ReleaseRequest | None = None,
    idempotency_key: str | None = IdempotencyKeyHeader,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> ReserveResponse:
    """Release held funds to the seller (and driver)."""
    reason = data.reason if data else None
    reserve = await reserve_service.release_reserve(
        db, reserve_id, auth.wallet, reason, idempotency_key,
    )
    await sync_auto_release(redis, reserve)
    return ReserveResponse.model_validate(reserve)


@router.post("/{reserve_id}/refund", response_model=ReserveResponse, dependencies=[Depends(check_rate_limit)])
async def refund_reserve(
    reserve_id: uuid.UUID,
    data: RefundRequest | None = None,
    idempotency_key: str | None = IdempotencyKeyHeader,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> ReserveResponse:
    """Return held or disputed funds to the buyer."""
    reason = data.reason if data else None
    reserve = await reserve_service.refund_reserve(
        db, reserve_id, auth.wallet, reason, idempotency_key,
    )
    await sync_auto_release(redis, reserve)
    return ReserveResponse.model_validate(reserve)


@router.post(
    "/{reserve_id}/proofs",
    response_model=ProofResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def submit_proof(
    reserve_id: uuid.UUID,
    data: ProofSubmit,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProofResponse:
    """Submit delivery or service-completion evidence."""
    proof = await proof_service.submit_proof(db, reserve_id, auth.wallet, data)
    return ProofResponse.model_validate(proof)


@router.get("/{reserve_id}/proofs", response_model=list[ProofResponse], dependencies=[Depends(check_rate_limit)])
async def list_proofs(
    reserve_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[ProofResponse]:
    reserve = await reserve_service.get_reserve(db, reserve_id)
    reserve_service.assert_can_view(reserve, auth.wallet)
    proofs = await proof_service.list_proofs(db, reserve_id)
    return [ProofResponse.model_validate(p) for p in proofs]


@router.get("/{reserve_id}/audit", response_model=list[ReserveAuditEntry], dependencies=[Depends(check_rate_limit)])
async def get_audit_log(
    reserve_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[ReserveAuditEntry]:
    """Immutable history of every action on the reserve."""
    reserve = await reserve_service.get_reserve(db, reserve_id)
    reserve_service.assert_can_view(reserve, auth.wallet)
    entries = await reserve_service.get_audit_log(db, reserve_id)
    return [ReserveAuditEntry.model_validate(e) for e in entries]


@router.post(
    "/{reserve_id}/disputes",
    response_model=DisputeResponse,
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def raise_dispute(
    reserve_id: uuid.UUID,
    data: DisputeCreate,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> DisputeResponse:
    """Raise a dispute. The reserve is frozen until an arbiter resolves it."""
    dispute = await dispute_service.raise_dispute(db, reserve_id, auth.wallet, data)
    reserve = await reserve_service.get_reserve(db, reserve_id)
    await sync_auto_release(redis, reserve)
    return DisputeResponse.model_validate(dispute)
