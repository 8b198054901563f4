"""Dispute business logic: raise against a held reserve, arbiter resolution."""

import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from fastapi import HTTPException
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.config import settings
from tradeguard.models.dispute import (
    RESOLVABLE_STATUSES,
    Dispute,
    DisputeReason,
    DisputeResolution,
    DisputeStatus,
)
from tradeguard.models.reserve import Reserve, ReserveAction, ReserveStatus
from tradeguard.models.wallet import Wallet
from tradeguard.schemas.dispute import DisputeCreate, DisputeResolve
from tradeguard.services import notifications
from tradeguard.services.reserve import (
    get_reserve,
    log_audit,
    settle_partial_refund,
    settle_refund,
    settle_release,
)

logger = logging.getLogger(__name__)


async def raise_dispute(
    db: AsyncSession, reserve_id: uuid.UUID, actor: Wallet, data: DisputeCreate
) -> Dispute:
    """Open a dispute and freeze the reserve in one transaction."""
    reserve = await get_reserve(db, reserve_id, for_update=True)
    parties = reserve.party_ids()
    if actor.wallet_id not in parties:
        raise HTTPException(status_code=403, detail="Not a party to this reserve")
    if data.against_wallet_id not in parties:
        raise HTTPException(status_code=422, detail="Disputes can only be raised against a party to the reserve")
    if data.against_wallet_id == actor.wallet_id:
        raise HTTPException(status_code=422, detail="Cannot raise a dispute against yourself")
    if reserve.status != ReserveStatus.HELD:
        raise HTTPException(status_code=409, detail="Can only raise disputes for held reserves")

    dispute = Dispute(
        dispute_id=uuid.uuid4(),
        reserve_id=reserve.reserve_id,
        raised_by=actor.wallet_id,
        against_wallet_id=data.against_wallet_id,
        reason=DisputeReason(data.reason),
        description=data.description,
        evidence=data.evidence,
        status=DisputeStatus.OPEN,
        created_at=datetime.now(UTC),
    )
    db.add(dispute)
    reserve.status = ReserveStatus.DISPUTED

    log_audit(
        db, reserve.reserve_id, ReserveAction.DISPUTED, reserve.amount, actor.wallet_id,
        {"dispute_id": str(dispute.dispute_id), "reason": data.reason},
    )
    notifications.notify_reserve_event(
        db, reserve, "dispute.raised",
        {"dispute_id": str(dispute.dispute_id), "reason": data.reason},
        exclude=actor.wallet_id,
    )

    await db.commit()
    await db.refresh(dispute)
    logger.info(
        "Dispute %s raised on reserve %s by wallet %s (%s)",
        dispute.dispute_id, reserve.reserve_id, actor.wallet_id, data.reason,
    )
    return dispute


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

ResolutionHandler = Callable[
    [AsyncSession, Dispute, Reserve, Wallet, DisputeResolve], Awaitable[None]
]


async def _refund_buyer(
    db: AsyncSession, dispute: Dispute, reserve: Reserve, arbiter: Wallet, data: DisputeResolve
) -> None:
    await settle_refund(db, reserve, arbiter.wallet_id, f"Dispute resolved: {data.resolution_details}")


async def _release_seller(
    db: AsyncSession, dispute: Dispute, reserve: Reserve, arbiter: Wallet, data: DisputeResolve
) -> None:
    await settle_release(db, reserve, arbiter.wallet_id, f"Dispute resolved: {data.resolution_details}")


async def _partial_refund(
    db: AsyncSession, dispute: Dispute, reserve: Reserve, arbiter: Wallet, data: DisputeResolve
) -> None:
    await settle_partial_refund(
        db, reserve, arbiter.wallet_id, data.partial_refund_amount,
        f"Dispute resolved: {data.resolution_details}",
    )
    dispute.partial_refund_amount = data.partial_refund_amount


async def _no_action(
    db: AsyncSession, dispute: Dispute, reserve: Reserve, arbiter: Wallet, data: DisputeResolve
) -> None:
    # Back to held; the router re-schedules auto-release after commit. A window
    # that lapsed while the reserve was frozen starts over.
    reserve.status = ReserveStatus.HELD
    now = datetime.now(UTC)
    if reserve.auto_release_at <= now:
        reserve.auto_release_hours = settings.default_auto_release_hours
        reserve.auto_release_at = now + timedelta(hours=reserve.auto_release_hours)


async def _escalate(
    db: AsyncSession, dispute: Dispute, reserve: Reserve, arbiter: Wallet, data: DisputeResolve
) -> None:
    if dispute.status == DisputeStatus.ESCALATED:
        raise HTTPException(status_code=409, detail="Dispute is already escalated")


_RESOLUTION_HANDLERS: dict[DisputeResolution, ResolutionHandler] = {
    DisputeResolution.REFUND_BUYER: _refund_buyer,
    DisputeResolution.RELEASE_SELLER: _release_seller,
    DisputeResolution.PARTIAL_REFUND: _partial_refund,
    DisputeResolution.NO_ACTION: _no_action,
    DisputeResolution.ESCALATED_TO_ADMIN: _escalate,
}


async def resolve_dispute(
    db: AsyncSession, dispute_id: uuid.UUID, arbiter: Wallet, data: DisputeResolve
) -> tuple[Dispute, Reserve]:
    """Apply an arbiter's resolution.

    The reserve settlement and the dispute update commit together; if the
    settlement fails nothing is written.
    """
    if not arbiter.is_arbiter:
        raise HTTPException(status_code=403, detail="Arbiter role required")

    dispute = await _get_dispute(db, dispute_id, for_update=True)
    reserve = await get_reserve(db, dispute.reserve_id, for_update=True)

    if arbiter.wallet_id in reserve.party_ids():
        raise HTTPException(status_code=403, detail="Arbiters cannot resolve disputes they are party to")
    if dispute.status not in RESOLVABLE_STATUSES:
        raise HTTPException(
            status_code=409,
            detail=f"Dispute cannot be resolved. Current status: {dispute.status.value}",
        )
    if reserve.status != ReserveStatus.DISPUTED:
        raise HTTPException(
            status_code=409,
            detail=f"Reserve is not disputed. Current status: {reserve.status.value}",
        )

    resolution = DisputeResolution(data.resolution)
    await _RESOLUTION_HANDLERS[resolution](db, dispute, reserve, arbiter, data)

    now = datetime.now(UTC)
    dispute.resolution = resolution
    dispute.resolution_details = data.resolution_details
    if resolution == DisputeResolution.ESCALATED_TO_ADMIN:
        dispute.status = DisputeStatus.ESCALATED
        action, event = ReserveAction.ESCALATED, "dispute.escalated"
    else:
        dispute.status = DisputeStatus.RESOLVED
        dispute.resolved_by = arbiter.wallet_id
        dispute.resolved_at = now
        action, event = ReserveAction.RESOLVED, "dispute.resolved"

    details = {"dispute_id": str(dispute.dispute_id), "resolution": resolution.value}
    if dispute.partial_refund_amount is not None:
        details["partial_refund_amount"] = str(dispute.partial_refund_amount)
    log_audit(db, reserve.reserve_id, action, reserve.amount, arbiter.wallet_id, details)
    notifications.notify_reserve_event(db, reserve, event, details)

    await db.commit()
    await db.refresh(dispute)
    await db.refresh(reserve)
    logger.info(
        "Dispute %s on reserve %s: %s by arbiter %s (reserve now %s)",
        dispute.dispute_id, reserve.reserve_id, resolution.value,
        arbiter.wallet_id, reserve.status.value,
    )
    return dispute, reserve


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def _get_dispute(
    db: AsyncSession, dispute_id: uuid.UUID, for_update: bool = False
) -> Dispute:
    stmt = select(Dispute).where(Dispute.dispute_id == dispute_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise HTTPException(status_code=404, detail="Dispute not found")
    return dispute


async def get_dispute(db: AsyncSession, dispute_id: uuid.UUID, viewer: Wallet) -> Dispute:
    dispute = await _get_dispute(db, dispute_id)
    if not viewer.is_arbiter and viewer.wallet_id not in (dispute.raised_by, dispute.against_wallet_id):
        raise HTTPException(status_code=403, detail="Not a party to this dispute")
    return dispute


async def list_disputes(
    db: AsyncSession,
    viewer: Wallet,
    status: DisputeStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Dispute]:
    """Disputes the wallet raised or is accused in. Arbiters see all of them."""
    stmt = select(Dispute)
    if not viewer.is_arbiter:
        stmt = stmt.where(
            or_(
                Dispute.raised_by == viewer.wallet_id,
                Dispute.against_wallet_id == viewer.wallet_id,
            )
        )
    if status is not None:
        stmt = stmt.where(Dispute.status == status)
    stmt = stmt.order_by(Dispute.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return list(result.scalars().all())
