"""Reserve business logic: hold, release, refund with row-level locking.

Every operation that moves money runs in a single transaction: the reserve
row and every affected wallet row are locked with SELECT FOR UPDATE, the
balances, ledger, audit log, notifications and idempotency key are written,
and one commit makes all of it visible. Nothing is applied in a second write.
"""

import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.config import settings
from tradeguard.models.reserve import (
    IdempotencyKey,
    IdempotentOperation,
    ReferenceType,
    Reserve,
    ReserveAction,
    ReserveAuditLog,
    ReserveStatus,
)
from tradeguard.models.wallet import TransactionType, Wallet, WalletStatus
from tradeguard.schemas.reserve import ReserveCreate
from tradeguard.services import notifications
from tradeguard.services import wallet as wallet_service
from tradeguard.utils.crypto import hash_request

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

RELEASABLE = frozenset({ReserveStatus.HELD})
REFUNDABLE = frozenset({ReserveStatus.HELD, ReserveStatus.DISPUTED})


def log_audit(
    db: AsyncSession,
    reserve_id: uuid.UUID,
    action: ReserveAction,
    amount: Decimal,
    actor_wallet_id: uuid.UUID | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    db.add(ReserveAuditLog(
        reserve_audit_id=uuid.uuid4(),
        reserve_id=reserve_id,
        action=action,
        actor_wallet_id=actor_wallet_id,
        amount=amount,
        metadata_=metadata,
    ))


async def get_reserve(
    db: AsyncSession, reserve_id: uuid.UUID, for_update: bool = False
) -> Reserve:
    stmt = select(Reserve).where(Reserve.reserve_id == reserve_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(stmt)
    reserve = result.scalar_one_or_none()
    if reserve is None:
        raise HTTPException(status_code=404, detail="Reserve not found")
    return reserve


def assert_can_view(reserve: Reserve, wallet: Wallet) -> None:
    if wallet.is_arbiter or wallet.wallet_id in reserve.party_ids():
        return
    raise HTTPException(status_code=403, detail="Not a party to this reserve")


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------


async def _find_replay(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    key: str | None,
    operation: IdempotentOperation,
    request_hash: str,
) -> Reserve | None:
    """Return the reserve a previous request with this key produced, if any."""
    if not key:
        return None
    result = await db.execute(
        select(IdempotencyKey).where(
            IdempotencyKey.wallet_id == wallet_id,
            IdempotencyKey.key == key,
        )
    )
    existing = result.scalar_one_or_none()
    if existing is None:
        return None
    if existing.operation != operation or existing.request_hash != request_hash:
        raise HTTPException(
            status_code=422,
            detail="Idempotency-Key was already used for a different request",
        )
    logger.info("Idempotent replay of %s for reserve %s", operation.value, existing.reserve_id)
    reserve = await get_reserve(db, existing.reserve_id)
    await db.refresh(reserve)
    return reserve


def _remember_key(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    key: str | None,
    operation: IdempotentOperation,
    request_hash: str,
    reserve_id: uuid.UUID,
) -> None:
    if not key:
        return
    db.add(IdempotencyKey(
        idempotency_key_id=uuid.uuid4(),
        wallet_id=wallet_id,
        key=key,
        operation=operation,
        request_hash=request_hash,
        reserve_id=reserve_id,
    ))


async def _commit_or_replay(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    key: str | None,
    operation: IdempotentOperation,
    request_hash: str,
    conflict_detail: str,
) -> Reserve | None:
    """Commit. If a concurrent request with the same key won, answer as its replay.

    Returns the replayed reserve, or None when this request's commit succeeded.
    """
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        replay = await _find_replay(db, wallet_id, key, operation, request_hash)
        if replay is not None:
            return replay
        raise HTTPException(status_code=409, detail=conflict_detail)
    return None


# ---------------------------------------------------------------------------
# Hold
# ---------------------------------------------------------------------------


async def hold_reserve(
    db: AsyncSession,
    caller_wallet_id: uuid.UUID,
    data: ReserveCreate,
    idempotency_key: str | None = None,
) -> Reserve:
    """Hold buyer funds in a new reserve.

    Debits the buyer's available balance and credits their reserve balance,
    creating the reserve (driver split included) in the same transaction.
    """
    if caller_wallet_id != data.buyer_wallet_id:
        raise HTTPException(status_code=403, detail="Only the buyer can hold funds in a reserve")

    request_hash = hash_request(data.model_dump(mode="json"))
    replay = await _find_replay(
        db, caller_wallet_id, idempotency_key, IdempotentOperation.HOLD, request_hash
    )
    if replay is not None:
        return replay

    reference_type = ReferenceType(data.reference_type)
    duplicate_detail = f"A reserve already exists for {reference_type.value} {data.reference_id}"

    # Payees must exist and be active; only the buyer's row is mutated.
    payee_ids = [data.seller_wallet_id]
    if data.driver_wallet_id is not None:
        payee_ids.append(data.driver_wallet_id)
    for payee_id in payee_ids:
        payee = await wallet_service.get_wallet(db, payee_id)
        if payee.status != WalletStatus.ACTIVE:
            raise HTTPException(status_code=409, detail=f"Wallet {payee_id} is {payee.status.value}")

    # Lock the buyer row before reading the balance
    wallets = await wallet_service.lock_wallets(db, [data.buyer_wallet_id])
    buyer = wallets[data.buyer_wallet_id]

    # A request with the same key may have committed while we waited for the lock
    replay = await _find_replay(
        db, caller_wallet_id, idempotency_key, IdempotentOperation.HOLD, request_hash
    )
    if replay is not None:
        return replay

    if buyer.status != WalletStatus.ACTIVE:
        raise HTTPException(status_code=409, detail=f"Buyer wallet is {buyer.status.value}")

    existing = await db.execute(
        select(Reserve.reserve_id).where(
            Reserve.reference_type == reference_type,
            Reserve.reference_id == data.reference_id,
        )
    )
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(status_code=409, detail=duplicate_detail)

    # Check sufficient balance AFTER acquiring the lock
    if buyer.balance < data.amount:
        raise HTTPException(
            status_code=422,
            detail=f"Insufficient balance: {buyer.balance} < {data.amount}",
        )

    hours = data.auto_release_hours or settings.default_auto_release_hours
    now = datetime.now(UTC)
    reserve = Reserve(
        reserve_id=uuid.uuid4(),
        buyer_wallet_id=data.buyer_wallet_id,
        seller_wallet_id=data.seller_wallet_id,
        driver_wallet_id=data.driver_wallet_id,
        amount=data.amount,
        seller_amount=data.seller_amount,
        driver_amount=data.driver_amount,
        platform_fee=data.platform_fee,
        reference_type=reference_type,
        reference_id=data.reference_id,
        status=ReserveStatus.HELD,
        proof_submitted=False,
        proof_verified=False,
        proof_data={},
        auto_release_hours=hours,
        auto_release_at=now + timedelta(hours=hours),
        created_at=now,
    )
    db.add(reserve)
    try:
        await db.flush()
    except IntegrityError:
        # Lost the race on (reference_type, reference_id)
        await db.rollback()
        replay = await _find_replay(
            db, caller_wallet_id, idempotency_key, IdempotentOperation.HOLD, request_hash
        )
        if replay is not None:
            return replay
        raise HTTPException(status_code=409, detail=duplicate_detail)

    wallet_service.apply_balance_change(
        db, buyer, TransactionType.RESERVE_HOLD, data.amount,
        balance_delta=-data.amount,
        reserve_delta=data.amount,
        reserve_id=reserve.reserve_id,
        description=f"TradeGuard hold for {reference_type.value} {data.reference_id}",
    )
    log_audit(
        db, reserve.reserve_id, ReserveAction.HELD, data.amount, caller_wallet_id,
        {
            "seller_amount": str(data.seller_amount),
            "driver_amount": str(data.driver_amount),
            "platform_fee": str(data.platform_fee),
            "auto_release_hours": hours,
        },
    )
    _remember_key(
        db, caller_wallet_id, idempotency_key, IdempotentOperation.HOLD,
        request_hash, reserve.reserve_id,
    )
    notifications.notify_reserve_event(
        db, reserve, "reserve.held", {"amount": str(data.amount)},
    )

    replay = await _commit_or_replay(
        db, caller_wallet_id, idempotency_key, IdempotentOperation.HOLD, request_hash,
        conflict_detail=duplicate_detail,
    )
    if replay is not None:
        return replay

    await db.refresh(reserve)
    logger.info(
        "Held reserve %s: %s from wallet %s for %s %s",
        reserve.reserve_id, reserve.amount, buyer.wallet_id,
        reference_type.value, reserve.reference_id,
    )
    return reserve


# ---------------------------------------------------------------------------
# Settlement primitives. The caller holds the reserve lock and commits
# ---------------------------------------------------------------------------


async def settle_release(
    db: AsyncSession,
    reserve: Reserve,
    actor_wallet_id: uuid.UUID | None,
    reason: str | None,
) -> Reserve:
    """Move a reserve's funds to the seller (and driver). Platform keeps its fee."""
    wallets = await wallet_service.lock_wallets(db, reserve.party_ids())
    buyer = wallets[reserve.buyer_wallet_id]
    seller = wallets[reserve.seller_wallet_id]
    label = f"{reserve.reference_type.value} {reserve.reference_id}"

    wallet_service.apply_balance_change(
        db, buyer, TransactionType.RESERVE_RELEASE, reserve.amount,
        reserve_delta=-reserve.amount,
        reserve_id=reserve.reserve_id,
        description=f"TradeGuard release for {label}",
    )
    buyer.total_spent = buyer.total_spent + reserve.amount

    _credit(db, seller, reserve.seller_amount, reserve, f"Payment for {label}")
    if reserve.driver_wallet_id is not None and reserve.driver_amount > ZERO:
        driver = wallets[reserve.driver_wallet_id]
        _credit(db, driver, reserve.driver_amount, reserve, f"Delivery payment for {label}")

    now = datetime.now(UTC)
    reserve.status = ReserveStatus.RELEASED
    reserve.released_at = now
    reserve.released_by = actor_wallet_id
    reserve.release_reason = reason

    log_audit(
        db, reserve.reserve_id, ReserveAction.RELEASED, reserve.amount, actor_wallet_id,
        {
            "seller_amount": str(reserve.seller_amount),
            "driver_amount": str(reserve.driver_amount),
            "platform_fee": str(reserve.platform_fee),
            "reason": reason,
        },
    )
    notifications.notify_reserve_event(
        db, reserve, "reserve.released",
        {"seller_amount": str(reserve.seller_amount), "driver_amount": str(reserve.driver_amount)},
    )
    return reserve


async def settle_refund(
    db: AsyncSession,
    reserve: Reserve,
    actor_wallet_id: uuid.UUID | None,
    reason: str | None,
    final_status: ReserveStatus = ReserveStatus.REFUNDED,
) -> Reserve:
    """Return the full reserve amount to the buyer's available balance."""
    wallets = await wallet_service.lock_wallets(db, [reserve.buyer_wallet_id])
    buyer = wallets[reserve.buyer_wallet_id]

    wallet_service.apply_balance_change(
        db, buyer, TransactionType.RESERVE_REFUND, reserve.amount,
        balance_delta=reserve.amount,
        reserve_delta=-reserve.amount,
        reserve_id=reserve.reserve_id,
        description=f"TradeGuard refund for {reserve.reference_type.value} {reserve.reference_id}",
    )

    reserve.status = final_status
    reserve.refunded_at = datetime.now(UTC)
    reserve.refund_reason = reason

    log_audit(
        db, reserve.reserve_id, ReserveAction.REFUNDED, reserve.amount, actor_wallet_id,
        {"reason": reason, "status": final_status.value},
    )
    event = "reserve.expired" if final_status == ReserveStatus.EXPIRED else "reserve.refunded"
    notifications.notify_reserve_event(db, reserve, event, {"amount": str(reserve.amount)})
    return reserve


async def settle_partial_refund(
    db: AsyncSession,
    reserve: Reserve,
    actor_wallet_id: uuid.UUID | None,
    refund_amount: Decimal,
    reason: str | None,
) -> Reserve:
    """Refund part of a reserve to the buyer and release the rest.

    The refund comes out of the seller's share; the driver's share and the
    platform fee are paid as in a full release.
    """
    if refund_amount <= ZERO or refund_amount > reserve.seller_amount:
        raise HTTPException(
            status_code=422,
            detail=f"partial_refund_amount must be between 0 and the seller amount ({reserve.seller_amount})",
        )

    wallets = await wallet_service.lock_wallets(db, reserve.party_ids())
    buyer = wallets[reserve.buyer_wallet_id]
    seller = wallets[reserve.seller_wallet_id]
    label = f"{reserve.reference_type.value} {reserve.reference_id}"
    released_amount = reserve.amount - refund_amount
    seller_payout = reserve.seller_amount - refund_amount

    wallet_service.apply_balance_change(
        db, buyer, TransactionType.RESERVE_REFUND, refund_amount,
        balance_delta=refund_amount,
        reserve_delta=-refund_amount,
        reserve_id=reserve.reserve_id,
        description=f"TradeGuard partial refund for {label}",
    )
    wallet_service.apply_balance_change(
        db, buyer, TransactionType.RESERVE_RELEASE, released_amount,
        reserve_delta=-released_amount,
        reserve_id=reserve.reserve_id,
        description=f"TradeGuard partial release for {label}",
    )
    buyer.total_spent = buyer.total_spent + released_amount

    if seller_payout > ZERO:
        _credit(db, seller, seller_payout, reserve, f"Partial payment for {label}")
    if reserve.driver_wallet_id is not None and reserve.driver_amount > ZERO:
        driver = wallets[reserve.driver_wallet_id]
        _credit(db, driver, reserve.driver_amount, reserve, f"Delivery payment for {label}")

    now = datetime.now(UTC)
    reserve.status = ReserveStatus.PARTIAL_RELEASE
    reserve.released_at = now
    reserve.refunded_at = now
    reserve.released_by = actor_wallet_id
    reserve.release_reason = reason
    reserve.refund_reason = reason

    log_audit(
        db, reserve.reserve_id, ReserveAction.PARTIALLY_RELEASED, released_amount, actor_wallet_id,
        {
            "refund_amount": str(refund_amount),
            "seller_amount": str(seller_payout),
            "driver_amount": str(reserve.driver_amount),
            "platform_fee": str(reserve.platform_fee),
            "reason": reason,
        },
    )
    notifications.notify_reserve_event(
        db, reserve, "reserve.partially_released",
        {"refund_amount": str(refund_amount), "seller_amount": str(seller_payout)},
    )
    return reserve


def _credit(
    db: AsyncSession, wallet: Wallet, amount: Decimal, reserve: Reserve, description: str
) -> None:
    wallet_service.apply_balance_change(
        db, wallet, TransactionType.PAYMENT_RECEIVED, amount,
        balance_delta=amount,
        reserve_id=reserve.reserve_id,
        description=description,
    )
    wallet.total_earned = wallet.total_earned + amount


def _assert_status(reserve: Reserve, allowed: Iterable[ReserveStatus], verb: str) -> None:
    if reserve.status not in allowed:
        raise HTTPException(
            status_code=409,
            detail=f"Reserve cannot be {verb}. Current status: {reserve.status.value}",
        )


# ---------------------------------------------------------------------------
# Release / refund
# ---------------------------------------------------------------------------


async def release_reserve(
    db: AsyncSession,
    reserve_id: uuid.UUID,
    actor: Wallet,
    reason: str | None = None,
    idempotency_key: str | None = None,
) -> Reserve:
    """Release a held reserve to the seller (and driver).

    The buyer and arbiters may release at any time; the seller or driver only
    once a delivery proof has been verified.
    """
    request_hash = hash_request({"reserve_id": str(reserve_id), "reason": reason})
    replay = await _find_replay(
        db, actor.wallet_id, idempotency_key, IdempotentOperation.RELEASE, request_hash
    )
    if replay is not None:
        return replay

    reserve = await get_reserve(db, reserve_id, for_update=True)
    # A request with the same key may have committed while we waited for the lock
    replay = await _find_replay(
        db, actor.wallet_id, idempotency_key, IdempotentOperation.RELEASE, request_hash
    )
    if replay is not None:
        return replay

    assert_can_view(reserve, actor)
    _assert_status(reserve, RELEASABLE, "released")

    is_buyer = actor.wallet_id == reserve.buyer_wallet_id
    if not (is_buyer or actor.is_arbiter) and not reserve.proof_verified:
        raise HTTPException(
            status_code=409,
            detail="Delivery proof must be verified before the seller or driver can release",
        )

    await settle_release(db, reserve, actor.wallet_id, reason)
    _remember_key(
        db, actor.wallet_id, idempotency_key, IdempotentOperation.RELEASE,
        request_hash, reserve.reserve_id,
    )

    replay = await _commit_or_replay(
        db, actor.wallet_id, idempotency_key, IdempotentOperation.RELEASE, request_hash,
        conflict_detail="Reserve was settled by a concurrent request",
    )
    if replay is not None:
        return replay

    await db.refresh(reserve)
    logger.info("Released reserve %s by wallet %s", reserve.reserve_id, actor.wallet_id)
    return reserve


async def refund_reserve(
    db: AsyncSession,
    reserve_id: uuid.UUID,
    actor: Wallet,
    reason: str | None = None,
    idempotency_key: str | None = None,
) -> Reserve:
    """Return a held or disputed reserve to the buyer. Seller or arbiter only."""
    request_hash = hash_request({"reserve_id": str(reserve_id), "reason": reason})
    replay = await _find_replay(
        db, actor.wallet_id, idempotency_key, IdempotentOperation.REFUND, request_hash
    )
    if replay is not None:
        return replay

    reserve = await get_reserve(db, reserve_id, for_update=True)
    # A request with the same key may have committed while we waited for the lock
    replay = await _find_replay(
        db, actor.wallet_id, idempotency_key, IdempotentOperation.REFUND, request_hash
    )
    if replay is not None:
        return replay

    assert_can_view(reserve, actor)
    if not (actor.is_arbiter or actor.wallet_id == reserve.seller_wallet_id):
        raise HTTPException(status_code=403, detail="Only the seller or an arbiter can refund a reserve")
    _assert_status(reserve, REFUNDABLE, "refunded")

    await settle_refund(db, reserve, actor.wallet_id, reason)
    _remember_key(
        db, actor.wallet_id, idempotency_key, IdempotentOperation.REFUND,
        request_hash, reserve.reserve_id,
    )

    replay = await _commit_or_replay(
        db, actor.wallet_id, idempotency_key, IdempotentOperation.REFUND, request_hash,
        conflict_detail="Reserve was settled by a concurrent request",
    )
    if replay is not None:
        return replay

    await db.refresh(reserve)
    logger.info("Refunded reserve %s by wallet %s", reserve.reserve_id, actor.wallet_id)
    return reserve


async def auto_settle_reserve(db: AsyncSession, reserve_id: uuid.UUID) -> Reserve | None:
    """Settle a reserve whose auto-release window has passed.

    Held reserves with a submitted proof are released to the seller; held
    reserves that never received any proof expire back to the buyer. Anything
    else (disputed, already settled, not yet due) is returned untouched so the
    caller can resync its queue entry.
    """
    result = await db.execute(
        select(Reserve)
        .where(Reserve.reserve_id == reserve_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    reserve = result.scalar_one_or_none()
    if reserve is None:
        logger.warning("Auto-release fired for nonexistent reserve %s", reserve_id)
        return None

    if reserve.status != ReserveStatus.HELD:
        logger.info(
            "Reserve %s is %s, skipping auto-release", reserve_id, reserve.status.value,
        )
        await db.commit()
        return reserve

    if reserve.auto_release_at > datetime.now(UTC):
        logger.info("Reserve %s not yet due for auto-release", reserve_id)
        await db.commit()
        return reserve

    if reserve.proof_submitted:
        await settle_release(
            db, reserve, None, f"Auto-released after {reserve.auto_release_hours} hours"
        )
        logger.info("Auto-released reserve %s", reserve_id)
    else:
        await settle_refund(
            db, reserve, None, "Expired without delivery proof",
            final_status=ReserveStatus.EXPIRED,
        )
        logger.warning("Reserve %s expired without delivery proof", reserve_id)

    await db.commit()
    await db.refresh(reserve)
    return reserve


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def list_reserves(
    db: AsyncSession,
    wallet_id: uuid.UUID,
    status: ReserveStatus | None = None,
    reference_type: ReferenceType | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Reserve]:
    """Reserves where the wallet is buyer, seller or driver, newest first."""
    stmt = select(Reserve).where(
        or_(
            Reserve.buyer_wallet_id == wallet_id,
            Reserve.seller_wallet_id == wallet_id,
            Reserve.driver_wallet_id == wallet_id,
        )
    )
    if status is not None:
        stmt = stmt.where(Reserve.status == status)
    if reference_type is not None:
        stmt = stmt.where(Reserve.reference_type == reference_type)
    stmt = stmt.order_by(Reserve.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_audit_log(db: AsyncSession, reserve_id: uuid.UUID) -> list[ReserveAuditLog]:
    result = await db.execute(
        select(ReserveAuditLog)
        .where(ReserveAuditLog.reserve_id == reserve_id)
        .order_by(ReserveAuditLog.timestamp)
    )
    return list(result.scalars().all())


async def list_held_reserves(db: AsyncSession) -> list[Reserve]:
    result = await db.execute(select(Reserve).where(Reserve.status == ReserveStatus.HELD))
    return list(result.scalars().all())
