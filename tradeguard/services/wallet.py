"""Wallet business logic: registration, balances and the append-only ledger."""

import logging
import uuid
from collections.abc import Iterable
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.config import settings
from tradeguard.models.wallet import (
    TransactionType,
    Wallet,
    WalletRole,
    WalletStatus,
    WalletTransaction,
)
from tradeguard.schemas.wallet import WalletCreate

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


async def register_wallet(db: AsyncSession, data: WalletCreate) -> Wallet:
    """Register a wallet for an Ed25519 public key."""
    result = await db.execute(select(Wallet).where(Wallet.public_key == data.public_key))
    if result.scalar_one_or_none() is not None:
        raise HTTPException(status_code=409, detail="Public key already registered")

    arbiter_keys = {k.lower() for k in settings.arbiter_public_keys}
    role = WalletRole.ARBITER if data.public_key in arbiter_keys else WalletRole.USER

    wallet = Wallet(
        wallet_id=uuid.uuid4(),
        public_key=data.public_key,
        display_name=data.display_name,
        phone_number=data.phone_number,
        role=role,
        status=WalletStatus.ACTIVE,
        currency=settings.currency,
        balance=ZERO,
        reserve_balance=ZERO,
        total_earned=ZERO,
        total_spent=ZERO,
    )
    db.add(wallet)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Public key already registered")
    await db.refresh(wallet)

    logger.info("Registered wallet %s (role=%s)", wallet.wallet_id, role.value)
    return wallet


async def get_wallet(db: AsyncSession, wallet_id: uuid.UUID) -> Wallet:
    result = await db.execute(select(Wallet).where(Wallet.wallet_id == wallet_id))
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise HTTPException(status_code=404, detail="Wallet not found")
    return wallet


async def lock_wallets(
    db: AsyncSession, wallet_ids: Iterable[uuid.UUID]
) -> dict[uuid.UUID, Wallet]:
    """SELECT ... FOR UPDATE every wallet in ascending id order.

    A fixed lock order means two settlements touching the same wallets can
    never deadlock each other.
    """
    ids = sorted(set(wallet_ids))
    result = await db.execute(
        select(Wallet)
        .where(Wallet.wallet_id.in_(ids))
        .order_by(Wallet.wallet_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    wallets = {w.wallet_id: w for w in result.scalars().all()}
    missing = [str(i) for i in ids if i not in wallets]
    if missing:
        raise HTTPException(status_code=404, detail=f"Wallet not found: {', '.join(missing)}")
    return wallets


def apply_balance_change(
    db: AsyncSession,
    wallet: Wallet,
    tx_type: TransactionType,
    amount: Decimal,
    *,
    balance_delta: Decimal = ZERO,
    reserve_delta: Decimal = ZERO,
    reserve_id: uuid.UUID | None = None,
    description: str | None = None,
) -> WalletTransaction:
    """Mutate a locked wallet and append the matching ledger row.

    The caller owns the row lock and the commit.
    """
    balance_before = wallet.balance
    reserve_before = wallet.reserve_balance
    balance_after = balance_before + balance_delta
    reserve_after = reserve_before + reserve_delta
    if balance_after < ZERO or reserve_after < ZERO:
        # Only reachable if a caller skipped its own balance check.
        raise HTTPException(status_code=409, detail="Wallet balance would become negative")

    wallet.balance = balance_after
    wallet.reserve_balance = reserve_after

    entry = WalletTransaction(
        transaction_id=uuid.uuid4(),
        wallet_id=wallet.wallet_id,
        reserve_id=reserve_id,
        type=tx_type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        reserve_before=reserve_before,
        reserve_after=reserve_after,
        description=description,
    )
    db.add(entry)
    return entry


async def deposit(db: AsyncSession, wallet_id: uuid.UUID, amount: Decimal) -> Wallet:
    """Credit a wallet directly. Development/test top-up; production funds arrive via M-Pesa."""
    wallets = await lock_wallets(db, [wallet_id])
    wallet = wallets[wallet_id]
    if wallet.status != WalletStatus.ACTIVE:
        raise HTTPException(status_code=409, detail=f"Wallet is {wallet.status.value}")

    apply_balance_change(
        db, wallet, TransactionType.DEPOSIT, amount,
        balance_delta=amount, description="Direct deposit",
    )
    await db.commit()
    await db.refresh(wallet)
    return wallet


async def set_wallet_status(
    db: AsyncSession, wallet_id: uuid.UUID, status: WalletStatus, arbiter_wallet_id: uuid.UUID
) -> Wallet:
    """Freeze or unfreeze a wallet. Closed wallets stay closed."""
    wallets = await lock_wallets(db, [wallet_id])
    wallet = wallets[wallet_id]
    if wallet.status == WalletStatus.CLOSED:
        raise HTTPException(status_code=409, detail="Wallet is closed")

    wallet.status = status
    await db.commit()
    await db.refresh(wallet)
    logger.warning("Wallet %s set to %s by arbiter %s", wallet_id, status.value, arbiter_wallet_id)
    return wallet


async def get_transactions(
    db: AsyncSession, wallet_id: uuid.UUID, limit: int = 50, offset: int = 0
) -> list[WalletTransaction]:
    result = await db.execute(
        select(WalletTransaction)
        .where(WalletTransaction.wallet_id == wallet_id)
        .order_by(WalletTransaction.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
