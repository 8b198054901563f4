"""Races between two real transactions on the same reserve or wallet.

Each test holds a row lock in one session, starts the competing request in a
second session (it blocks on the lock), then lets the first request commit.
"""

import asyncio
import uuid
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradeguard.models.reserve import ReserveStatus
from tradeguard.models.wallet import TransactionType, Wallet, WalletTransaction
from tradeguard.schemas.proof import ProofSubmit
from tradeguard.schemas.reserve import ReserveCreate
from tradeguard.schemas.wallet import WalletCreate
from tradeguard.services import proof as proof_service
from tradeguard.services import reserve as reserve_service
from tradeguard.services import wallet as wallet_service
from tradeguard.utils.crypto import generate_keypair

# How long the competing request is given to reach the lock
BLOCK_SECONDS = 0.3

QR_PROOF = ProofSubmit(proof_type="qr_scan", proof_data={"code": "TG-7731"}, qr_code_id="TG-7731")
GPS_PROOF = ProofSubmit(
    proof_type="gps_location",
    proof_data={"note": "Dropped at gate"},
    gps_coordinates={"latitude": -1.2921, "longitude": 36.8219},
)


async def _wallet(db: AsyncSession, name: str, amount: str = "0.00") -> Wallet:
    _, pub = generate_keypair()
    wallet = await wallet_service.register_wallet(db, WalletCreate(public_key=pub, display_name=name))
    if Decimal(amount) > 0:
        wallet = await wallet_service.deposit(db, wallet.wallet_id, Decimal(amount))
    return wallet


def _order(buyer: Wallet, seller: Wallet) -> ReserveCreate:
    return ReserveCreate(
        buyer_wallet_id=buyer.wallet_id,
        seller_wallet_id=seller.wallet_id,
        amount=Decimal("400.00"),
        seller_amount=Decimal("400.00"),
        reference_type="order",
        reference_id=f"ORD-{uuid.uuid4().hex[:10]}",
    )


async def _load(db: AsyncSession, wallet_id: uuid.UUID) -> Wallet:
    result = await db.execute(select(Wallet).where(Wallet.wallet_id == wallet_id))
    return result.scalar_one()


async def _ledger_count(db: AsyncSession, wallet_id: uuid.UUID, tx_type: TransactionType) -> int:
    result = await db.execute(
        select(func.count()).select_from(WalletTransaction).where(
            WalletTransaction.wallet_id == wallet_id,
            WalletTransaction.type == tx_type,
        )
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_hold_retry_waiting_on_buyer_lock_replays(
    committed_sessions: async_sessionmaker[AsyncSession],
) -> None:
    """A retried hold that queued behind the original returns the original reserve."""
    async with committed_sessions() as setup:
        buyer = await _wallet(setup, "Buyer", "1000.00")
        seller = await _wallet(setup, "Seller")
    order = _order(buyer, seller)

    async with committed_sessions() as first, committed_sessions() as second:
        await wallet_service.lock_wallets(first, [buyer.wallet_id])
        retry = asyncio.create_task(
            reserve_service.hold_reserve(second, buyer.wallet_id, order, "checkout-1")
        )
        await asyncio.sleep(BLOCK_SECONDS)
        assert not retry.done()

        original = await reserve_service.hold_reserve(first, buyer.wallet_id, order, "checkout-1")
        replayed = await asyncio.wait_for(retry, timeout=10)

    assert replayed.reserve_id == original.reserve_id

    async with committed_sessions() as check:
        buyer_row = await _load(check, buyer.wallet_id)
        assert buyer_row.balance == Decimal("600.00")
        assert buyer_row.reserve_balance == Decimal("400.00")
        assert await _ledger_count(check, buyer.wallet_id, TransactionType.RESERVE_HOLD) == 1


@pytest.mark.asyncio
async def test_release_retry_waiting_on_reserve_lock_replays(
    committed_sessions: async_sessionmaker[AsyncSession],
) -> None:
    """A retried release that queued behind the original gets its result, not a 409."""
    async with committed_sessions() as setup:
        buyer = await _wallet(setup, "Buyer", "1000.00")
        seller = await _wallet(setup, "Seller")
        reserve = await reserve_service.hold_reserve(setup, buyer.wallet_id, _order(buyer, seller))

    async with committed_sessions() as first, committed_sessions() as second:
        await reserve_service.get_reserve(first, reserve.reserve_id, for_update=True)
        buyer_first = await _load(first, buyer.wallet_id)
        buyer_second = await _load(second, buyer.wallet_id)

        retry = asyncio.create_task(
            reserve_service.release_reserve(
                second, reserve.reserve_id, buyer_second, idempotency_key="release-1"
            )
        )
        await asyncio.sleep(BLOCK_SECONDS)
        assert not retry.done()

        original = await reserve_service.release_reserve(
            first, reserve.reserve_id, buyer_first, idempotency_key="release-1"
        )
        replayed = await asyncio.wait_for(retry, timeout=10)

    assert original.status == ReserveStatus.RELEASED
    assert replayed.reserve_id == original.reserve_id
    assert replayed.status == ReserveStatus.RELEASED

    async with committed_sessions() as check:
        seller_row = await _load(check, seller.wallet_id)
        assert seller_row.balance == Decimal("400.00")
        assert await _ledger_count(check, seller.wallet_id, TransactionType.PAYMENT_RECEIVED) == 1


@pytest.mark.asyncio
async def test_concurrent_refund_without_key_conflicts(
    committed_sessions: async_sessionmaker[AsyncSession],
) -> None:
    """Without an Idempotency-Key the second refund sees the settled reserve."""
    async with committed_sessions() as setup:
        buyer = await _wallet(setup, "Buyer", "1000.00")
        seller = await _wallet(setup, "Seller")
        reserve = await reserve_service.hold_reserve(setup, buyer.wallet_id, _order(buyer, seller))

    async with committed_sessions() as first, committed_sessions() as second:
        await reserve_service.get_reserve(first, reserve.reserve_id, for_update=True)
        seller_first = await _load(first, seller.wallet_id)
        seller_second = await _load(second, seller.wallet_id)

        late = asyncio.create_task(
            reserve_service.refund_reserve(second, reserve.reserve_id, seller_second)
        )
        await asyncio.sleep(BLOCK_SECONDS)
        assert not late.done()

        await reserve_service.refund_reserve(first, reserve.reserve_id, seller_first)
        with pytest.raises(HTTPException) as exc_info:
            await asyncio.wait_for(late, timeout=10)

    assert exc_info.value.status_code == 409
    assert "refunded" in exc_info.value.detail

    async with committed_sessions() as check:
        buyer_row = await _load(check, buyer.wallet_id)
        assert buyer_row.balance == Decimal("1000.00")
        assert buyer_row.reserve_balance == Decimal("0.00")


@pytest.mark.asyncio
async def test_concurrent_proofs_both_merge(
    committed_sessions: async_sessionmaker[AsyncSession],
) -> None:
    async with committed_sessions() as setup:
        buyer = await _wallet(setup, "Buyer", "1000.00")
        seller = await _wallet(setup, "Seller")
        reserve = await reserve_service.hold_reserve(setup, buyer.wallet_id, _order(buyer, seller))

    async with committed_sessions() as first, committed_sessions() as second:
        await reserve_service.get_reserve(first, reserve.reserve_id, for_update=True)
        seller_first = await _load(first, seller.wallet_id)
        seller_second = await _load(second, seller.wallet_id)

        gps = asyncio.create_task(
            proof_service.submit_proof(second, reserve.reserve_id, seller_second, GPS_PROOF)
        )
        await asyncio.sleep(BLOCK_SECONDS)
        assert not gps.done()

        await proof_service.submit_proof(first, reserve.reserve_id, seller_first, QR_PROOF)
        await asyncio.wait_for(gps, timeout=10)

    async with committed_sessions() as check:
        merged = await reserve_service.get_reserve(check, reserve.reserve_id)
        assert set(merged.proof_data) == {"qr_scan", "gps_location"}
        assert merged.proof_submitted is True
