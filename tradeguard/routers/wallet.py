"""Wallet endpoints: registration, balances, ledger and notifications."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.auth.middleware import AuthenticatedWallet, require_arbiter, verify_request
from tradeguard.auth.rate_limit import check_rate_limit
from tradeguard.config import settings
from tradeguard.database import get_db
from tradeguard.models.wallet import Wallet, WalletStatus
from tradeguard.schemas.wallet import (
    BalanceResponse,
    DepositRequest,
    NotificationResponse,
    WalletCreate,
    WalletResponse,
    WalletTransactionResponse,
)
from tradeguard.services import notifications as notification_service
from tradeguard.services import wallet as wallet_service

router = APIRouter(prefix="/wallets", tags=["wallets"])


def _assert_own_wallet(auth: AuthenticatedWallet, wallet_id: uuid.UUID) -> None:
    if auth.wallet_id != wallet_id:
        raise HTTPException(status_code=403, detail="Can only access own wallet")


def _balance(wallet: Wallet) -> BalanceResponse:
    return BalanceResponse(
        wallet_id=wallet.wallet_id,
        currency=wallet.currency,
        balance=wallet.balance,
        reserve_balance=wallet.reserve_balance,
        total_balance=wallet.balance + wallet.reserve_balance,
        total_earned=wallet.total_earned,
        total_spent=wallet.total_spent,
    )


@router.post("", response_model=WalletResponse, status_code=201, dependencies=[Depends(check_rate_limit)])
async def register_wallet(
    data: WalletCreate,
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    """Register a wallet for an Ed25519 public key."""
    wallet = await wallet_service.register_wallet(db, data)
    return WalletResponse.model_validate(wallet)


@router.get("/{wallet_id}", response_model=WalletResponse, dependencies=[Depends(check_rate_limit)])
async def get_wallet(
    wallet_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    wallet = await wallet_service.get_wallet(db, wallet_id)
    return WalletResponse.model_validate(wallet)


@router.get("/{wallet_id}/balance", response_model=BalanceResponse, dependencies=[Depends(check_rate_limit)])
async def get_balance(
    wallet_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    """Available balance, funds held in reserves, and lifetime totals."""
    _assert_own_wallet(auth, wallet_id)
    wallet = await wallet_service.get_wallet(db, wallet_id)
    return _balance(wallet)


@router.post("/{wallet_id}/deposit", response_model=BalanceResponse, dependencies=[Depends(check_rate_limit)])
async def deposit(
    wallet_id: uuid.UUID,
    data: DepositRequest,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    """Add funds to a wallet (development/test only).

    In production, balances are topped up by the M-Pesa collection flow.
    """
    if settings.env not in ("development", "test") and not settings.dev_deposit_enabled:
        raise HTTPException(status_code=403, detail="Direct deposits are disabled in this environment")
    _assert_own_wallet(auth, wallet_id)
    wallet = await wallet_service.deposit(db, wallet_id, data.amount)
    return _balance(wallet)


@router.get(
    "/{wallet_id}/transactions",
    response_model=list[WalletTransactionResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_transactions(
    wallet_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[WalletTransactionResponse]:
    """Ledger entries for the wallet, newest first."""
    _assert_own_wallet(auth, wallet_id)
    entries = await wallet_service.get_transactions(db, wallet_id, limit, offset)
    return [WalletTransactionResponse.model_validate(e) for e in entries]


@router.get(
    "/{wallet_id}/notifications",
    response_model=list[NotificationResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_notifications(
    wallet_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[NotificationResponse]:
    _assert_own_wallet(auth, wallet_id)
    rows = await notification_service.list_notifications(db, wallet_id, limit, offset)
    return [NotificationResponse.model_validate(n) for n in rows]


@router.post("/{wallet_id}/freeze", response_model=WalletResponse, dependencies=[Depends(check_rate_limit)])
async def freeze_wallet(
    wallet_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(require_arbiter),
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    """Block every mutating request the wallet signs. Reads keep working."""
    wallet = await wallet_service.set_wallet_status(db, wallet_id, WalletStatus.FROZEN, auth.wallet_id)
    return WalletResponse.model_validate(wallet)


@router.post("/{wallet_id}/unfreeze", response_model=WalletResponse, dependencies=[Depends(check_rate_limit)])
async def unfreeze_wallet(
    wallet_id: uuid.UUID,
    auth: AuthenticatedWallet = Depends(require_arbiter),
    db: AsyncSession = Depends(get_db),
) -> WalletResponse:
    wallet = await wallet_service.set_wallet_status(db, wallet_id, WalletStatus.ACTIVE, auth.wallet_id)
    return WalletResponse.model_validate(wallet)
