"""Ed25519 signature verification dependency for FastAPI."""

import uuid

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.config import settings
from tradeguard.database import get_db
from tradeguard.models.wallet import Wallet, WalletStatus
from tradeguard.redis import get_redis
from tradeguard.utils.crypto import AUTH_SCHEME, is_timestamp_valid, verify_signature

_SCHEME_PREFIX = f"{AUTH_SCHEME} "
_READ_METHODS = frozenset({"GET", "HEAD"})


class AuthenticatedWallet:
    """Container for the verified caller context."""

    def __init__(self, wallet_id: uuid.UUID, wallet: Wallet) -> None:
        self.wallet_id = wallet_id
        self.wallet = wallet

    @property
    def is_arbiter(self) -> bool:
        return self.wallet.is_arbiter


async def verify_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> AuthenticatedWallet:
    """Verify the Ed25519 signature on an incoming request."""
    auth_header = request.headers.get("Authorization")
    timestamp = request.headers.get("X-Timestamp")
    nonce = request.headers.get("X-Nonce")

    if not auth_header or not timestamp:
        raise HTTPException(status_code=403, detail="Missing authentication headers")

    # Authorization: WalletSig <wallet_id>:<signature>
    if not auth_header.startswith(_SCHEME_PREFIX):
        raise HTTPException(status_code=403, detail="Invalid authorization scheme")

    try:
        credentials = auth_header[len(_SCHEME_PREFIX):]
        wallet_id_str, signature = credentials.split(":", 1)
        wallet_id = uuid.UUID(wallet_id_str)
    except (ValueError, IndexError):
        raise HTTPException(status_code=403, detail="Malformed authorization header")

    if not is_timestamp_valid(timestamp, settings.signature_max_age_seconds):
        raise HTTPException(status_code=403, detail="Request timestamp expired")

    # Replay protection
    if nonce:
        first_use = await redis.set(f"nonce:{nonce}", "1", nx=True, ex=settings.nonce_ttl_seconds)
        if not first_use:
            raise HTTPException(status_code=403, detail="Nonce already used")

    result = await db.execute(select(Wallet).where(Wallet.wallet_id == wallet_id))
    wallet = result.scalar_one_or_none()
    if wallet is None:
        raise HTTPException(status_code=403, detail="Wallet not found")

    if wallet.status == WalletStatus.CLOSED:
        raise HTTPException(status_code=403, detail="Wallet is closed")

    body = await request.body()
    if not verify_signature(
        wallet.public_key, signature, timestamp, request.method.upper(), request.url.path, body
    ):
        raise HTTPException(status_code=403, detail="Invalid signature")

    # Frozen wallets keep read access only
    if wallet.status == WalletStatus.FROZEN and request.method.upper() not in _READ_METHODS:
        raise HTTPException(status_code=403, detail="Wallet is frozen")

    return AuthenticatedWallet(wallet_id=wallet_id, wallet=wallet)


async def require_arbiter(
    auth: AuthenticatedWallet = Depends(verify_request),
) -> AuthenticatedWallet:
    """Only TradeGuard arbiters may pass."""
    if not auth.is_arbiter:
        raise HTTPException(status_code=403, detail="Arbiter role required")
    return auth
