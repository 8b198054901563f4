"""Tests for rate limiting (tradeguard/auth/rate_limit.py)."""

import pytest
from httpx import AsyncClient

from tradeguard.auth.rate_limit import _get_rate_config
from tradeguard.config import settings
from tests.conftest import create_wallet, make_wallet_data, signed


@pytest.mark.asyncio
async def test_rate_limit_headers_present(client: AsyncClient) -> None:
    wallet = await create_wallet(client)
    resp = await client.get(f"/wallets/{wallet.wallet_id}")
    assert "x-ratelimit-limit" in resp.headers
    assert "x-ratelimit-remaining" in resp.headers


@pytest.mark.asyncio
async def test_registration_rate_limited_by_ip(client: AsyncClient) -> None:
    object.__setattr__(settings, "rate_limit_registration_capacity", 2)
    object.__setattr__(settings, "rate_limit_registration_refill_per_min", 0)
    for _ in range(5):
        resp = await client.post("/wallets", json=make_wallet_data())
        if resp.status_code == 429:
            break
    assert resp.status_code == 429
    assert resp.json()["detail"] == "Rate limit exceeded"
    assert "retry-after" in resp.headers


@pytest.mark.asyncio
async def test_signed_requests_bucket_per_wallet(client: AsyncClient) -> None:
    alice = await create_wallet(client)
    bob = await create_wallet(client)
    object.__setattr__(settings, "rate_limit_read_capacity", 2)
    object.__setattr__(settings, "rate_limit_read_refill_per_min", 0)

    for _ in range(3):
        resp = await signed(client, alice, "GET", f"/wallets/{alice.wallet_id}/balance")
    assert resp.status_code == 429

    # Separate bucket per wallet
    resp = await signed(client, bob, "GET", f"/wallets/{bob.wallet_id}/balance")
    assert resp.status_code == 200


def test_money_endpoints_use_funds_bucket() -> None:
    assert _get_rate_config("POST", "/reserves")[2] == "funds"
    assert _get_rate_config("POST", "/reserves/abc/release")[2] == "funds"
    assert _get_rate_config("POST", "/reserves/abc/refund")[2] == "funds"
    assert _get_rate_config("POST", "/disputes/abc/resolve")[2] == "funds"


def test_other_endpoints_categories() -> None:
    assert _get_rate_config("POST", "/wallets")[2] == "registration"
    assert _get_rate_config("POST", "/reserves/abc/proofs")[2] == "write"
    assert _get_rate_config("POST", "/reserves/abc/disputes")[2] == "write"
    assert _get_rate_config("GET", "/reserves")[2] == "read"
    assert _get_rate_config("GET", "/reserves/abc/audit")[2] == "read"
