"""Health check and app metadata."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_health_not_rate_limited_or_signed(client: AsyncClient) -> None:
    for _ in range(5):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert "x-ratelimit-remaining" not in resp.headers


@pytest.mark.asyncio
async def test_openapi_lists_reserve_routes(client: AsyncClient) -> None:
    resp = await client.get("/openapi.json")
    assert resp.status_code == 200
    schema = resp.json()
    assert schema["info"]["title"] == "TradeGuard"
    for path in ("/reserves", "/reserves/{reserve_id}/release", "/proofs/{proof_id}/verify",
                 "/disputes/{dispute_id}/resolve", "/wallets/{wallet_id}/balance"):
        assert path in schema["paths"]
