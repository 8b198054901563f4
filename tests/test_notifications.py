"""Tests for the notification outbox written alongside reserve events."""

import pytest
from httpx import AsyncClient

from tests.conftest import TestWallet, create_wallet, hold, signed


async def _events(client: AsyncClient, wallet: TestWallet) -> list[dict]:
    resp = await signed(client, wallet, "GET", f"/wallets/{wallet.wallet_id}/notifications")
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_hold_notifies_both_parties(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller, reference_id="ORD-900")

    for wallet in (buyer, seller):
        events = await _events(client, wallet)
        assert [e["event_type"] for e in events] == ["reserve.held"]
        payload = events[0]["payload"]
        assert payload["reserve_id"] == reserve["reserve_id"]
        assert payload["reference_id"] == "ORD-900"
        assert payload["status"] == "held"
        assert payload["title"] == "Funds secured in TradeGuard reserve"
        assert events[0]["status"] == "pending"


@pytest.mark.asyncio
async def test_driver_is_notified(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    driver = await create_wallet(client, "Driver")
    await hold(client, buyer, seller, driver=driver, driver_amount="100.00")
    assert [e["event_type"] for e in await _events(client, driver)] == ["reserve.held"]


@pytest.mark.asyncio
async def test_proof_submitter_not_notified(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    await signed(
        client, seller, "POST", f"/reserves/{reserve['reserve_id']}/proofs",
        {"proof_type": "otp", "proof_data": {"otp": "1234"}},
    )

    assert "proof.submitted" in [e["event_type"] for e in await _events(client, buyer)]
    assert "proof.submitted" not in [e["event_type"] for e in await _events(client, seller)]


@pytest.mark.asyncio
async def test_release_notifies_parties(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    await signed(client, buyer, "POST", f"/reserves/{reserve['reserve_id']}/release")

    events = await _events(client, seller)
    released = [e for e in events if e["event_type"] == "reserve.released"]
    assert len(released) == 1
    assert released[0]["payload"]["status"] == "released"


@pytest.mark.asyncio
async def test_failed_request_writes_no_notification(
    client: AsyncClient, parties: tuple[TestWallet, TestWallet],
) -> None:
    buyer, seller = parties
    resp = await signed(
        client, buyer, "POST", "/reserves",
        {
            "buyer_wallet_id": buyer.wallet_id,
            "seller_wallet_id": seller.wallet_id,
            "amount": "9000.00",
            "seller_amount": "9000.00",
            "reference_type": "order",
            "reference_id": "ORD-TOO-BIG",
        },
    )
    assert resp.status_code == 422
    assert await _events(client, seller) == []


@pytest.mark.asyncio
async def test_cannot_read_other_wallet_notifications(
    client: AsyncClient, parties: tuple[TestWallet, TestWallet],
) -> None:
    buyer, seller = parties
    resp = await signed(client, seller, "GET", f"/wallets/{buyer.wallet_id}/notifications")
    assert resp.status_code == 403
