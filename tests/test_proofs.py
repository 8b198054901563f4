"""Tests for delivery proof submission and verification."""

import pytest
from httpx import AsyncClient

from tests.conftest import TestWallet, create_wallet, get_balance, hold, signed

QR_PROOF = {"proof_type": "qr_scan", "proof_data": {"code": "TG-7731"}, "qr_code_id": "TG-7731"}
GPS_PROOF = {
    "proof_type": "gps_location",
    "proof_data": {"note": "Dropped at gate"},
    "gps_coordinates": {"latitude": -1.2921, "longitude": 36.8219},
    "gps_accuracy": 8.5,
}


async def _submit(client: AsyncClient, actor: TestWallet, reserve_id: str, proof: dict):  # type: ignore[no-untyped-def]
    return await signed(client, actor, "POST", f"/reserves/{reserve_id}/proofs", proof)


async def _verify(client: AsyncClient, actor: TestWallet, proof_id: str, **fields):  # type: ignore[no-untyped-def]
    body = {"verification_method": "manual_review", **fields}
    return await signed(client, actor, "POST", f"/proofs/{proof_id}/verify", body)


@pytest.mark.asyncio
async def test_submit_proof_marks_reserve(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)

    resp = await _submit(client, seller, reserve["reserve_id"], QR_PROOF)
    assert resp.status_code == 201
    proof = resp.json()
    assert proof["proof_type"] == "qr_scan"
    assert proof["submitted_by"] == seller.wallet_id
    assert proof["qr_scan_timestamp"] is not None
    assert proof["verified"] is False

    resp = await signed(client, buyer, "GET", f"/reserves/{reserve['reserve_id']}")
    body = resp.json()
    assert body["proof_submitted"] is True
    assert body["proof_verified"] is False
    assert body["proof_data"] == {"qr_scan": {"code": "TG-7731"}}


@pytest.mark.asyncio
async def test_multiple_proof_types_merge(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)

    assert (await _submit(client, seller, reserve["reserve_id"], QR_PROOF)).status_code == 201
    resp = await _submit(client, seller, reserve["reserve_id"], GPS_PROOF)
    assert resp.status_code == 201
    assert resp.json()["gps_latitude"] == pytest.approx(-1.2921)
    assert resp.json()["gps_longitude"] == pytest.approx(36.8219)
    assert resp.json()["qr_scan_timestamp"] is None

    resp = await signed(client, buyer, "GET", f"/reserves/{reserve['reserve_id']}")
    assert set(resp.json()["proof_data"]) == {"qr_scan", "gps_location"}

    resp = await signed(client, buyer, "GET", f"/reserves/{reserve['reserve_id']}/proofs")
    assert [p["proof_type"] for p in resp.json()] == ["qr_scan", "gps_location"]


@pytest.mark.asyncio
async def test_gps_proof_requires_coordinates(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    resp = await _submit(
        client, seller, reserve["reserve_id"], {"proof_type": "gps_location", "proof_data": {}},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_outsider_cannot_submit_proof(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    outsider = await create_wallet(client, "Outsider")
    reserve = await hold(client, buyer, seller)
    resp = await _submit(client, outsider, reserve["reserve_id"], QR_PROOF)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_cannot_submit_proof_after_release(
    client: AsyncClient, parties: tuple[TestWallet, TestWallet],
) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    await signed(client, buyer, "POST", f"/reserves/{reserve['reserve_id']}/release")

    resp = await _submit(client, seller, reserve["reserve_id"], QR_PROOF)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Reserve is not in held status"


@pytest.mark.asyncio
async def test_buyer_verification_unlocks_seller_release(
    client: AsyncClient, parties: tuple[TestWallet, TestWallet],
) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller, amount="800.00", platform_fee="40.00")
    proof = (await _submit(client, seller, reserve["reserve_id"], QR_PROOF)).json()

    resp = await _verify(client, buyer, proof["proof_id"])
    assert resp.status_code == 200
    verified = resp.json()
    assert verified["verified"] is True
    assert verified["verified_by"] == buyer.wallet_id
    assert verified["verification_method"] == "manual_review"

    resp = await signed(client, seller, "POST", f"/reserves/{reserve['reserve_id']}/release")
    assert resp.status_code == 200
    assert resp.json()["released_by"] == seller.wallet_id
    assert (await get_balance(client, seller))["balance"] == "760.00"


@pytest.mark.asyncio
async def test_seller_cannot_verify_own_proof(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    proof = (await _submit(client, seller, reserve["reserve_id"], QR_PROOF)).json()
    resp = await _verify(client, seller, proof["proof_id"])
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_arbiter_can_verify(
    client: AsyncClient, parties: tuple[TestWallet, TestWallet], arbiter: TestWallet,
) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    proof = (await _submit(client, seller, reserve["reserve_id"], QR_PROOF)).json()
    resp = await _verify(client, arbiter, proof["proof_id"])
    assert resp.status_code == 200
    assert resp.json()["verified_by"] == arbiter.wallet_id


@pytest.mark.asyncio
async def test_verify_twice_rejected(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    proof = (await _submit(client, seller, reserve["reserve_id"], QR_PROOF)).json()
    assert (await _verify(client, buyer, proof["proof_id"])).status_code == 200

    resp = await _verify(client, buyer, proof["proof_id"])
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Proof has already been verified"


@pytest.mark.asyncio
async def test_anomaly_keeps_reserve_unverified(
    client: AsyncClient, parties: tuple[TestWallet, TestWallet],
) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    proof = (await _submit(client, seller, reserve["reserve_id"], GPS_PROOF)).json()

    resp = await _verify(
        client, buyer, proof["proof_id"],
        anomaly_detected=True, anomaly_reason="Location is 40km from delivery address",
    )
    assert resp.status_code == 200
    flagged = resp.json()
    assert flagged["verified"] is False
    assert flagged["anomaly_detected"] is True
    assert flagged["verified_at"] is not None

    resp = await signed(client, buyer, "GET", f"/reserves/{reserve['reserve_id']}")
    assert resp.json()["proof_verified"] is False
    resp = await signed(client, seller, "POST", f"/reserves/{reserve['reserve_id']}/release")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_anomaly_requires_reason(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    proof = (await _submit(client, seller, reserve["reserve_id"], QR_PROOF)).json()
    resp = await _verify(client, buyer, proof["proof_id"], anomaly_detected=True)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_verify_unknown_proof(client: AsyncClient, parties: tuple[TestWallet, TestWallet]) -> None:
    buyer, _ = parties
    resp = await _verify(client, buyer, "00000000-0000-0000-0000-000000000000")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_proof_actions_recorded_in_audit(
    client: AsyncClient, parties: tuple[TestWallet, TestWallet],
) -> None:
    buyer, seller = parties
    reserve = await hold(client, buyer, seller)
    proof = (await _submit(client, seller, reserve["reserve_id"], QR_PROOF)).json()
    await _verify(client, buyer, proof["proof_id"])

    resp = await signed(client, buyer, "GET", f"/reserves/{reserve['reserve_id']}/audit")
    entries = resp.json()
    assert [e["action"] for e in entries] == ["held", "proof_submitted", "proof_verified"]
    assert entries[1]["actor_wallet_id"] == seller.wallet_id
    assert entries[1]["metadata"]["proof_type"] == "qr_scan"
