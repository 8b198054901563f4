"""Delivery proof submission and verification."""

import logging
import uuid
from datetime import UTC, datetime

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.models.proof import Proof, ProofType
from tradeguard.models.reserve import ReserveAction, ReserveStatus
from tradeguard.models.wallet import Wallet
from tradeguard.schemas.proof import ProofSubmit, ProofVerify
from tradeguard.services import notifications
from tradeguard.services.reserve import assert_can_view, get_reserve, log_audit

logger = logging.getLogger(__name__)

VERIFIABLE = frozenset({ReserveStatus.HELD, ReserveStatus.DISPUTED})


async def submit_proof(
    db: AsyncSession, reserve_id: uuid.UUID, actor: Wallet, data: ProofSubmit
) -> Proof:
    """Attach a delivery/service proof to a held reserve.

    The reserve row is locked while its proof_data map is merged, so two
    proofs submitted at the same time both end up in the map.
    """
    reserve = await get_reserve(db, reserve_id, for_update=True)
    if actor.wallet_id not in reserve.party_ids():
        raise HTTPException(status_code=403, detail="Not a party to this reserve")
    if reserve.status != ReserveStatus.HELD:
        raise HTTPException(status_code=409, detail="Reserve is not in held status")

    proof_type = ProofType(data.proof_type)
    now = datetime.now(UTC)
    proof = Proof(
        proof_id=uuid.uuid4(),
        reserve_id=reserve.reserve_id,
        proof_type=proof_type,
        proof_data=data.proof_data,
        qr_code_id=data.qr_code_id,
        qr_scan_timestamp=now if proof_type == ProofType.QR_SCAN else None,
        gps_latitude=data.gps_coordinates.latitude if data.gps_coordinates else None,
        gps_longitude=data.gps_coordinates.longitude if data.gps_coordinates else None,
        gps_accuracy=data.gps_accuracy,
        photo_url=data.photo_url,
        signature_url=data.signature_url,
        device_info=data.device_info,
        submitted_by=actor.wallet_id,
        verified=False,
        anomaly_detected=False,
        created_at=now,
    )
    db.add(proof)

    # Reassign rather than mutate so the JSONB column is marked dirty.
    reserve.proof_data = {**(reserve.proof_data or {}), proof_type.value: data.proof_data}
    reserve.proof_submitted = True

    log_audit(
        db, reserve.reserve_id, ReserveAction.PROOF_SUBMITTED, reserve.amount, actor.wallet_id,
        {"proof_id": str(proof.proof_id), "proof_type": proof_type.value},
    )
    notifications.notify_reserve_event(
        db, reserve, "proof.submitted",
        {"proof_id": str(proof.proof_id), "proof_type": proof_type.value},
        exclude=actor.wallet_id,
    )

    await db.commit()
    await db.refresh(proof)
    logger.info(
        "Proof %s (%s) submitted for reserve %s by wallet %s",
        proof.proof_id, proof_type.value, reserve.reserve_id, actor.wallet_id,
    )
    return proof


async def verify_proof(
    db: AsyncSession, proof_id: uuid.UUID, actor: Wallet, data: ProofVerify
) -> Proof:
    """Record the buyer's or an arbiter's verdict on a proof.

    A clean verification marks the reserve proof_verified, which lets the
    seller or driver trigger the release. It never releases funds itself.
    """
    result = await db.execute(
        select(Proof)
        .where(Proof.proof_id == proof_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    proof = result.scalar_one_or_none()
    if proof is None:
        raise HTTPException(status_code=404, detail="Proof not found")

    reserve = await get_reserve(db, proof.reserve_id, for_update=True)
    if not (actor.is_arbiter or actor.wallet_id == reserve.buyer_wallet_id):
        raise HTTPException(status_code=403, detail="Only the buyer or an arbiter can verify proofs")
    if proof.verified_at is not None:
        raise HTTPException(status_code=409, detail="Proof has already been verified")
    if reserve.status not in VERIFIABLE:
        raise HTTPException(
            status_code=409,
            detail=f"Proofs cannot be verified for a {reserve.status.value} reserve",
        )

    proof.verified = not data.anomaly_detected
    proof.verified_by = actor.wallet_id
    proof.verified_at = datetime.now(UTC)
    proof.verification_method = data.verification_method
    proof.anomaly_detected = data.anomaly_detected
    proof.anomaly_reason = data.anomaly_reason

    details = {"proof_id": str(proof.proof_id), "proof_type": proof.proof_type.value}
    if data.anomaly_detected:
        details["anomaly_reason"] = data.anomaly_reason
        notifications.notify_reserve_event(db, reserve, "proof.anomaly_detected", details)
        logger.warning(
            "Anomaly flagged on proof %s for reserve %s: %s",
            proof.proof_id, reserve.reserve_id, data.anomaly_reason,
        )
    else:
        reserve.proof_verified = True
        notifications.notify_reserve_event(db, reserve, "proof.verified", details)

    log_audit(
        db, reserve.reserve_id, ReserveAction.PROOF_VERIFIED, reserve.amount, actor.wallet_id,
        {**details, "verified": proof.verified, "method": data.verification_method},
    )

    await db.commit()
    await db.refresh(proof)
    logger.info("Proof %s verified by wallet %s (verified=%s)", proof.proof_id, actor.wallet_id, proof.verified)
    return proof


async def list_proofs(db: AsyncSession, reserve_id: uuid.UUID) -> list[Proof]:
    result = await db.execute(
        select(Proof).where(Proof.reserve_id == reserve_id).order_by(Proof.created_at)
    )
    return list(result.scalars().all())
