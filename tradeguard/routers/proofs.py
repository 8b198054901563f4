"""Proof verification endpoint."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tradeguard.auth.middleware import AuthenticatedWallet, verify_request
from tradeguard.auth.rate_limit import check_rate_limit
from tradeguard.database import get_db
from tradeguard.schemas.proof import ProofResponse, ProofVerify
from tradeguard.services import proof as proof_service

router = APIRouter(prefix="/proofs", tags=["proofs"])


@router.post("/{proof_id}/verify", response_model=ProofResponse, dependencies=[Depends(check_rate_limit)])
async def verify_proof(
    proof_id: uuid.UUID,
    data: ProofVerify,
    auth: AuthenticatedWallet = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> ProofResponse:
    """Buyer or arbiter verifies a proof, or flags an anomaly. Does not release funds."""
    proof = await proof_service.verify_proof(db, proof_id, auth.wallet, data)
    return ProofResponse.model_validate(proof)
