"""Pydantic v2 schemas for dispute endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tradeguard.schemas.reserve import ReserveResponse
from tradeguard.schemas.wallet import _enum_value

DisputeReasonLiteral = Literal[
    "product_mismatch",
    "damaged_goods",
    "wrong_quantity",
    "late_delivery",
    "no_delivery",
    "quality_issue",
    "service_incomplete",
    "payment_issue",
    "other",
]

ResolutionLiteral = Literal[
    "refund_buyer",
    "release_seller",
    "partial_refund",
    "no_action",
    "escalated_to_admin",
]


class DisputeCreate(BaseModel):
    against_wallet_id: uuid.UUID
    reason: DisputeReasonLiteral
    description: str = Field(..., min_length=1, max_length=4096)
    evidence: list[dict[str, Any]] = Field(default_factory=list, max_length=20)


class DisputeResolve(BaseModel):
    resolution: ResolutionLiteral
    resolution_details: str = Field(..., min_length=1, max_length=4096)
    partial_refund_amount: Decimal | None = Field(None, gt=0, max_digits=12, decimal_places=2)

    @model_validator(mode="after")
    def amount_only_for_partial(self) -> "DisputeResolve":
        if self.resolution == "partial_refund" and self.partial_refund_amount is None:
            raise ValueError("partial_refund_amount is required for partial_refund")
        if self.resolution != "partial_refund" and self.partial_refund_amount is not None:
            raise ValueError("partial_refund_amount is only valid for partial_refund")
        return self


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    reserve_id: uuid.UUID
    raised_by: uuid.UUID
    against_wallet_id: uuid.UUID
    reason: str
    description: str
    evidence: list
    status: str
    resolution: str | None
    resolution_details: str | None
    partial_refund_amount: Decimal | None
    resolved_by: uuid.UUID | None
    resolved_at: datetime | None
    created_at: datetime

    @field_validator("reason", "status", "resolution", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str | None:
        if v is None:
            return None
        return _enum_value(v)


class DisputeResolutionResponse(BaseModel):
    """Resolved dispute together with the reserve it settled."""
    dispute: DisputeResponse
    reserve: ReserveResponse
