"""Pydantic v2 schemas for reserve (hold / release / refund) endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tradeguard.schemas.wallet import _enum_value


class ReserveCreate(BaseModel):
    """Hold buyer funds against an order, service booking or delivery.

    The split must add up: ``amount == seller_amount + driver_amount + platform_fee``.
    A driver split needs a driver wallet and a driver wallet needs a split.
    """
    buyer_wallet_id: uuid.UUID
    seller_wallet_id: uuid.UUID
    driver_wallet_id: uuid.UUID | None = None
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    seller_amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    driver_amount: Decimal = Field(Decimal("0.00"), ge=0, max_digits=12, decimal_places=2)
    platform_fee: Decimal = Field(Decimal("0.00"), ge=0, max_digits=12, decimal_places=2)
    reference_type: Literal["order", "service", "delivery"]
    reference_id: str = Field(..., min_length=1, max_length=128)
    auto_release_hours: int | None = Field(None, ge=1)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        from tradeguard.config import settings
        if v > settings.max_reserve_amount:
            raise ValueError(f"Maximum reserve amount is {settings.max_reserve_amount}")
        return v

    @field_validator("auto_release_hours")
    @classmethod
    def validate_auto_release_hours(cls, v: int | None) -> int | None:
        from tradeguard.config import settings
        if v is not None and v > settings.max_auto_release_hours:
            raise ValueError(f"auto_release_hours cannot exceed {settings.max_auto_release_hours}")
        return v

    @model_validator(mode="after")
    def validate_split(self) -> "ReserveCreate":
        total = self.seller_amount + self.driver_amount + self.platform_fee
        if total != self.amount:
            raise ValueError(
                f"amount ({self.amount}) must equal seller_amount + driver_amount + "
                f"platform_fee ({total})"
            )
        if self.driver_amount > 0 and self.driver_wallet_id is None:
            raise ValueError("driver_wallet_id is required when driver_amount > 0")
        if self.driver_wallet_id is not None and self.driver_amount == 0:
            raise ValueError("driver_amount must be positive when driver_wallet_id is set")
        if self.buyer_wallet_id == self.seller_wallet_id:
            raise ValueError("buyer and seller must be different wallets")
        if self.driver_wallet_id is not None and self.driver_wallet_id in (
            self.buyer_wallet_id, self.seller_wallet_id,
        ):
            raise ValueError("driver must be a different wallet from buyer and seller")
        return self


class ReleaseRequest(BaseModel):
    reason: str | None = Field(None, max_length=1024)


class RefundRequest(BaseModel):
    reason: str | None = Field(None, max_length=1024)


class ReserveResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reserve_id: uuid.UUID
    buyer_wallet_id: uuid.UUID
    seller_wallet_id: uuid.UUID
    driver_wallet_id: uuid.UUID | None
    amount: Decimal
    seller_amount: Decimal
    driver_amount: Decimal
    platform_fee: Decimal
    reference_type: str
    reference_id: str
    status: str
    proof_submitted: bool
    proof_verified: bool
    proof_data: dict
    release_reason: str | None
    refund_reason: str | None
    released_by: uuid.UUID | None
    auto_release_hours: int
    auto_release_at: datetime
    created_at: datetime
    released_at: datetime | None
    refunded_at: datetime | None

    @field_validator("status", "reference_type", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)


class ReserveAuditEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reserve_audit_id: uuid.UUID
    action: str
    actor_wallet_id: uuid.UUID | None
    amount: Decimal
    timestamp: datetime
    metadata: dict | None = Field(None, validation_alias="metadata_")

    @field_validator("action", mode="before")
    @classmethod
    def serialize_action(cls, v: object) -> str:
        return _enum_value(v)
