"""Pydantic v2 schemas for wallet endpoints."""

import re
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tradeguard.utils.crypto import is_valid_public_key

# Kenyan MSISDN in international form, e.g. +254712345678
_PHONE_PATTERN = re.compile(r"^\+254[17]\d{8}$")


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class WalletCreate(BaseModel):
    public_key: str = Field(..., max_length=128, description="Ed25519 public key (hex)")
    display_name: str = Field(..., min_length=1, max_length=128)
    phone_number: str | None = Field(None, max_length=20)

    @field_validator("public_key")
    @classmethod
    def validate_public_key(cls, v: str) -> str:
        if not is_valid_public_key(v):
            raise ValueError("public_key must be a hex-encoded Ed25519 key")
        return v.lower()

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not _PHONE_PATTERN.match(v):
            raise ValueError("phone_number must look like +2547XXXXXXXX")
        return v


class WalletResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    wallet_id: uuid.UUID
    public_key: str
    display_name: str
    role: str
    status: str
    currency: str
    created_at: datetime

    @field_validator("role", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)


class BalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    wallet_id: uuid.UUID
    currency: str
    balance: Decimal
    reserve_balance: Decimal
    total_balance: Decimal
    total_earned: Decimal
    total_spent: Decimal


class DepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        from tradeguard.config import settings
        if v > settings.max_deposit_amount:
            raise ValueError(f"Maximum deposit is {settings.max_deposit_amount}")
        return v


class WalletTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: uuid.UUID
    wallet_id: uuid.UUID
    reserve_id: uuid.UUID | None
    type: str
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    reserve_before: Decimal
    reserve_after: Decimal
    description: str | None
    created_at: datetime

    @field_validator("type", mode="before")
    @classmethod
    def serialize_type(cls, v: object) -> str:
        return _enum_value(v)


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    notification_id: uuid.UUID
    event_type: str
    payload: dict
    status: str
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)
