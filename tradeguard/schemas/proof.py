"""Pydantic v2 schemas for proof submission and verification."""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tradeguard.schemas.wallet import _enum_value


class GpsCoordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class ProofSubmit(BaseModel):
    proof_type: Literal["qr_scan", "gps_location", "photo", "signature", "otp"]
    proof_data: dict[str, Any]
    qr_code_id: str | None = Field(None, max_length=128)
    gps_coordinates: GpsCoordinates | None = None
    gps_accuracy: float | None = Field(None, ge=0)
    photo_url: str | None = Field(None, max_length=2048)
    signature_url: str | None = Field(None, max_length=2048)
    device_info: dict[str, Any] | None = None

    @model_validator(mode="after")
    def validate_type_fields(self) -> "ProofSubmit":
        if self.proof_type == "gps_location" and self.gps_coordinates is None:
            raise ValueError("gps_coordinates are required for gps_location proofs")
        if self.proof_type == "photo" and not self.photo_url:
            raise ValueError("photo_url is required for photo proofs")
        if self.proof_type == "signature" and not self.signature_url:
            raise ValueError("signature_url is required for signature proofs")
        return self


class ProofVerify(BaseModel):
    verification_method: str = Field(..., min_length=1, max_length=64)
    anomaly_detected: bool = False
    anomaly_reason: str | None = Field(None, max_length=2048)

    @model_validator(mode="after")
    def reason_required_for_anomaly(self) -> "ProofVerify":
        if self.anomaly_detected and not self.anomaly_reason:
            raise ValueError("anomaly_reason is required when anomaly_detected is true")
        return self


class ProofResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    proof_id: uuid.UUID
    reserve_id: uuid.UUID
    proof_type: str
    proof_data: dict
    qr_code_id: str | None
    qr_scan_timestamp: datetime | None
    gps_latitude: float | None
    gps_longitude: float | None
    gps_accuracy: float | None
    photo_url: str | None
    signature_url: str | None
    submitted_by: uuid.UUID
    verified: bool
    verified_by: uuid.UUID | None
    verified_at: datetime | None
    verification_method: str | None
    anomaly_detected: bool
    anomaly_reason: str | None
    created_at: datetime

    @field_validator("proof_type", mode="before")
    @classmethod
    def serialize_type(cls, v: object) -> str:
        return _enum_value(v)
