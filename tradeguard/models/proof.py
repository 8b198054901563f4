"""Delivery / service completion proof model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, Float, ForeignKey, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tradeguard.database import Base


class ProofType(enum.Enum):
    QR_SCAN = "qr_scan"
    GPS_LOCATION = "gps_location"
    PHOTO = "photo"
    SIGNATURE = "signature"
    OTP = "otp"


class Proof(Base):
    """Evidence submitted against a reserve. Mutated once by verification, never deleted."""
    __tablename__ = "proofs"

    proof_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    reserve_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("reserves.reserve_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    proof_type: Mapped[ProofType] = mapped_column(
        Enum(ProofType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    proof_data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    qr_code_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    qr_scan_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    gps_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    gps_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    gps_accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    photo_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    signature_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    device_info: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    submitted_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False
    )
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verified_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verification_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    anomaly_detected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    anomaly_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
