"""Reserve (escrow hold), audit log and idempotency key models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tradeguard.database import Base


class ReserveStatus(enum.Enum):
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    PARTIAL_RELEASE = "partial_release"
    EXPIRED = "expired"


class ReferenceType(enum.Enum):
    ORDER = "order"
    SERVICE = "service"
    DELIVERY = "delivery"


class ReserveAction(enum.Enum):
    HELD = "held"
    PROOF_SUBMITTED = "proof_submitted"
    PROOF_VERIFIED = "proof_verified"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    PARTIALLY_RELEASED = "partially_released"
    ESCALATED = "escalated"


class IdempotentOperation(enum.Enum):
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


class Reserve(Base):
    __tablename__ = "reserves"
    __table_args__ = (
        UniqueConstraint("reference_type", "reference_id", name="uq_reserves_reference"),
        CheckConstraint(
            "amount = seller_amount + driver_amount + platform_fee",
            name="ck_reserves_split_sums_to_amount",
        ),
    )

    reserve_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    buyer_wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    seller_wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    driver_wallet_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    seller_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    driver_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    platform_fee: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    reference_type: Mapped[ReferenceType] = mapped_column(
        Enum(ReferenceType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    reference_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[ReserveStatus] = mapped_column(
        Enum(ReserveStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ReserveStatus.HELD,
    )
    proof_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    proof_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    proof_data: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    release_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    released_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True
    )
    auto_release_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    auto_release_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def party_ids(self) -> set[uuid.UUID]:
        parties = {self.buyer_wallet_id, self.seller_wallet_id}
        if self.driver_wallet_id is not None:
            parties.add(self.driver_wallet_id)
        return parties


class ReserveAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "reserve_audit_log"

    reserve_audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    reserve_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("reserves.reserve_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    action: Mapped[ReserveAction] = mapped_column(
        Enum(ReserveAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor_wallet_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)


class IdempotencyKey(Base):
    """Client-supplied key recorded in the same transaction as the effect it guards."""
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("wallet_id", "key", name="uq_idempotency_keys_wallet_key"),
    )

    idempotency_key_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False
    )
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    operation: Mapped[IdempotentOperation] = mapped_column(
        Enum(IdempotentOperation, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    reserve_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("reserves.reserve_id", ondelete="RESTRICT"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
