"""Dispute model and its closed enums."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, ForeignKey, Numeric, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tradeguard.database import Base


class DisputeReason(enum.Enum):
    PRODUCT_MISMATCH = "product_mismatch"
    DAMAGED_GOODS = "damaged_goods"
    WRONG_QUANTITY = "wrong_quantity"
    LATE_DELIVERY = "late_delivery"
    NO_DELIVERY = "no_delivery"
    QUALITY_ISSUE = "quality_issue"
    SERVICE_INCOMPLETE = "service_incomplete"
    PAYMENT_ISSUE = "payment_issue"
    OTHER = "other"


class DisputeStatus(enum.Enum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    AWAITING_RESPONSE = "awaiting_response"
    RESOLVED = "resolved"
    CLOSED = "closed"
    ESCALATED = "escalated"


class DisputeResolution(enum.Enum):
    REFUND_BUYER = "refund_buyer"
    RELEASE_SELLER = "release_seller"
    PARTIAL_REFUND = "partial_refund"
    NO_ACTION = "no_action"
    ESCALATED_TO_ADMIN = "escalated_to_admin"


# Statuses a dispute can be resolved from. Escalated disputes come back to an
# arbiter, but cannot be escalated a second time.
RESOLVABLE_STATUSES: frozenset[DisputeStatus] = frozenset({
    DisputeStatus.OPEN,
    DisputeStatus.UNDER_REVIEW,
    DisputeStatus.AWAITING_RESPONSE,
    DisputeStatus.ESCALATED,
})


class Dispute(Base):
    __tablename__ = "disputes"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    reserve_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("reserves.reserve_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    raised_by: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False
    )
    against_wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False
    )
    reason: Mapped[DisputeReason] = mapped_column(
        Enum(DisputeReason, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    evidence: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    status: Mapped[DisputeStatus] = mapped_column(
        Enum(DisputeStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DisputeStatus.OPEN,
    )
    resolution: Mapped[DisputeResolution | None] = mapped_column(
        Enum(DisputeResolution, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    resolution_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    partial_refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
