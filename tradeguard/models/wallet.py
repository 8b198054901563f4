"""Wallet and wallet ledger models."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tradeguard.database import Base


class WalletRole(enum.Enum):
    USER = "user"
    ARBITER = "arbiter"


class WalletStatus(enum.Enum):
    ACTIVE = "active"
    FROZEN = "frozen"
    CLOSED = "closed"


class TransactionType(enum.Enum):
    DEPOSIT = "deposit"
    RESERVE_HOLD = "reserve_hold"
    RESERVE_RELEASE = "reserve_release"
    RESERVE_REFUND = "reserve_refund"
    PAYMENT_RECEIVED = "payment_received"


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        CheckConstraint("reserve_balance >= 0", name="ck_wallets_reserve_balance_non_negative"),
    )

    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    public_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(20), nullable=True)
    role: Mapped[WalletRole] = mapped_column(
        Enum(WalletRole, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=WalletRole.USER,
    )
    status: Mapped[WalletStatus] = mapped_column(
        Enum(WalletStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=WalletStatus.ACTIVE,
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00"),
        doc="Available balance",
    )
    reserve_balance: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00"),
        doc="Funds currently held in reserves on behalf of this wallet",
    )
    total_earned: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    total_spent: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    @property
    def is_arbiter(self) -> bool:
        return self.role == WalletRole.ARBITER


class WalletTransaction(Base):
    """Append-only balance ledger. One row per balance mutation."""
    __tablename__ = "wallet_transactions"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    wallet_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    reserve_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("reserves.reserve_id", ondelete="RESTRICT"), nullable=True
    )
    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reserve_before: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reserve_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
