"""Create reserves, reserve_audit_log and idempotency_keys tables.

Revision ID: 002
Revises: 001
Create Date: 2026-09-14
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "reserves",
        sa.Column("reserve_id", sa.Uuid(), primary_key=True),
        sa.Column("buyer_wallet_id", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("seller_wallet_id", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("driver_wallet_id", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("seller_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("driver_amount", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("platform_fee", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column(
            "reference_type",
            sa.Enum("order", "service", "delivery", name="referencetype"),
            nullable=False,
        ),
        sa.Column("reference_id", sa.String(128), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "held", "released", "refunded", "disputed", "partial_release", "expired",
                name="reservestatus",
            ),
            nullable=False,
            server_default="held",
        ),
        sa.Column("proof_submitted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("proof_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("proof_data", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("release_reason", sa.Text(), nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("released_by", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("auto_release_hours", sa.Integer(), nullable=False),
        sa.Column("auto_release_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("reference_type", "reference_id", name="uq_reserves_reference"),
        sa.CheckConstraint(
            "amount = seller_amount + driver_amount + platform_fee",
            name="ck_reserves_split_sums_to_amount",
        ),
    )
    op.create_index("ix_reserves_buyer_wallet_id", "reserves", ["buyer_wallet_id"])
    op.create_index("ix_reserves_seller_wallet_id", "reserves", ["seller_wallet_id"])
    op.create_index("ix_reserves_status", "reserves", ["status"])

    op.create_table(
        "reserve_audit_log",
        sa.Column("reserve_audit_id", sa.Uuid(), primary_key=True),
        sa.Column("reserve_id", sa.Uuid(), sa.ForeignKey("reserves.reserve_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "held", "proof_submitted", "proof_verified", "released", "refunded",
                "disputed", "resolved", "partially_released", "escalated",
                name="reserveaction",
            ),
            nullable=False,
        ),
        sa.Column("actor_wallet_id", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB(), nullable=True),
    )
    op.create_index("ix_reserve_audit_log_reserve_id", "reserve_audit_log", ["reserve_id"])

    op.create_table(
        "idempotency_keys",
        sa.Column("idempotency_key_id", sa.Uuid(), primary_key=True),
        sa.Column("wallet_id", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column(
            "operation",
            sa.Enum("hold", "release", "refund", name="idempotentoperation"),
            nullable=False,
        ),
        sa.Column("request_hash", sa.String(64), nullable=False),
        sa.Column("reserve_id", sa.Uuid(), sa.ForeignKey("reserves.reserve_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("wallet_id", "key", name="uq_idempotency_keys_wallet_key"),
    )


def downgrade() -> None:
    op.drop_table("idempotency_keys")
    op.drop_table("reserve_audit_log")
    op.drop_table("reserves")
    op.execute("DROP TYPE IF EXISTS idempotentoperation")
    op.execute("DROP TYPE IF EXISTS reserveaction")
    op.execute("DROP TYPE IF EXISTS reservestatus")
    op.execute("DROP TYPE IF EXISTS referencetype")
