"""Create proofs and disputes tables.

Revision ID: 003
Revises: 002
Create Date: 2026-09-16
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "proofs",
        sa.Column("proof_id", sa.Uuid(), primary_key=True),
        sa.Column("reserve_id", sa.Uuid(), sa.ForeignKey("reserves.reserve_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "proof_type",
            sa.Enum("qr_scan", "gps_location", "photo", "signature", "otp", name="prooftype"),
            nullable=False,
        ),
        sa.Column("proof_data", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("qr_code_id", sa.String(128), nullable=True),
        sa.Column("qr_scan_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("gps_latitude", sa.Float(), nullable=True),
        sa.Column("gps_longitude", sa.Float(), nullable=True),
        sa.Column("gps_accuracy", sa.Float(), nullable=True),
        sa.Column("photo_url", sa.String(2048), nullable=True),
        sa.Column("signature_url", sa.String(2048), nullable=True),
        sa.Column("device_info", JSONB(), nullable=True),
        sa.Column("submitted_by", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("verified_by", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("verification_method", sa.String(64), nullable=True),
        sa.Column("anomaly_detected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("anomaly_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_proofs_reserve_id", "proofs", ["reserve_id"])

    op.create_table(
        "disputes",
        sa.Column("dispute_id", sa.Uuid(), primary_key=True),
        sa.Column("reserve_id", sa.Uuid(), sa.ForeignKey("reserves.reserve_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("raised_by", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("against_wallet_id", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "reason",
            sa.Enum(
                "product_mismatch", "damaged_goods", "wrong_quantity", "late_delivery",
                "no_delivery", "quality_issue", "service_incomplete", "payment_issue", "other",
                name="disputereason",
            ),
            nullable=False,
        ),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("evidence", JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column(
            "status",
            sa.Enum(
                "open", "under_review", "awaiting_response", "resolved", "closed", "escalated",
                name="disputestatus",
            ),
            nullable=False,
            server_default="open",
        ),
        sa.Column(
            "resolution",
            sa.Enum(
                "refund_buyer", "release_seller", "partial_refund", "no_action", "escalated_to_admin",
                name="disputeresolution",
            ),
            nullable=True,
        ),
        sa.Column("resolution_details", sa.Text(), nullable=True),
        sa.Column("partial_refund_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("resolved_by", sa.Uuid(), sa.ForeignKey("wallets.wallet_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_disputes_reserve_id", "disputes", ["reserve_id"])
    op.create_index("ix_disputes_status", "disputes", ["status"])


def downgrade() -> None:
    op.drop_table("disputes")
    op.drop_table("proofs")
    op.execute("DROP TYPE IF EXISTS disputeresolution")
    op.execute("DROP TYPE IF EXISTS disputestatus")
    op.execute("DROP TYPE IF EXISTS disputereason")
    op.execute("DROP TYPE IF EXISTS prooftype")
