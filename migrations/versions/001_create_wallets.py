"""Create wallets table.

Revision ID: 001
Revises:
Create Date: 2026-09-14
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "wallets",
        sa.Column("wallet_id", sa.Uuid(), primary_key=True),
        sa.Column("public_key", sa.String(128), unique=True, nullable=False),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=True),
        sa.Column(
            "role",
            sa.Enum("user", "arbiter", name="walletrole"),
            nullable=False,
            server_default="user",
        ),
        sa.Column(
            "status",
            sa.Enum("active", "frozen", "closed", name="walletstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("currency", sa.String(3), nullable=False, server_default="KES"),
        sa.Column("balance", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("reserve_balance", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("total_earned", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("total_spent", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("balance >= 0", name="ck_wallets_balance_non_negative"),
        sa.CheckConstraint("reserve_balance >= 0", name="ck_wallets_reserve_balance_non_negative"),
    )


def downgrade() -> None:
    op.drop_table("wallets")
    op.execute("DROP TYPE IF EXISTS walletstatus")
    op.execute("DROP TYPE IF EXISTS walletrole")
