"""Create token_accounts and token_ledger_entries.

token_accounts holds one row per user and no balance; it is the row locked
with SELECT ... FOR UPDATE to serialize a user's balance-affecting writes.
token_ledger_entries is append-only; balance = SUM(amount) per user.

Revision ID: 001_token_ledger
Revises:
Create Date: 2026-10-19

Rollback: alembic downgrade -1
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_token_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "token_accounts",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    )

    op.create_table(
        "token_ledger_entries",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("token_accounts.user_id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(precision=14, scale=4), nullable=False),
        sa.Column("reason", sa.String(128), nullable=False),
        sa.Column(
            "external_transaction_id",
            sa.String(255),
            nullable=True,
            comment="Grant idempotency key; unique when present",
        ),
        sa.Column(
            "metadata",
            postgresql.JSONB,
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint("amount <> 0", name="ck_token_ledger_amount_nonzero"),
    )

    op.create_index(
        "ix_token_ledger_user_created",
        "token_ledger_entries",
        ["user_id", "created_at"],
    )
    # Idempotency key for purchase grants; consumes carry no transaction id.
    op.create_index(
        "uq_token_ledger_external_tx",
        "token_ledger_entries",
        ["external_transaction_id"],
        unique=True,
        postgresql_where=sa.text("external_transaction_id IS NOT NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_token_ledger_external_tx", table_name="token_ledger_entries")
    op.drop_index("ix_token_ledger_user_created", table_name="token_ledger_entries")
    op.drop_table("token_ledger_entries")
    op.drop_table("token_accounts")
