"""SQLAlchemy ORM models for the token ledger.

Maps to migration DDL in migrations/versions/:
  001_create_token_ledger.py -> TokenAccount, TokenLedgerEntryModel

TokenAccount carries no balance: it is the per-user row locked with
SELECT ... FOR UPDATE to serialize balance-affecting writes. The balance is
always SUM(token_ledger_entries.amount).
"""

from __future__ import annotations

import uuid as _uuid  # noqa: TC003 -- SQLAlchemy resolves Mapped[] annotations at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_UUID = postgresql.UUID(as_uuid=True)
_NOW = sa.text("now()")
_GEN_UUID = sa.text("gen_random_uuid()")

TOKEN_AMOUNT = sa.Numeric(precision=14, scale=4)


class Base(DeclarativeBase):
    """Declarative base for all token meter ORM models."""


class TokenAccount(Base):
    """Per-user lock anchor for the ledger aggregate."""

    __tablename__ = "token_accounts"

    user_id: Mapped[_uuid.UUID] = mapped_column(_UUID, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )


class TokenLedgerEntryModel(Base):
    """Immutable ledger entry (append-only)."""

    __tablename__ = "token_ledger_entries"

    id: Mapped[_uuid.UUID] = mapped_column(
        _UUID,
        primary_key=True,
        server_default=_GEN_UUID,
    )
    user_id: Mapped[_uuid.UUID] = mapped_column(
        _UUID,
        sa.ForeignKey("token_accounts.user_id", ondelete="RESTRICT"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(TOKEN_AMOUNT, nullable=False)
    reason: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    external_transaction_id: Mapped[str | None] = mapped_column(
        sa.String(255),
        nullable=True,
        comment="Grant idempotency key; unique when present",
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        postgresql.JSONB,
        nullable=False,
        server_default=sa.text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )

    __table_args__ = (
        sa.CheckConstraint("amount <> 0", name="ck_token_ledger_amount_nonzero"),
        sa.Index("ix_token_ledger_user_created", "user_id", "created_at"),
        sa.Index(
            "uq_token_ledger_external_tx",
            "external_transaction_id",
            unique=True,
            postgresql_where=sa.text("external_transaction_id IS NOT NULL"),
        ),
    )
