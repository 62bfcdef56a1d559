"""ORM model schema assertion tests.

Verifies SQLAlchemy ORM models match migration DDL exactly.
These tests catch drift between models.py and migration files.
"""

from __future__ import annotations

import importlib.util
from pathlib import Path

import pytest
import sqlalchemy as sa

from src.infra.models import Base, TokenAccount, TokenLedgerEntryModel

_MIGRATION = (
    Path(__file__).resolve().parents[3] / "migrations" / "versions" / "001_create_token_ledger.py"
)


def _col_names(model) -> set[str]:
    return {c.name for c in model.__table__.columns}


def _load_migration():
    spec = importlib.util.spec_from_file_location("migration_001_token_ledger", _MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.unit
class TestTokenAccountModel:
    def test_tablename(self) -> None:
        assert TokenAccount.__tablename__ == "token_accounts"

    def test_columns(self) -> None:
        assert _col_names(TokenAccount) == {"user_id", "created_at"}

    def test_user_id_is_primary_key(self) -> None:
        assert [c.name for c in TokenAccount.__table__.primary_key] == ["user_id"]

    def test_no_balance_column(self) -> None:
        assert "balance" not in _col_names(TokenAccount)


@pytest.mark.unit
class TestTokenLedgerEntryModel:
    def test_tablename(self) -> None:
        assert TokenLedgerEntryModel.__tablename__ == "token_ledger_entries"

    def test_columns(self) -> None:
        assert _col_names(TokenLedgerEntryModel) == {
            "id",
            "user_id",
            "amount",
            "reason",
            "external_transaction_id",
            "metadata",
            "created_at",
        }

    def test_amount_is_exact_numeric(self) -> None:
        amount = TokenLedgerEntryModel.__table__.c.amount
        assert isinstance(amount.type, sa.Numeric)
        assert amount.type.scale == 4
        assert amount.nullable is False

    def test_user_fk(self) -> None:
        (fk,) = TokenLedgerEntryModel.__table__.c.user_id.foreign_keys
        assert fk.target_fullname == "token_accounts.user_id"

    def test_nonzero_amount_check(self) -> None:
        names = {
            c.name
            for c in TokenLedgerEntryModel.__table__.constraints
            if isinstance(c, sa.CheckConstraint)
        }
        assert "ck_token_ledger_amount_nonzero" in names

    def test_external_transaction_id_partial_unique_index(self) -> None:
        indexes = {ix.name: ix for ix in TokenLedgerEntryModel.__table__.indexes}
        unique = indexes["uq_token_ledger_external_tx"]
        assert unique.unique is True
        assert [c.name for c in unique.columns] == ["external_transaction_id"]
        assert "IS NOT NULL" in str(unique.dialect_options["postgresql"]["where"])

    def test_history_index(self) -> None:
        indexes = {ix.name: ix for ix in TokenLedgerEntryModel.__table__.indexes}
        assert [c.name for c in indexes["ix_token_ledger_user_created"].columns] == [
            "user_id",
            "created_at",
        ]


@pytest.mark.unit
class TestMetadataMatchesMigration:
    def test_all_tables_registered(self) -> None:
        assert set(Base.metadata.tables) == {"token_accounts", "token_ledger_entries"}

    def test_migration_is_root_revision(self) -> None:
        migration = _load_migration()
        assert migration.revision == "001_token_ledger"
        assert migration.down_revision is None

    def test_migration_creates_model_indexes(self) -> None:
        source = _MIGRATION.read_text()
        for ix in TokenLedgerEntryModel.__table__.indexes:
            assert ix.name in source
        assert "ck_token_ledger_amount_nonzero" in source
