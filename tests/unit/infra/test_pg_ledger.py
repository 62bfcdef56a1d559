"""Unit tests for PgLedgerStore using the fake SQLAlchemy session.

Verifies the append transaction shape (lock, sum, insert), duplicate
handling including the unique-index race, and error translation.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError

from src.infra.billing.pg_ledger import PgLedgerStore
from src.infra.models import TokenLedgerEntryModel
from src.shared.errors import InsufficientBalanceError, StoreUnavailableError, ValidationError
from tests.fakes import FakeAsyncSession, FakeClock, FakeOrmRow, FakeResult, FakeSessionFactory


def _row(user_id: UUID, amount: str, tx: str | None = None) -> FakeOrmRow:
    return FakeOrmRow(
        id=uuid4(),
        user_id=user_id,
        amount=Decimal(amount),
        reason="purchase:starter",
        created_at=datetime(2026, 1, 1, tzinfo=UTC),
        external_transaction_id=tx,
        metadata_={"product_id": "nailit.starter.monthly"},
    )


@pytest.fixture()
def session() -> FakeAsyncSession:
    return FakeAsyncSession()


@pytest.fixture()
def store(session: FakeAsyncSession, clock: FakeClock) -> PgLedgerStore:
    return PgLedgerStore(session_factory=FakeSessionFactory(session), clock=clock)


@pytest.mark.unit
class TestPgAppend:
    async def test_consume_within_balance(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        # account upsert, row lock, SUM
        session.set_execute_results([FakeResult(), FakeResult(), FakeResult(scalar_value=10)])

        receipt = await store.append(
            user_id=sample_user_id, amount=Decimal("-0.25"), reason="practice_tick"
        )

        assert receipt.balance_after == Decimal("9.75")
        assert receipt.duplicate is False
        assert len(session.execute_calls) == 3
        assert session.committed is True
        assert session.flush_count == 1
        (model,) = session.added
        assert isinstance(model, TokenLedgerEntryModel)
        assert model.amount == Decimal("-0.25")
        assert model.user_id == sample_user_id

    async def test_row_lock_taken_before_sum(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        session.set_execute_results([FakeResult(), FakeResult(), FakeResult(scalar_value=5)])
        await store.append(user_id=sample_user_id, amount=Decimal(1), reason="grant")

        statements = [str(stmt) for stmt, _ in session.execute_calls]
        assert "token_accounts" in statements[0]
        assert "FOR UPDATE" in statements[1]
        assert "sum" in statements[2].lower()

    async def test_overdraft_rolls_back(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        session.set_execute_results([FakeResult(), FakeResult(), FakeResult(scalar_value=5)])

        with pytest.raises(InsufficientBalanceError) as exc_info:
            await store.append(user_id=sample_user_id, amount=Decimal(-6), reason="consume")

        assert exc_info.value.balance == Decimal(5)
        assert session.rolled_back is True
        assert session.added == []

    async def test_zero_amount_rejected_without_io(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        with pytest.raises(ValidationError):
            await store.append(user_id=sample_user_id, amount=Decimal(0), reason="noop")
        assert session.execute_calls == []

    async def test_known_transaction_is_duplicate(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        existing = _row(sample_user_id, "120", tx="abc")
        session.set_execute_results(
            [
                FakeResult(scalar_one_or_none_value=existing),
                FakeResult(scalar_value=Decimal(120)),
            ]
        )

        receipt = await store.append(
            user_id=sample_user_id,
            amount=Decimal(120),
            reason="purchase:starter",
            external_transaction_id="abc",
        )

        assert receipt.duplicate is True
        assert receipt.entry.id == existing.id
        assert receipt.balance_after == Decimal(120)
        assert session.added == []

    async def test_unique_index_race_resolved_as_duplicate(
        self, clock: FakeClock, sample_user_id: UUID
    ) -> None:
        write = FakeAsyncSession()
        write.set_execute_results(
            [FakeResult(), FakeResult(), FakeResult(), FakeResult(scalar_value=0)]
        )
        write.flush_error = IntegrityError("INSERT", {}, Exception("duplicate key"))
        lookup = FakeAsyncSession()
        lookup.set_execute_results(
            [FakeResult(scalar_one_or_none_value=_row(sample_user_id, "120", tx="abc"))]
        )
        balance = FakeAsyncSession()
        balance.set_execute_results([FakeResult(scalar_value=Decimal(120))])
        store = PgLedgerStore(
            session_factory=FakeSessionFactory.sequence([write, lookup, balance]),
            clock=clock,
        )

        receipt = await store.append(
            user_id=sample_user_id,
            amount=Decimal(120),
            reason="purchase:starter",
            external_transaction_id="abc",
        )

        assert receipt.duplicate is True
        assert receipt.balance_after == Decimal(120)
        assert write.rolled_back is True

    async def test_driver_error_is_store_unavailable(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        session.execute_error = DBAPIError("SELECT 1", {}, ConnectionError("refused"))
        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.append(user_id=sample_user_id, amount=Decimal(1), reason="grant")
        assert exc_info.value.code == "STORE_UNAVAILABLE"

    async def test_os_error_is_store_unavailable(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        session.execute_error = ConnectionRefusedError("db down")
        with pytest.raises(StoreUnavailableError):
            await store.balance(sample_user_id)


@pytest.mark.unit
class TestPgReads:
    async def test_balance_is_sum(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        session.set_execute_results([FakeResult(scalar_value=Decimal("12.5"))])
        assert await store.balance(sample_user_id) == Decimal("12.5")

    async def test_entries_mapped_to_domain(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        session.set_scalars_result([_row(sample_user_id, "120", tx="t1")])

        entries = await store.entries(sample_user_id, limit=10)

        assert len(entries) == 1
        assert entries[0].amount == Decimal(120)
        assert entries[0].external_transaction_id == "t1"
        assert entries[0].metadata == {"product_id": "nailit.starter.monthly"}

    async def test_entries_non_positive_limit(
        self, store: PgLedgerStore, session: FakeAsyncSession, sample_user_id: UUID
    ) -> None:
        assert await store.entries(sample_user_id, limit=0) == []
        assert session.execute_calls == []

    async def test_get_by_transaction_id_missing(
        self, store: PgLedgerStore, session: FakeAsyncSession
    ) -> None:
        assert await store.get_by_transaction_id("nope") is None
