"""Unit tests for DirectGrantService: starter pack and operator credits."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
from prometheus_client import CollectorRegistry

from src.metering.catalog import STARTER_PACK
from src.metering.direct_grants import DirectGrantService, starter_transaction_id
from src.metering.metrics import MeteringMetrics
from src.shared.errors import ServerOnlyError, ValidationError

if TYPE_CHECKING:
    from uuid import UUID

    from src.infra.billing.ledger import InMemoryLedgerStore

_KEY = "internal-test-key"  # noqa: S105


@pytest.fixture()
def metrics() -> MeteringMetrics:
    return MeteringMetrics(registry=CollectorRegistry())


@pytest.fixture()
def grants(ledger: InMemoryLedgerStore, metrics: MeteringMetrics) -> DirectGrantService:
    return DirectGrantService(ledger=ledger, internal_key=_KEY, metrics=metrics)


@pytest.mark.unit
class TestStarterGrant:
    async def test_grants_pack(
        self, grants: DirectGrantService, ledger: InMemoryLedgerStore, sample_user_id: UUID
    ) -> None:
        receipt = await grants.grant_starter(sample_user_id)

        assert not receipt.duplicate
        assert receipt.balance_after == STARTER_PACK.tokens == Decimal(20)
        assert receipt.entry.reason == "grant:starter_free"
        assert receipt.entry.external_transaction_id == f"starter:{sample_user_id}"
        assert receipt.entry.metadata["product_id"] == "starter_free_20"

    async def test_replay_grants_once(
        self,
        grants: DirectGrantService,
        ledger: InMemoryLedgerStore,
        metrics: MeteringMetrics,
        sample_user_id: UUID,
    ) -> None:
        await grants.grant_starter(sample_user_id)
        second = await grants.grant_starter(sample_user_id)

        assert second.duplicate
        assert await ledger.balance(sample_user_id) == Decimal(20)
        assert len(await ledger.entries(sample_user_id)) == 1
        assert metrics.ledger_appends.labels(kind="grant", outcome="duplicate")._value.get() == 1

    async def test_concurrent_requests_grant_once(
        self, grants: DirectGrantService, ledger: InMemoryLedgerStore, sample_user_id: UUID
    ) -> None:
        receipts = await asyncio.gather(*(grants.grant_starter(sample_user_id) for _ in range(5)))

        assert sum(1 for r in receipts if not r.duplicate) == 1
        assert await ledger.balance(sample_user_id) == Decimal(20)

    async def test_each_user_gets_their_own(
        self, grants: DirectGrantService, ledger: InMemoryLedgerStore
    ) -> None:
        first, second = uuid4(), uuid4()
        await grants.grant_starter(first)
        receipt = await grants.grant_starter(second)

        assert not receipt.duplicate
        assert await ledger.balance(second) == Decimal(20)

    def test_transaction_id_format(self, sample_user_id: UUID) -> None:
        assert starter_transaction_id(sample_user_id) == f"starter:{sample_user_id}"


@pytest.mark.unit
class TestAuthenticate:
    def test_correct_key_accepted(self, grants: DirectGrantService) -> None:
        grants.authenticate(_KEY)

    @pytest.mark.parametrize("presented", [None, "", "   ", "wrong-key"])
    def test_bad_key_rejected(self, grants: DirectGrantService, presented: str | None) -> None:
        with pytest.raises(ServerOnlyError) as exc_info:
            grants.authenticate(presented)
        assert exc_info.value.code == "SERVER_ONLY"

    def test_empty_configured_key_disables_endpoint(self, ledger: InMemoryLedgerStore) -> None:
        grants = DirectGrantService(ledger=ledger)
        with pytest.raises(ServerOnlyError):
            grants.authenticate("")
        with pytest.raises(ServerOnlyError):
            grants.authenticate("anything")


@pytest.mark.unit
class TestManualGrant:
    async def test_credits_amount(
        self, grants: DirectGrantService, ledger: InMemoryLedgerStore, sample_user_id: UUID
    ) -> None:
        receipt = await grants.grant_manual(
            user_id=sample_user_id,
            amount=Decimal("12.5"),
            reason="goodwill",
            metadata={"ticket": "T-1"},
        )

        assert receipt.balance_after == Decimal("12.5")
        assert receipt.entry.reason == "manual:goodwill"
        assert receipt.entry.metadata == {"ticket": "T-1"}

    async def test_without_transaction_id_each_call_credits(
        self, grants: DirectGrantService, ledger: InMemoryLedgerStore, sample_user_id: UUID
    ) -> None:
        for _ in range(2):
            await grants.grant_manual(user_id=sample_user_id, amount=Decimal(5), reason="r")
        assert await ledger.balance(sample_user_id) == Decimal(10)

    async def test_transaction_id_is_idempotency_key(
        self, grants: DirectGrantService, ledger: InMemoryLedgerStore, sample_user_id: UUID
    ) -> None:
        for _ in range(3):
            receipt = await grants.grant_manual(
                user_id=sample_user_id, amount=Decimal(5), reason="r", transaction_id="ops-1"
            )
        assert receipt.duplicate
        assert await ledger.balance(sample_user_id) == Decimal(5)

    @pytest.mark.parametrize(
        ("amount", "reason", "field"),
        [
            (Decimal(0), "r", "amount"),
            (Decimal(-1), "r", "amount"),
            (Decimal("NaN"), "r", "amount"),
            (Decimal(1), "  ", "reason"),
            (Decimal(1), "x" * 65, "reason"),
        ],
    )
    async def test_invalid_input_rejected(
        self,
        grants: DirectGrantService,
        ledger: InMemoryLedgerStore,
        sample_user_id: UUID,
        amount: Decimal,
        reason: str,
        field: str,
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await grants.grant_manual(user_id=sample_user_id, amount=amount, reason=reason)
        assert exc_info.value.field == field
        assert await ledger.balance(sample_user_id) == Decimal(0)
