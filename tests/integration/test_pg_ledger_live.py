"""PgLedgerStore against a live PostgreSQL.

Exercises the row lock and the partial unique index for real: concurrent
consumes never overdraw and concurrent grant replays apply once.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from uuid import uuid4

import pytest

from src.shared.errors import InsufficientBalanceError


@pytest.mark.integration
class TestPgLedgerLive:
    async def test_grant_and_consume(self, pg_ledger) -> None:
        user_id = uuid4()
        await pg_ledger.append(user_id=user_id, amount=Decimal(120), reason="purchase:starter")
        receipt = await pg_ledger.append(
            user_id=user_id, amount=Decimal("-0.25"), reason="practice_upfront_block"
        )
        assert receipt.balance_after == Decimal("119.75")
        assert await pg_ledger.balance(user_id) == Decimal("119.75")

        entries = await pg_ledger.entries(user_id)
        assert [e.reason for e in entries] == ["practice_upfront_block", "purchase:starter"]

    async def test_concurrent_consumes_never_overdraw(self, pg_ledger) -> None:
        user_id = uuid4()
        await pg_ledger.append(user_id=user_id, amount=Decimal(10), reason="grant")

        results = await asyncio.gather(
            *(
                pg_ledger.append(user_id=user_id, amount=Decimal(-3), reason="consume")
                for _ in range(5)
            ),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, InsufficientBalanceError)]
        assert len(failures) == 2
        assert await pg_ledger.balance(user_id) == Decimal(1)

    async def test_concurrent_replays_grant_once(self, pg_ledger) -> None:
        user_id = uuid4()
        receipts = await asyncio.gather(
            *(
                pg_ledger.append(
                    user_id=user_id,
                    amount=Decimal(250),
                    reason="purchase:plus",
                    external_transaction_id="GPA.live-replay",
                )
                for _ in range(4)
            )
        )

        assert sum(1 for r in receipts if not r.duplicate) == 1
        assert await pg_ledger.balance(user_id) == Decimal(250)
        entry = await pg_ledger.get_by_transaction_id("GPA.live-replay")
        assert entry is not None
        assert entry.user_id == user_id
