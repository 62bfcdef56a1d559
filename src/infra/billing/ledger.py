"""In-memory token ledger.

Append-only per-user entry lists with a global idempotency index.
Balance-affecting operations are serialized per user through KeyedLocks;
different users never contend on the same lock.

Used for unit tests and single-process deployments without DATABASE_URL.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from src.ports.ledger_port import LedgerStore
from src.shared.errors import InsufficientBalanceError, ValidationError
from src.shared.locks import KeyedLocks
from src.shared.types import AppendReceipt, LedgerEntry

if TYPE_CHECKING:
    from src.shared.clock import Clock

logger = logging.getLogger(__name__)

_ZERO = Decimal(0)


class InMemoryLedgerStore(LedgerStore):
    """In-memory LedgerStore implementation."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock
        self._entries: dict[UUID, list[LedgerEntry]] = {}
        self._balances: dict[UUID, Decimal] = {}
        self._by_transaction: dict[str, LedgerEntry] = {}
        self._locks = KeyedLocks()

    async def append(
        self,
        *,
        user_id: UUID,
        amount: Decimal,
        reason: str,
        external_transaction_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendReceipt:
        amount = Decimal(amount)
        if amount == _ZERO:
            msg = "amount must be non-zero"
            raise ValidationError(msg, field="amount")

        async with self._locks.hold(user_id):
            if external_transaction_id is not None:
                existing = self._by_transaction.get(external_transaction_id)
                if existing is not None:
                    logger.info(
                        "Duplicate ledger append ignored: tx=%s user=%s",
                        external_transaction_id,
                        user_id,
                    )
                    return AppendReceipt(
                        entry=existing,
                        balance_after=self._balances.get(user_id, _ZERO),
                        duplicate=True,
                    )

            current = self._balances.get(user_id, _ZERO)
            if amount < _ZERO and current + amount < _ZERO:
                raise InsufficientBalanceError(balance=current, required=-amount)

            entry = LedgerEntry(
                id=uuid4(),
                user_id=user_id,
                amount=amount,
                reason=reason,
                created_at=self._now(),
                external_transaction_id=external_transaction_id,
                metadata=dict(metadata or {}),
            )
            self._entries.setdefault(user_id, []).append(entry)
            self._balances[user_id] = current + amount
            if external_transaction_id is not None:
                self._by_transaction[external_transaction_id] = entry

            return AppendReceipt(entry=entry, balance_after=current + amount)

    async def balance(self, user_id: UUID) -> Decimal:
        async with self._locks.hold(user_id):
            return self._balances.get(user_id, _ZERO)

    async def entries(self, user_id: UUID, *, limit: int = 100) -> list[LedgerEntry]:
        async with self._locks.hold(user_id):
            history = self._entries.get(user_id, [])
            return list(reversed(history[-limit:])) if limit > 0 else []

    async def get_by_transaction_id(self, external_transaction_id: str) -> LedgerEntry | None:
        return self._by_transaction.get(external_transaction_id)

    def _now(self) -> datetime:
        return self._clock.now() if self._clock is not None else datetime.now(UTC)
