"""Balance service: current balance and affordability from the ledger."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from src.metering.rounding import DEFAULT_RULES, RoundingRules

if TYPE_CHECKING:
    from uuid import UUID

    from src.ports.ledger_port import LedgerStore
    from src.shared.types import LedgerEntry


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance plus the rounding constants clients use to estimate costs."""

    user_id: UUID
    balance: Decimal
    rules: RoundingRules


class BalanceService:
    """Read-only view over the LedgerStore."""

    def __init__(self, *, ledger: LedgerStore, rules: RoundingRules = DEFAULT_RULES) -> None:
        self._ledger = ledger
        self._rules = rules

    @property
    def rules(self) -> RoundingRules:
        return self._rules

    async def balance(self, user_id: UUID) -> Decimal:
        return await self._ledger.balance(user_id)

    async def can_afford(self, user_id: UUID, amount: Decimal) -> bool:
        return await self._ledger.balance(user_id) >= Decimal(amount)

    async def snapshot(self, user_id: UUID) -> BalanceSnapshot:
        return BalanceSnapshot(
            user_id=user_id,
            balance=await self._ledger.balance(user_id),
            rules=self._rules,
        )

    async def history(self, user_id: UUID, *, limit: int = 50) -> list[LedgerEntry]:
        """Most recent ledger entries for the user, newest first."""
        return await self._ledger.entries(user_id, limit=limit)
