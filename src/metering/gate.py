"""Consumption gate: advisory pre-flight balance check.

ensure() never mutates the ledger. A passing check does not reserve
anything; the negative append that follows is the authoritative gate and
may still fail if another consumer spends the balance first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from src.shared.errors import ValidationError

if TYPE_CHECKING:
    from uuid import UUID

    from src.metering.balance import BalanceService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    """Outcome of a pre-flight check."""

    allowed: bool
    balance: Decimal
    required: Decimal


class ConsumptionGate:
    """Answers "can this user start an action costing `minimum` tokens"."""

    def __init__(self, *, balances: BalanceService) -> None:
        self._balances = balances

    async def ensure(self, user_id: UUID, minimum: Decimal) -> GateDecision:
        """Check the user's balance against `minimum`.

        Raises:
            ValidationError: If minimum is negative.
        """
        required = Decimal(minimum)
        if required < 0:
            msg = f"minimum must be non-negative, got {minimum}"
            raise ValidationError(msg, field="minimum")

        balance = await self._balances.balance(user_id)
        allowed = balance >= required
        if not allowed:
            logger.info(
                "Gate declined: user=%s balance=%s required=%s",
                user_id,
                balance,
                required,
            )
        return GateDecision(allowed=allowed, balance=balance, required=required)
