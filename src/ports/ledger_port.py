"""LedgerStore - durable append-only token ledger.

Hard dependency of every metering service. The ledger is the single source
of truth for balances; no other component holds a balance.

Contract:
    - append() with a known external_transaction_id is a no-op returning
      AppendReceipt(duplicate=True), regardless of which user owns it.
    - A negative append is checked against the current balance atomically
      with the write; balance-affecting operations for one user are
      serialized, operations for different users never share a lock.
    - balance() reflects every write committed before it for that user.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from decimal import Decimal
    from uuid import UUID

    from src.shared.types import AppendReceipt, LedgerEntry


class LedgerStore(ABC):
    """Port: per-user token ledger."""

    @abstractmethod
    async def append(
        self,
        *,
        user_id: UUID,
        amount: Decimal,
        reason: str,
        external_transaction_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendReceipt:
        """Append a signed entry for a user.

        Args:
            user_id: Account owner.
            amount: Signed non-zero token amount (positive = grant).
            reason: Free-form tag, e.g. "purchase:plus".
            external_transaction_id: Idempotency key for grants.
            metadata: JSON-serializable audit payload.

        Returns:
            AppendReceipt with the entry and balance after the write.

        Raises:
            InsufficientBalanceError: Negative amount would overdraw.
            ValidationError: amount is zero.
            StoreUnavailableError: Durable store failure.
        """

    @abstractmethod
    async def balance(self, user_id: UUID) -> Decimal:
        """Return the sum of all entries for a user (0 for unknown users)."""

    @abstractmethod
    async def entries(self, user_id: UUID, *, limit: int = 100) -> list[LedgerEntry]:
        """Return the most recent entries for a user, newest first."""

    @abstractmethod
    async def get_by_transaction_id(self, external_transaction_id: str) -> LedgerEntry | None:
        """Look up the entry recorded for an idempotency key."""
