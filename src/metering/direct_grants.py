"""Direct grants: the one-time starter pack and operator-issued credits.

Neither comes from a store notification. Both go through
LedgerStore.append with an idempotency key, so a retried request never
credits twice:

- starter pack: keyed starter:<user_id>, at most once per user
- operator grant: keyed by the caller's transaction_id when given

Operator grants are authenticated with the internal server key, never with
a user JWT. An empty key disables the operator endpoint entirely.
"""

from __future__ import annotations

import hmac
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from src.metering.catalog import STARTER_PACK
from src.shared.errors import ServerOnlyError, ValidationError

if TYPE_CHECKING:
    from uuid import UUID

    from src.metering.catalog import ProductGrant
    from src.metering.metrics import MeteringMetrics
    from src.ports.ledger_port import LedgerStore
    from src.shared.types import AppendReceipt

logger = logging.getLogger(__name__)

_MAX_REASON_LENGTH = 64


def starter_transaction_id(user_id: UUID) -> str:
    return f"starter:{user_id}"


class DirectGrantService:
    """Credits that bypass the purchase webhook."""

    def __init__(
        self,
        *,
        ledger: LedgerStore,
        internal_key: str = "",
        starter: ProductGrant = STARTER_PACK,
        metrics: MeteringMetrics | None = None,
    ) -> None:
        self._ledger = ledger
        self._internal_key = internal_key
        self._starter = starter
        self._metrics = metrics

    @property
    def starter_tokens(self) -> Decimal:
        return self._starter.tokens

    async def grant_starter(self, user_id: UUID) -> AppendReceipt:
        """Credit the starter pack unless this user already received it.

        Returns:
            AppendReceipt; duplicate=True means it was granted before and
            nothing changed.

        Raises:
            StoreUnavailableError: Ledger write could not complete.
        """
        receipt = await self._ledger.append(
            user_id=user_id,
            amount=self._starter.tokens,
            reason=f"grant:{self._starter.tier}",
            external_transaction_id=starter_transaction_id(user_id),
            metadata={"product_id": self._starter.product_id},
        )
        if receipt.duplicate:
            logger.info("Starter pack already granted: user=%s", user_id)
            self._record("duplicate")
        else:
            logger.info("Starter pack granted: user=%s tokens=%s", user_id, self._starter.tokens)
            self._record("ok", self._starter.tokens)
        return receipt

    def authenticate(self, presented: str | None) -> None:
        """Verify the internal server key.

        Raises:
            ServerOnlyError: Key missing, wrong, or operator grants disabled.
        """
        key = (presented or "").strip()
        if not self._internal_key or not key:
            raise ServerOnlyError
        if not hmac.compare_digest(key.encode("utf-8"), self._internal_key.encode("utf-8")):
            logger.warning(
                "Operator grant rejected: bad internal key",
                extra={"security_event": "server_key_rejected"},
            )
            raise ServerOnlyError

    async def grant_manual(
        self,
        *,
        user_id: UUID,
        amount: Decimal,
        reason: str,
        transaction_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendReceipt:
        """Credit an operator-chosen amount.

        Raises:
            ValidationError: amount not positive or reason empty/too long.
            StoreUnavailableError: Ledger write could not complete.
        """
        amount = Decimal(amount)
        if not amount.is_finite() or amount <= 0:
            msg = f"amount must be positive, got {amount}"
            raise ValidationError(msg, field="amount")
        reason = reason.strip()
        if not reason or len(reason) > _MAX_REASON_LENGTH:
            msg = f"reason must be 1-{_MAX_REASON_LENGTH} characters"
            raise ValidationError(msg, field="reason")

        receipt = await self._ledger.append(
            user_id=user_id,
            amount=amount,
            reason=f"manual:{reason}",
            external_transaction_id=transaction_id or None,
            metadata=metadata or {},
        )
        if receipt.duplicate:
            self._record("duplicate")
        else:
            self._record("ok", amount)
        logger.info(
            "Operator grant: user=%s amount=%s reason=%s tx=%s duplicate=%s",
            user_id,
            amount,
            reason,
            transaction_id,
            receipt.duplicate,
        )
        return receipt

    def _record(self, outcome: str, amount: Decimal | None = None) -> None:
        if self._metrics is not None:
            self._metrics.record_grant(outcome, amount)
