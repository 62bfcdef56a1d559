"""Grant ingester: purchase notifications -> idempotent ledger grants.

Processing order is fixed: authenticate, then parse and classify, then
mutate. An unauthenticated request never reaches the JSON parser.

Everything after authentication is acknowledged to the sender (granted,
duplicate or ignored) so that events we do not understand do not cause
retry storms. The only non-ack outcomes are UnauthorizedWebhookError and
StoreUnavailableError; the latter lets the sender retry, which is a safe
replay because the event's transaction id is the idempotency key.

Renewals grant the full tier amount on top of any unused balance.
"""

from __future__ import annotations

import enum
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from src.shared.errors import (
    ConfigurationError,
    StoreUnavailableError,
    UnauthorizedWebhookError,
    UnknownProductError,
)
from src.shared.logging.error_handler import log_structured_error

if TYPE_CHECKING:
    from src.metering.catalog import ProductCatalog
    from src.metering.metrics import MeteringMetrics
    from src.ports.ledger_port import LedgerStore

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = frozenset({"INITIAL_PURCHASE", "RENEWAL"})
CONSUMABLE_EVENTS = frozenset({"NON_RENEWING_PURCHASE", "NON_SUBSCRIPTION_PURCHASE"})
GRANTABLE_EVENTS = SUBSCRIPTION_EVENTS | CONSUMABLE_EVENTS


class PurchaseEventBody(BaseModel):
    """The `event` object of a store notification. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    type: str
    id: str | None = None
    app_user_id: str | None = None
    product_id: str | None = None
    transaction_id: str | None = None
    original_transaction_id: str | None = None
    store: str | None = None


class PurchaseNotification(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: PurchaseEventBody
    api_version: str | None = None


class GrantStatus(enum.Enum):
    GRANTED = "granted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class GrantOutcome:
    """Result of ingesting one authenticated notification."""

    status: GrantStatus
    amount: Decimal = Decimal(0)
    reason: str = ""
    user_id: UUID | None = None
    transaction_id: str | None = None

    def to_ack(self) -> dict[str, Any]:
        """Success-shaped acknowledgement body returned to the sender."""
        ack: dict[str, Any] = {"ok": True, "status": self.status.value}
        if self.status is GrantStatus.IGNORED:
            ack["ignored"] = self.reason
        else:
            ack["granted"] = str(self.amount) if self.status is GrantStatus.GRANTED else "0"
        return ack


def _ignored(reason: str, **kwargs: Any) -> GrantOutcome:
    return GrantOutcome(status=GrantStatus.IGNORED, reason=reason, **kwargs)


class GrantIngester:
    """Turns authenticated purchase notifications into ledger grants."""

    def __init__(
        self,
        *,
        ledger: LedgerStore,
        catalog: ProductCatalog,
        webhook_secret: str,
        metrics: MeteringMetrics | None = None,
    ) -> None:
        if not webhook_secret:
            msg = "webhook_secret is required for grant ingestion"
            raise ConfigurationError(msg)
        self._ledger = ledger
        self._catalog = catalog
        self._secret = webhook_secret
        self._metrics = metrics

    def authenticate(self, authorization: str | None) -> None:
        """Verify the shared-secret header.

        Accepts the raw secret or "Bearer <secret>".

        Raises:
            UnauthorizedWebhookError: Header missing or wrong.
        """
        presented = (authorization or "").strip()
        if presented.startswith("Bearer "):
            presented = presented[7:].strip()
        if not presented or not hmac.compare_digest(
            presented.encode("utf-8"), self._secret.encode("utf-8")
        ):
            logger.warning(
                "Grant webhook rejected: bad authorization",
                extra={"security_event": "webhook_unauthorized", "header_present": bool(presented)},
            )
            self._record("unauthorized")
            raise UnauthorizedWebhookError

    async def ingest(self, *, authorization: str | None, body: bytes) -> GrantOutcome:
        """Authenticate, classify and apply one notification.

        Raises:
            UnauthorizedWebhookError: Authentication failed (nothing was read).
            StoreUnavailableError: Ledger write could not complete.
        """
        self.authenticate(authorization)
        return await self.apply(body)

    async def apply(self, body: bytes) -> GrantOutcome:
        """Classify and apply a notification whose sender is already authenticated.

        Raises:
            StoreUnavailableError: Ledger write could not complete.
        """
        try:
            notification = PurchaseNotification.model_validate_json(body)
        except PydanticValidationError as exc:
            logger.warning("Grant webhook payload malformed: %d errors", exc.error_count())
            return self._finish(_ignored("malformed_payload"))

        event = notification.event
        if event.type not in GRANTABLE_EVENTS:
            logger.info(
                "Grant webhook event ignored: type=%s user=%s product=%s",
                event.type,
                event.app_user_id,
                event.product_id,
            )
            return self._finish(_ignored(f"event_type:{event.type}"))

        try:
            user_id = UUID(event.app_user_id or "")
        except ValueError:
            logger.warning("Grant webhook missing or invalid app_user_id: %r", event.app_user_id)
            return self._finish(_ignored("missing_user"))

        transaction_id = event.transaction_id or event.id
        if not transaction_id:
            logger.warning(
                "Grant webhook without transaction id: user=%s product=%s",
                user_id,
                event.product_id,
            )
            return self._finish(_ignored("missing_transaction_id", user_id=user_id))

        try:
            product = self._catalog.lookup(event.product_id or "")
        except UnknownProductError as exc:
            log_structured_error(
                logger,
                exc,
                user_id=str(user_id),
                context={"event_type": event.type, "transaction_id": transaction_id},
                level=logging.WARNING,
            )
            return self._finish(
                _ignored("unknown_product", user_id=user_id, transaction_id=transaction_id)
            )

        try:
            receipt = await self._ledger.append(
                user_id=user_id,
                amount=product.tokens,
                reason=f"purchase:{product.tier}",
                external_transaction_id=transaction_id,
                metadata={
                    "product_id": product.product_id,
                    "product_kind": product.kind.value,
                    "event_type": event.type,
                    "event_id": event.id,
                    "store": event.store,
                },
            )
        except StoreUnavailableError as exc:
            log_structured_error(
                logger,
                exc,
                user_id=str(user_id),
                context={"transaction_id": transaction_id, "product_id": product.product_id},
            )
            self._record("store_unavailable")
            if self._metrics is not None:
                self._metrics.record_grant("store_unavailable")
            raise

        if receipt.duplicate:
            logger.info("Grant already applied: tx=%s user=%s", transaction_id, user_id)
            if self._metrics is not None:
                self._metrics.record_grant("duplicate")
            return self._finish(
                GrantOutcome(
                    status=GrantStatus.DUPLICATE,
                    user_id=user_id,
                    transaction_id=transaction_id,
                )
            )

        logger.info(
            "Granted %s tokens: user=%s product=%s event=%s tx=%s",
            product.tokens,
            user_id,
            product.product_id,
            event.type,
            transaction_id,
        )
        if self._metrics is not None:
            self._metrics.record_grant("ok", product.tokens)
        return self._finish(
            GrantOutcome(
                status=GrantStatus.GRANTED,
                amount=product.tokens,
                reason=f"purchase:{product.tier}",
                user_id=user_id,
                transaction_id=transaction_id,
            )
        )

    def _finish(self, outcome: GrantOutcome) -> GrantOutcome:
        label = outcome.status.value
        if outcome.status is GrantStatus.IGNORED:
            label = outcome.reason.split(":", 1)[0]
        self._record(label)
        return outcome

    def _record(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.webhook_events.labels(outcome=outcome).inc()
