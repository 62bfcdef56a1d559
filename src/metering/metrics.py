"""Metering metrics for Prometheus.

1. metering_ledger_appends_total{kind,outcome}  - grant/consume appends by outcome
2. metering_tokens_total{direction}             - tokens granted / consumed
3. metering_webhook_events_total{outcome}       - grant webhook classification
4. metering_sessions_total{kind,transition}     - session opens / closes / expiries
5. metering_active_sessions{kind}               - currently active sessions
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from prometheus_client import CollectorRegistry, Counter, Gauge

if TYPE_CHECKING:
    from decimal import Decimal


class MeteringMetrics:
    """Central registry for metering metrics.

    Pass a custom CollectorRegistry for testing isolation.
    In production, use the default global registry (registry=None).
    """

    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        kwargs = {"registry": registry} if registry is not None else {}

        self.ledger_appends = Counter(
            "metering_ledger_appends_total",
            "Ledger append attempts by entry kind and outcome",
            ["kind", "outcome"],
            **kwargs,
        )
        self.tokens = Counter(
            "metering_tokens_total",
            "Tokens moved through the ledger",
            ["direction"],
            **kwargs,
        )
        self.webhook_events = Counter(
            "metering_webhook_events_total",
            "Grant webhook events by outcome",
            ["outcome"],
            **kwargs,
        )
        self.sessions = Counter(
            "metering_sessions_total",
            "Metered session transitions",
            ["kind", "transition"],
            **kwargs,
        )
        self.active_sessions = Gauge(
            "metering_active_sessions",
            "Metered sessions currently active",
            ["kind"],
            **kwargs,
        )

    def record_grant(self, outcome: str, amount: Decimal | None = None) -> None:
        self.ledger_appends.labels(kind="grant", outcome=outcome).inc()
        if amount is not None and outcome == "ok":
            self.tokens.labels(direction="granted").inc(float(amount))

    def record_consume(self, outcome: str, amount: Decimal | None = None) -> None:
        self.ledger_appends.labels(kind="consume", outcome=outcome).inc()
        if amount is not None and outcome == "ok":
            self.tokens.labels(direction="consumed").inc(float(amount))
