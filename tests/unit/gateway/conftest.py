"""Gateway fixtures: the real app factory and routers over an in-memory ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from src.gateway.api.grants import create_grants_router
from src.gateway.api.sessions import create_sessions_router
from src.gateway.api.tokens import create_tokens_router
from src.gateway.api.webhooks import create_webhook_router
from src.gateway.app import create_app
from src.gateway.middleware.auth import encode_token
from src.infra.cache.ttl_store import KeyedTTLStore
from src.metering.balance import BalanceService
from src.metering.catalog import ProductCatalog
from src.metering.direct_grants import DirectGrantService
from src.metering.gate import ConsumptionGate
from src.metering.grants import GrantIngester
from src.metering.metrics import MeteringMetrics
from src.metering.sessions import MeteredSessionManager

if TYPE_CHECKING:
    from collections.abc import Callable

    from fastapi import FastAPI

    from src.infra.billing.ledger import InMemoryLedgerStore
    from src.shared.types import MeteredSession
    from tests.fakes import FakeClock

_JWT_SECRET = "gateway-test-jwt-secret-key-32b"  # noqa: S105
_WEBHOOK_SECRET = "gateway-test-webhook-secret"  # noqa: S105
_INTERNAL_KEY = "gateway-test-internal-key"  # noqa: S105


@pytest.fixture()
def jwt_secret() -> str:
    return _JWT_SECRET


@pytest.fixture()
def webhook_secret() -> str:
    return _WEBHOOK_SECRET


@pytest.fixture()
def internal_key() -> str:
    return _INTERNAL_KEY


@pytest.fixture()
def metrics_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture()
def app(
    ledger: InMemoryLedgerStore,
    clock: FakeClock,
    metrics_registry: CollectorRegistry,
    jwt_secret: str,
    webhook_secret: str,
    internal_key: str,
) -> FastAPI:
    metrics = MeteringMetrics(registry=metrics_registry)
    balances = BalanceService(ledger=ledger)
    gate = ConsumptionGate(balances=balances)
    sessions: KeyedTTLStore[MeteredSession] = KeyedTTLStore(
        max_size=100, ttl_seconds=3600, clock=clock
    )
    manager = MeteredSessionManager(
        ledger=ledger,
        gate=gate,
        clock=clock,
        sessions=sessions,
        heartbeat_timeout_seconds=60,
        metrics=metrics,
    )
    ingester = GrantIngester(
        ledger=ledger,
        catalog=ProductCatalog(),
        webhook_secret=webhook_secret,
        metrics=metrics,
    )
    direct_grants = DirectGrantService(ledger=ledger, internal_key=internal_key, metrics=metrics)
    application = create_app(jwt_secret=jwt_secret, metrics_registry=metrics_registry)
    application.include_router(create_tokens_router(balances=balances, gate=gate, sessions=manager))
    application.include_router(create_sessions_router(manager=manager, balances=balances))
    application.include_router(create_webhook_router(ingester=ingester))
    application.include_router(create_grants_router(grants=direct_grants))
    return application


@pytest.fixture()
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture()
def user_id() -> UUID:
    return uuid4()


@pytest.fixture()
def auth_headers(user_id: UUID, jwt_secret: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {encode_token(user_id=user_id, secret=jwt_secret)}"}


@pytest.fixture()
def fund(client: TestClient, webhook_secret: str) -> Callable[..., None]:
    """Grant tokens through the purchase webhook, the only way balances grow."""

    def _fund(
        user_id: UUID,
        product_id: str = "nailit.starter.monthly",
        transaction_id: str | None = None,
    ) -> None:
        body = {
            "api_version": "1.0",
            "event": {
                "type": "INITIAL_PURCHASE",
                "id": uuid4().hex,
                "app_user_id": str(user_id),
                "product_id": product_id,
                "transaction_id": transaction_id or uuid4().hex,
                "store": "APP_STORE",
            },
        }
        resp = client.post(
            "/api/v1/webhooks/grant", json=body, headers={"Authorization": webhook_secret}
        )
        assert resp.status_code == 200, resp.text

    return _fund
