"""Application composition root -- wires the token meter into a runnable FastAPI app.

- Reads configuration from environment variables (MeterSettings.from_env)
- Chooses the ledger backend: PostgreSQL when DATABASE_URL is set, else in-memory
- Instantiates metering services with explicit dependencies
- Mounts token, session, webhook and direct grant routers
- Lifespan starts the session sweeper and disposes the DB engine

Entry point: uvicorn src.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from src.gateway.api.grants import create_grants_router
from src.gateway.api.sessions import create_sessions_router
from src.gateway.api.tokens import create_tokens_router
from src.gateway.api.webhooks import create_webhook_router
from src.gateway.app import create_app
from src.infra.billing import InMemoryLedgerStore, PgLedgerStore
from src.infra.cache.ttl_store import KeyedTTLStore
from src.infra.db import create_db_engine, create_session_factory
from src.metering.balance import BalanceService
from src.metering.catalog import ProductCatalog
from src.metering.direct_grants import DirectGrantService
from src.metering.gate import ConsumptionGate
from src.metering.grants import GrantIngester
from src.metering.metrics import MeteringMetrics
from src.metering.sessions import MeteredSessionManager, SessionSweeper
from src.shared.clock import SystemClock
from src.shared.config import MeterSettings

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI
    from prometheus_client import CollectorRegistry
    from sqlalchemy.ext.asyncio import AsyncEngine

    from src.ports.ledger_port import LedgerStore
    from src.shared.clock import Clock
    from src.shared.types import MeteredSession

logger = logging.getLogger(__name__)


def build_app(
    settings: MeterSettings | None = None,
    *,
    ledger: LedgerStore | None = None,
    clock: Clock | None = None,
    catalog: ProductCatalog | None = None,
    metrics_registry: CollectorRegistry | None = None,
) -> FastAPI:
    """Build the application: instantiate adapters, wire dependencies, mount routers.

    This function is the single composition root. Tests pass settings, an
    in-memory ledger, a fake clock and an isolated metrics registry.

    Raises:
        ConfigurationError: If required configuration is missing.
    """
    settings = settings or MeterSettings.from_env()
    clock = clock or SystemClock()
    metrics = MeteringMetrics(registry=metrics_registry)

    # -- Ledger backend --
    db_engine: AsyncEngine | None = None
    if ledger is None:
        if settings.database_url:
            db_engine = create_db_engine(
                settings.database_url, lock_timeout_ms=settings.db_lock_timeout_ms
            )
            ledger = PgLedgerStore(session_factory=create_session_factory(db_engine), clock=clock)
            logger.info("Ledger backend: PostgreSQL")
        else:
            ledger = InMemoryLedgerStore(clock=clock)
            logger.warning("DATABASE_URL not set: using in-memory ledger (not durable)")

    # -- Metering services --
    balances = BalanceService(ledger=ledger)
    gate = ConsumptionGate(balances=balances)
    session_table: KeyedTTLStore[MeteredSession] = KeyedTTLStore(
        max_size=settings.session_table_max_size,
        ttl_seconds=settings.session_retention_seconds,
        clock=clock,
    )
    manager = MeteredSessionManager(
        ledger=ledger,
        gate=gate,
        clock=clock,
        sessions=session_table,
        heartbeat_timeout_seconds=settings.heartbeat_timeout_seconds,
        rules=balances.rules,
        metrics=metrics,
    )
    sweeper = SessionSweeper(manager, interval_seconds=settings.sweep_interval_seconds)
    ingester = GrantIngester(
        ledger=ledger,
        catalog=catalog or ProductCatalog(),
        webhook_secret=settings.webhook_secret,
        metrics=metrics,
    )
    direct_grants = DirectGrantService(
        ledger=ledger,
        internal_key=settings.internal_server_key,
        metrics=metrics,
    )
    if not settings.internal_server_key:
        logger.info("INTERNAL_SERVER_KEY not set: operator grants disabled")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            if db_engine is not None:
                await db_engine.dispose()

    application = create_app(
        jwt_secret=settings.jwt_secret,
        cors_origins=settings.cors_origins,
        lifespan=lifespan,
        metrics_registry=metrics_registry,
    )

    # -- Store references on app.state for tests and lifespan management --
    application.state.settings = settings
    application.state.ledger = ledger
    application.state.session_manager = manager
    application.state.sweeper = sweeper

    application.include_router(create_tokens_router(balances=balances, gate=gate, sessions=manager))
    application.include_router(create_sessions_router(manager=manager, balances=balances))
    application.include_router(create_webhook_router(ingester=ingester))
    application.include_router(create_grants_router(grants=direct_grants))

    logger.info("Token meter app assembled: %d routes mounted", len(application.routes))
    return application


app = build_app()
