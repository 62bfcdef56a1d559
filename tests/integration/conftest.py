"""Integration test conftest - fixtures requiring live services.

Requires:
    - PostgreSQL reachable at TEST_DATABASE_URL (postgresql+asyncpg://...)

Tests that need the database are skipped when TEST_DATABASE_URL is unset.

Usage:
    TEST_DATABASE_URL=postgresql+asyncpg://... pytest tests/integration/ -m integration
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from src.infra.billing import PgLedgerStore
from src.infra.db import create_db_engine, create_session_factory
from src.infra.models import Base
from src.shared.clock import SystemClock

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@pytest.fixture()
async def pg_ledger() -> AsyncGenerator[PgLedgerStore, None]:
    """PgLedgerStore on a freshly created schema, dropped afterwards."""
    url = os.environ.get("TEST_DATABASE_URL", "")
    if not url:
        pytest.skip("TEST_DATABASE_URL not set")

    engine = create_db_engine(url, pool_size=5, max_overflow=5)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield PgLedgerStore(session_factory=create_session_factory(engine), clock=SystemClock())
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()
