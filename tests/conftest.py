"""Root conftest - shared fixtures for all test layers.

Markers:
    @pytest.mark.unit        - No external deps
    @pytest.mark.integration - Needs running services (PostgreSQL)
"""

from __future__ import annotations

from uuid import UUID, uuid4

import pytest

from src.infra.billing.ledger import InMemoryLedgerStore
from tests.fakes import FakeClock


@pytest.fixture
def sample_user_id() -> UUID:
    return uuid4()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock: FakeClock) -> InMemoryLedgerStore:
    return InMemoryLedgerStore(clock=clock)
