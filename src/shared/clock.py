"""Clock abstraction injected into time-dependent services.

Session billing and cache eviction read time only through a Clock so tests
can drive them without wall-clock sleeps.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of the current UTC time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock implementation used in production."""

    def now(self) -> datetime:
        return datetime.now(UTC)
