"""Shared domain types for the token ledger and metered sessions.

These types flow through the LedgerStore port and the metering services and
must remain stable; the HTTP layer maps them to pydantic response models.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID


# -- Ledger types --


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable balance-affecting event.

    amount is signed: positive = grant, negative = consume.
    external_transaction_id is the grant idempotency key and is globally
    unique when present.
    """

    id: UUID
    user_id: UUID
    amount: Decimal
    reason: str  # e.g. "purchase:plus", "practice_tick"
    created_at: datetime
    external_transaction_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AppendReceipt:
    """Outcome of LedgerStore.append.

    duplicate=True means the external_transaction_id had already been
    recorded: the call was a no-op and `entry` is the original entry.
    """

    entry: LedgerEntry
    balance_after: Decimal
    duplicate: bool = False


# -- Metered session types --


class SessionKind(enum.Enum):
    """Kind of metered interaction."""

    PRACTICE = "practice"
    REALTIME = "realtime"


class SessionStatus(enum.Enum):
    """Metered session lifecycle: active -> closed | expired."""

    ACTIVE = "active"
    CLOSED = "closed"
    EXPIRED = "expired"


@dataclass
class MeteredSession:
    """Server-side state of one metered interaction.

    Mutated only by MeteredSessionManager while holding the per-session lock.
    """

    session_id: str
    user_id: UUID
    kind: SessionKind
    opened_at: datetime
    last_heartbeat_at: datetime
    charged_tokens: Decimal
    metered_seconds: float = 0.0
    accumulated_uncharged_seconds: float = 0.0
    status: SessionStatus = SessionStatus.ACTIVE
    closed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is SessionStatus.ACTIVE


@dataclass(frozen=True)
class HeartbeatResult:
    """Result of a processed heartbeat."""

    session: MeteredSession
    charged: Decimal
    balance: Decimal


@dataclass(frozen=True)
class SessionTotals:
    """Finalized totals returned when a session is closed."""

    session_id: str
    kind: SessionKind
    status: SessionStatus
    metered_seconds: float
    charged_tokens: Decimal
    settled_now: Decimal
    unpaid_tokens: Decimal
    balance: Decimal
