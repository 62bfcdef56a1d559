"""Metered session API.

- POST /api/v1/sessions/open       -> session id + upfront charge
- POST /api/v1/sessions/heartbeat  -> charge due increments, current balance
- POST /api/v1/sessions/close      -> finalized totals

402 on heartbeat means the session has expired and the client must tear
down the interaction; 404 means the session is unknown or already ended.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from src.metering.rounding import increment_for, seconds_per_increment
from src.shared.types import SessionKind

if TYPE_CHECKING:
    from src.metering.balance import BalanceService
    from src.metering.sessions import MeteredSessionManager

logger = logging.getLogger(__name__)


class OpenSessionRequest(BaseModel):
    kind: SessionKind


class OpenSessionResponse(BaseModel):
    session_id: str
    kind: str
    charged: Decimal
    balance: Decimal
    increment: Decimal
    increment_seconds: Decimal
    heartbeat_timeout_seconds: float


class HeartbeatRequest(BaseModel):
    session_id: str = Field(min_length=1)
    elapsed_seconds: float | None = Field(default=None, ge=0)


class HeartbeatResponse(BaseModel):
    session_id: str
    status: str
    charged: Decimal
    charged_total: Decimal
    metered_seconds: float
    balance: Decimal


class CloseSessionRequest(BaseModel):
    session_id: str = Field(min_length=1)
    duration_seconds: float | None = Field(default=None, ge=0)


class SessionTotalsResponse(BaseModel):
    session_id: str
    kind: str
    status: str
    metered_seconds: float
    charged_tokens: Decimal
    settled_now: Decimal
    unpaid_tokens: Decimal
    balance: Decimal


def create_sessions_router(
    *,
    manager: MeteredSessionManager,
    balances: BalanceService,
) -> APIRouter:
    """Create metered session API router."""
    router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])

    @router.post("/open", response_model=OpenSessionResponse)
    async def open_session(request: Request, body: OpenSessionRequest) -> OpenSessionResponse:
        session = await manager.open(request.state.user_id, body.kind)
        rules = balances.rules
        return OpenSessionResponse(
            session_id=session.session_id,
            kind=session.kind.value,
            charged=session.charged_tokens,
            balance=await balances.balance(session.user_id),
            increment=increment_for(session.kind, rules),
            increment_seconds=seconds_per_increment(session.kind, rules),
            heartbeat_timeout_seconds=manager.heartbeat_timeout_seconds,
        )

    @router.post("/heartbeat", response_model=HeartbeatResponse)
    async def heartbeat(request: Request, body: HeartbeatRequest) -> HeartbeatResponse:
        result = await manager.heartbeat(
            body.session_id,
            request.state.user_id,
            elapsed_seconds=body.elapsed_seconds,
        )
        return HeartbeatResponse(
            session_id=result.session.session_id,
            status=result.session.status.value,
            charged=result.charged,
            charged_total=result.session.charged_tokens,
            metered_seconds=result.session.metered_seconds,
            balance=result.balance,
        )

    @router.post("/close", response_model=SessionTotalsResponse)
    async def close_session(request: Request, body: CloseSessionRequest) -> SessionTotalsResponse:
        totals = await manager.close(
            body.session_id,
            request.state.user_id,
            duration_seconds=body.duration_seconds,
        )
        return SessionTotalsResponse(
            session_id=totals.session_id,
            kind=totals.kind.value,
            status=totals.status.value,
            metered_seconds=totals.metered_seconds,
            charged_tokens=totals.charged_tokens,
            settled_now=totals.settled_now,
            unpaid_tokens=totals.unpaid_tokens,
            balance=totals.balance,
        )

    return router
