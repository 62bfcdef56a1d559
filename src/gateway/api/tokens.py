"""Token API -- balance, ledger history, pre-flight checks and flat-fee actions.

- GET  /api/v1/tokens/balance  -> balance + rounding constants
- GET  /api/v1/tokens/ledger   -> recent entries, newest first
- POST /api/v1/tokens/ensure   -> 200 allowed / 402 not allowed
- POST /api/v1/tokens/actions  -> charge a one-shot action (402 on insufficient)
"""

from __future__ import annotations

import logging
from datetime import datetime  # noqa: TC003 - needed at runtime by pydantic
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID  # noqa: TC003 - needed at runtime by pydantic

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from src.metering.balance import BalanceService
    from src.metering.gate import ConsumptionGate
    from src.metering.sessions import MeteredSessionManager

logger = logging.getLogger(__name__)


class BalanceResponse(BaseModel):
    balance: Decimal
    rules: dict[str, Any]


class LedgerEntryResponse(BaseModel):
    id: UUID
    amount: Decimal
    reason: str
    created_at: datetime
    external_transaction_id: str | None = None


class LedgerResponse(BaseModel):
    entries: list[LedgerEntryResponse]
    total: int


class EnsureRequest(BaseModel):
    minimum: Decimal = Field(ge=0)


class EnsureResponse(BaseModel):
    allowed: bool
    balance: Decimal
    required: Decimal


class ActionRequest(BaseModel):
    action: str = Field(min_length=1, max_length=64)


class ActionResponse(BaseModel):
    action: str
    charged: Decimal
    balance: Decimal


def create_tokens_router(
    *,
    balances: BalanceService,
    gate: ConsumptionGate,
    sessions: MeteredSessionManager,
) -> APIRouter:
    """Create token API router."""
    router = APIRouter(prefix="/api/v1/tokens", tags=["tokens"])

    @router.get("/balance", response_model=BalanceResponse)
    async def get_balance(request: Request) -> BalanceResponse:
        snapshot = await balances.snapshot(request.state.user_id)
        return BalanceResponse(balance=snapshot.balance, rules=snapshot.rules.to_dict())

    @router.get("/ledger", response_model=LedgerResponse)
    async def get_ledger(
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> LedgerResponse:
        entries = await balances.history(request.state.user_id, limit=limit)
        return LedgerResponse(
            entries=[
                LedgerEntryResponse(
                    id=e.id,
                    amount=e.amount,
                    reason=e.reason,
                    created_at=e.created_at,
                    external_transaction_id=e.external_transaction_id,
                )
                for e in entries
            ],
            total=len(entries),
        )

    @router.post("/ensure", response_model=EnsureResponse)
    async def ensure(request: Request, body: EnsureRequest) -> Any:
        decision = await gate.ensure(request.state.user_id, body.minimum)
        response = EnsureResponse(
            allowed=decision.allowed,
            balance=decision.balance,
            required=decision.required,
        )
        if not decision.allowed:
            return JSONResponse(
                status_code=402,
                content={"error": "INSUFFICIENT_BALANCE", **response.model_dump(mode="json")},
            )
        return response

    @router.post("/actions", response_model=ActionResponse)
    async def charge_action(request: Request, body: ActionRequest) -> ActionResponse:
        receipt = await sessions.charge_action(request.state.user_id, body.action)
        return ActionResponse(
            action=body.action,
            charged=-receipt.entry.amount,
            balance=receipt.balance_after,
        )

    return router
