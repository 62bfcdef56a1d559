"""Direct grant API.

- POST /api/v1/tokens/starter  -> one-time starter pack (JWT bearer)
- POST /api/v1/tokens/grant    -> operator credit (X-Internal-Key, no JWT)

The operator route checks the internal key before reading the body, so an
unauthenticated caller gets 401 even for a malformed payload.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID  # noqa: TC003 - needed at runtime by pydantic

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from src.shared.errors import ValidationError

if TYPE_CHECKING:
    from src.metering.direct_grants import DirectGrantService

INTERNAL_KEY_HEADER = "x-internal-key"


class StarterGrantResponse(BaseModel):
    granted: bool
    tokens: Decimal
    balance: Decimal


class ManualGrantRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1, max_length=64)
    transaction_id: str | None = Field(default=None, max_length=255)
    metadata: dict[str, Any] | None = None


class ManualGrantResponse(BaseModel):
    granted: bool
    amount: Decimal
    balance: Decimal


def create_grants_router(*, grants: DirectGrantService) -> APIRouter:
    """Create direct grant router."""
    router = APIRouter(prefix="/api/v1/tokens", tags=["grants"])

    @router.post("/starter", response_model=StarterGrantResponse)
    async def grant_starter(request: Request) -> StarterGrantResponse:
        receipt = await grants.grant_starter(request.state.user_id)
        return StarterGrantResponse(
            granted=not receipt.duplicate,
            tokens=grants.starter_tokens,
            balance=receipt.balance_after,
        )

    @router.post("/grant", response_model=ManualGrantResponse)
    async def grant_manual(request: Request) -> ManualGrantResponse:
        grants.authenticate(request.headers.get(INTERNAL_KEY_HEADER))
        try:
            body = ManualGrantRequest.model_validate_json(await request.body())
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first.get("loc", ()))
            msg = f"{field}: {first.get('msg', '')}"
            raise ValidationError(msg, field=field) from exc

        receipt = await grants.grant_manual(
            user_id=body.user_id,
            amount=body.amount,
            reason=body.reason,
            transaction_id=body.transaction_id,
            metadata=body.metadata,
        )
        return ManualGrantResponse(
            granted=not receipt.duplicate,
            amount=Decimal(0) if receipt.duplicate else body.amount,
            balance=receipt.balance_after,
        )

    return router
