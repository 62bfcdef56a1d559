"""Purchase webhook -- server-to-server token grants.

- POST /api/v1/webhooks/grant

Authenticated by the shared secret in the Authorization header, not by a
user JWT. The raw body is read only after that check.
Responses: 200 ack for every authenticated event, 401 on a bad secret,
503 when the ledger store is down (the sender retries; replays are no-ops).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Request

if TYPE_CHECKING:
    from src.metering.grants import GrantIngester


def create_webhook_router(*, ingester: GrantIngester) -> APIRouter:
    """Create purchase webhook router."""
    router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

    @router.post("/grant")
    async def grant(request: Request) -> dict[str, Any]:
        ingester.authenticate(request.headers.get("authorization"))
        outcome = await ingester.apply(await request.body())
        return outcome.to_ack()

    return router
