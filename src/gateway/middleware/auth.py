"""JWT bearer authentication for user routes.

- No token -> 401
- Invalid/expired token -> 401
- Valid token -> request.state.user_id (the `sub` claim)

Uses PyJWT (HS256). Secret must come from configuration, never hardcoded.
The grant webhook does not use JWT; it authenticates with a shared secret.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from uuid import UUID

import jwt

from src.shared.errors import AuthenticationError

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenPayload:
    """Decoded JWT payload."""

    user_id: UUID


def encode_token(
    *,
    user_id: UUID,
    secret: str,
    ttl_seconds: int = 3600,
) -> str:
    """Create a signed JWT for user_id."""
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def decode_token(token: str, *, secret: str) -> TokenPayload:
    """Decode and validate a JWT. Raises AuthenticationError on failure."""
    try:
        data = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        return TokenPayload(user_id=UUID(data["sub"]))
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except (jwt.InvalidTokenError, KeyError, ValueError) as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc


def bearer_token(authorization: str) -> str | None:
    """Extract the token from an `Authorization: Bearer ...` header value."""
    if not authorization.startswith("Bearer "):
        return None
    return authorization[7:].strip() or None
