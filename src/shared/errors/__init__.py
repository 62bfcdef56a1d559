"""Unified error hierarchy for the token meter.

All domain errors inherit from TokenMeterError. The `code` attribute is the
stable machine-readable identifier surfaced in HTTP error bodies and logs.
"""

from __future__ import annotations

from decimal import Decimal


class TokenMeterError(Exception):
    """Base error for all token meter exceptions."""

    def __init__(self, message: str, code: str = "TOKEN_METER_ERROR") -> None:
        self.code = code
        super().__init__(message)


# -- Port errors (raised by Port implementations) --


class PortUnavailableError(TokenMeterError):
    """A Port dependency is temporarily unavailable."""

    def __init__(self, port_name: str, message: str = "", code: str = "PORT_UNAVAILABLE") -> None:
        self.port_name = port_name
        super().__init__(
            message or f"Port {port_name} is unavailable",
            code=code,
        )


class StoreUnavailableError(PortUnavailableError):
    """The durable ledger store could not complete the operation.

    Fatal for the current request: callers must never report success.
    """

    def __init__(self, message: str = "") -> None:
        super().__init__(
            "LedgerStore",
            message or "Ledger store is unavailable",
            code="STORE_UNAVAILABLE",
        )


# -- Auth errors --


class AuthenticationError(TokenMeterError):
    """Authentication failed (invalid token, expired, etc.)."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message, code="AUTH_FAILED")


class UnauthorizedWebhookError(TokenMeterError):
    """Server-to-server webhook presented a missing or wrong shared secret."""

    def __init__(self, message: str = "Webhook authorization failed") -> None:
        super().__init__(message, code="UNAUTHORIZED_WEBHOOK")


class ServerOnlyError(TokenMeterError):
    """Operator endpoint called without the internal server key."""

    def __init__(self, message: str = "Server-only endpoint") -> None:
        super().__init__(message, code="SERVER_ONLY")


# -- Domain errors --


class InsufficientBalanceError(TokenMeterError):
    """A consume would take the user's balance below zero."""

    def __init__(self, *, balance: Decimal, required: Decimal) -> None:
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient balance: required {required}, available {balance}",
            code="INSUFFICIENT_BALANCE",
        )


class SessionNotFoundError(TokenMeterError):
    """Metered session is unknown, already closed, or expired."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(
            f"Metered session not found or closed: {session_id}",
            code="SESSION_NOT_FOUND_OR_CLOSED",
        )


class UnknownProductError(TokenMeterError):
    """External product identifier has no token mapping."""

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Unknown product: {product_id}", code="UNKNOWN_PRODUCT")


class ValidationError(TokenMeterError):
    """Input validation failed."""

    def __init__(self, message: str, field: str = "") -> None:
        self.field = field
        super().__init__(message, code="VALIDATION")


class ConfigurationError(TokenMeterError):
    """Required configuration is missing or invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIGURATION")


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "InsufficientBalanceError",
    "PortUnavailableError",
    "ServerOnlyError",
    "SessionNotFoundError",
    "StoreUnavailableError",
    "TokenMeterError",
    "UnauthorizedWebhookError",
    "UnknownProductError",
    "ValidationError",
]
