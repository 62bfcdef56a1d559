"""Service configuration.

Configuration is resolved once by the composition root and passed into
constructors explicitly. Required values fail fast at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from src.shared.errors import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        msg = f"{name} must be an integer, got {raw!r}"
        raise ConfigurationError(msg) from exc
    if value <= 0:
        msg = f"{name} must be positive, got {value}"
        raise ConfigurationError(msg)
    return value


@dataclass(frozen=True)
class MeterSettings:
    """Resolved settings for the token meter service."""

    jwt_secret: str
    webhook_secret: str
    database_url: str | None = None
    internal_server_key: str = ""
    heartbeat_timeout_seconds: int = 60
    sweep_interval_seconds: int = 15
    session_table_max_size: int = 10_000
    session_retention_seconds: int = 300
    db_lock_timeout_ms: int = 5_000
    cors_origins: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.jwt_secret:
            msg = "JWT_SECRET_KEY is required"
            raise ConfigurationError(msg)
        if not self.webhook_secret:
            msg = "WEBHOOK_SECRET is required"
            raise ConfigurationError(msg)
        # Active sessions live in the same table; retention must outlast the timeout.
        if self.session_retention_seconds <= self.heartbeat_timeout_seconds:
            msg = (
                "SESSION_RETENTION_SECONDS must exceed SESSION_HEARTBEAT_TIMEOUT_SECONDS "
                f"({self.session_retention_seconds} <= {self.heartbeat_timeout_seconds})"
            )
            raise ConfigurationError(msg)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> MeterSettings:
        """Build settings from environment variables.

        Raises:
            ConfigurationError: If a required variable is missing or a
                numeric variable is malformed.
        """
        source = os.environ if env is None else env
        cors_raw = source.get("CORS_ORIGINS", "")
        return cls(
            jwt_secret=source.get("JWT_SECRET_KEY", ""),
            webhook_secret=source.get("WEBHOOK_SECRET", ""),
            database_url=source.get("DATABASE_URL") or None,
            internal_server_key=source.get("INTERNAL_SERVER_KEY", ""),
            heartbeat_timeout_seconds=_int_setting(
                source, "SESSION_HEARTBEAT_TIMEOUT_SECONDS", 60
            ),
            sweep_interval_seconds=_int_setting(source, "SESSION_SWEEP_INTERVAL_SECONDS", 15),
            session_table_max_size=_int_setting(source, "SESSION_TABLE_MAX_SIZE", 10_000),
            session_retention_seconds=_int_setting(source, "SESSION_RETENTION_SECONDS", 300),
            db_lock_timeout_ms=_int_setting(source, "DB_LOCK_TIMEOUT_MS", 5_000),
            cors_origins=[o.strip() for o in cors_raw.split(",") if o.strip()],
        )
