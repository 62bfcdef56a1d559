"""Async database engine and session factory for the ledger store.

Provides:
- create_db_engine(): AsyncEngine factory (asyncpg) with bounded lock waits
- create_session_factory(): async_sessionmaker bound to engine

Every balance-affecting append holds a row lock on token_accounts. A
connection-level lock_timeout bounds how long a second writer for the same
user waits; on timeout the driver error surfaces as StoreUnavailableError.

See: migrations/versions/001_create_token_ledger.py for the schema.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

APPLICATION_NAME = "token-meter"


def server_settings(*, lock_timeout_ms: int, application_name: str) -> dict[str, str]:
    """PostgreSQL session settings applied to every pooled connection."""
    if lock_timeout_ms < 0:
        msg = f"lock_timeout_ms must be non-negative, got {lock_timeout_ms}"
        raise ValueError(msg)
    return {
        "application_name": application_name,
        "lock_timeout": str(lock_timeout_ms),
    }


def create_db_engine(
    url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 20,
    echo: bool = False,
    lock_timeout_ms: int = 5_000,
    application_name: str = APPLICATION_NAME,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine for asyncpg.

    Args:
        url: Database URL (must use postgresql+asyncpg:// scheme).
        pool_size: Connection pool size.
        max_overflow: Max overflow connections beyond pool_size.
        echo: Whether to log SQL statements.
        lock_timeout_ms: Max wait for a per-user row lock (0 disables).
        application_name: Reported in pg_stat_activity.
    """
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        echo=echo,
        pool_pre_ping=True,
        connect_args={
            "server_settings": server_settings(
                lock_timeout_ms=lock_timeout_ms,
                application_name=application_name,
            )
        },
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the given engine.

    expire_on_commit=False keeps ledger rows readable after the append
    transaction commits.
    """
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
