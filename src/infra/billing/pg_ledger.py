"""PostgreSQL-backed token ledger using SQLAlchemy (asyncpg).

Per-user serialization is a row lock on token_accounts taken inside the
append transaction:

    INSERT INTO token_accounts (user_id) ... ON CONFLICT DO NOTHING
    SELECT user_id FROM token_accounts WHERE user_id = :u FOR UPDATE
    SELECT COALESCE(SUM(amount), 0) FROM token_ledger_entries WHERE user_id = :u
    INSERT INTO token_ledger_entries ...

Two concurrent consumers for the same user queue on the row lock, so the
second one sees the first one's entry in its SUM. Different users lock
different rows.

Idempotency is backed by the partial unique index on
external_transaction_id; losing that race surfaces as IntegrityError and is
reported as a duplicate, not an error.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError

from src.infra.models import TokenAccount, TokenLedgerEntryModel
from src.ports.ledger_port import LedgerStore
from src.shared.errors import InsufficientBalanceError, StoreUnavailableError, ValidationError
from src.shared.types import AppendReceipt, LedgerEntry

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from src.shared.clock import Clock

logger = logging.getLogger(__name__)

_ZERO = Decimal(0)


class PgLedgerStore(LedgerStore):
    """PostgreSQL LedgerStore implementation.

    All methods are async and open their own session from the factory.
    Driver and connection failures are raised as StoreUnavailableError.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def append(
        self,
        *,
        user_id: UUID,
        amount: Decimal,
        reason: str,
        external_transaction_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AppendReceipt:
        amount = Decimal(amount)
        if amount == _ZERO:
            msg = "amount must be non-zero"
            raise ValidationError(msg, field="amount")

        try:
            return await self._append_locked(
                user_id=user_id,
                amount=amount,
                reason=reason,
                external_transaction_id=external_transaction_id,
                metadata=dict(metadata or {}),
            )
        except IntegrityError as exc:
            if external_transaction_id is None:
                raise StoreUnavailableError(f"Ledger integrity failure: {exc}") from exc
            return await self._duplicate_after_race(user_id, external_transaction_id, exc)
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def balance(self, user_id: UUID) -> Decimal:
        try:
            async with self._session_factory() as session:
                return await _sum_for_user(session, user_id)
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailableError(str(exc)) from exc

    async def entries(self, user_id: UUID, *, limit: int = 100) -> list[LedgerEntry]:
        if limit <= 0:
            return []
        stmt = (
            sa.select(TokenLedgerEntryModel)
            .where(TokenLedgerEntryModel.user_id == user_id)
            .order_by(TokenLedgerEntryModel.created_at.desc())
            .limit(limit)
        )
        try:
            async with self._session_factory() as session:
                result = await session.scalars(stmt)
                rows = result.all()
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return [_orm_to_domain(row) for row in rows]

    async def get_by_transaction_id(self, external_transaction_id: str) -> LedgerEntry | None:
        try:
            async with self._session_factory() as session:
                row = await _find_by_transaction(session, external_transaction_id)
        except (DBAPIError, OSError) as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return _orm_to_domain(row) if row is not None else None

    async def _append_locked(
        self,
        *,
        user_id: UUID,
        amount: Decimal,
        reason: str,
        external_transaction_id: str | None,
        metadata: dict[str, Any],
    ) -> AppendReceipt:
        async with self._session_factory() as session, session.begin():
            if external_transaction_id is not None:
                existing = await _find_by_transaction(session, external_transaction_id)
                if existing is not None:
                    logger.info(
                        "Duplicate ledger append ignored: tx=%s user=%s",
                        external_transaction_id,
                        user_id,
                    )
                    return AppendReceipt(
                        entry=_orm_to_domain(existing),
                        balance_after=await _sum_for_user(session, user_id),
                        duplicate=True,
                    )

            await session.execute(
                pg_insert(TokenAccount)
                .values(user_id=user_id)
                .on_conflict_do_nothing(index_elements=[TokenAccount.user_id])
            )
            await session.execute(
                sa.select(TokenAccount.user_id)
                .where(TokenAccount.user_id == user_id)
                .with_for_update()
            )
            current = await _sum_for_user(session, user_id)
            if amount < _ZERO and current + amount < _ZERO:
                raise InsufficientBalanceError(balance=current, required=-amount)

            model = TokenLedgerEntryModel(
                id=uuid4(),
                user_id=user_id,
                amount=amount,
                reason=reason,
                external_transaction_id=external_transaction_id,
                metadata_=metadata,
                created_at=self._now(),
            )
            session.add(model)
            await session.flush()

        return AppendReceipt(entry=_orm_to_domain(model), balance_after=current + amount)

    async def _duplicate_after_race(
        self,
        user_id: UUID,
        external_transaction_id: str,
        exc: IntegrityError,
    ) -> AppendReceipt:
        existing = await self.get_by_transaction_id(external_transaction_id)
        if existing is None:
            raise StoreUnavailableError(f"Ledger integrity failure: {exc}") from exc
        logger.info(
            "Concurrent duplicate ledger append resolved: tx=%s user=%s",
            external_transaction_id,
            user_id,
        )
        return AppendReceipt(
            entry=existing,
            balance_after=await self.balance(user_id),
            duplicate=True,
        )

    def _now(self) -> datetime:
        return self._clock.now() if self._clock is not None else datetime.now(UTC)


async def _sum_for_user(session: AsyncSession, user_id: UUID) -> Decimal:
    result = await session.execute(
        sa.select(sa.func.coalesce(sa.func.sum(TokenLedgerEntryModel.amount), 0)).where(
            TokenLedgerEntryModel.user_id == user_id
        )
    )
    return Decimal(result.scalar_one())


async def _find_by_transaction(
    session: AsyncSession,
    external_transaction_id: str,
) -> TokenLedgerEntryModel | None:
    result = await session.execute(
        sa.select(TokenLedgerEntryModel).where(
            TokenLedgerEntryModel.external_transaction_id == external_transaction_id
        )
    )
    return result.scalar_one_or_none()


def _orm_to_domain(row: TokenLedgerEntryModel) -> LedgerEntry:
    """Convert a TokenLedgerEntryModel ORM row to the LedgerEntry domain dataclass."""
    return LedgerEntry(
        id=row.id,
        user_id=row.user_id,
        amount=Decimal(row.amount),
        reason=row.reason,
        created_at=row.created_at,
        external_transaction_id=row.external_transaction_id,
        metadata=dict(row.metadata_ or {}),
    )
