"""Metered session manager.

State machine per session: active -> closed | expired.

The server is the authority on what has been billed. Clients only trigger
heartbeats; every heartbeat recomputes the total cost of the metered time
from the rounding rules and charges the difference to what was already
charged, in whole increments. Close settles any positive remainder and
never refunds.

Mutations of one session are serialized through a per-session lock.
Balance mutations are serialized per user inside the LedgerStore.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import uuid4

from src.metering.rounding import (
    DEFAULT_RULES,
    action_cost,
    increment_for,
    session_cost,
    upfront_charge,
)
from src.shared.errors import InsufficientBalanceError, SessionNotFoundError, ValidationError
from src.shared.locks import KeyedLocks
from src.shared.types import (
    HeartbeatResult,
    MeteredSession,
    SessionKind,
    SessionStatus,
    SessionTotals,
)

if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from src.infra.cache.ttl_store import KeyedTTLStore
    from src.metering.gate import ConsumptionGate
    from src.metering.metrics import MeteringMetrics
    from src.metering.rounding import RoundingRules
    from src.ports.ledger_port import LedgerStore
    from src.shared.clock import Clock
    from src.shared.types import AppendReceipt

logger = logging.getLogger(__name__)

_ZERO = Decimal(0)


def _non_negative_seconds(value: float, field: str) -> float:
    seconds = float(value)
    if not math.isfinite(seconds) or seconds < 0:
        msg = f"{field} must be a non-negative finite number, got {value!r}"
        raise ValidationError(msg, field=field)
    return seconds


class MeteredSessionManager:
    """Opens, bills, closes and expires metered sessions."""

    def __init__(
        self,
        *,
        ledger: LedgerStore,
        gate: ConsumptionGate,
        clock: Clock,
        sessions: KeyedTTLStore[MeteredSession],
        heartbeat_timeout_seconds: float,
        rules: RoundingRules = DEFAULT_RULES,
        metrics: MeteringMetrics | None = None,
    ) -> None:
        if heartbeat_timeout_seconds <= 0:
            msg = f"heartbeat_timeout_seconds must be positive, got {heartbeat_timeout_seconds}"
            raise ValueError(msg)
        self._ledger = ledger
        self._gate = gate
        self._clock = clock
        self._sessions = sessions
        self._timeout = timedelta(seconds=heartbeat_timeout_seconds)
        self._rules = rules
        self._metrics = metrics
        self._locks = KeyedLocks()

    @property
    def heartbeat_timeout_seconds(self) -> float:
        return self._timeout.total_seconds()

    # -- Lifecycle --

    async def open(self, user_id: UUID, kind: SessionKind) -> MeteredSession:
        """Gate, charge the upfront block, and register an active session.

        Raises:
            InsufficientBalanceError: Gate declined or the upfront charge
                lost a race with another consumer. No session is created.
        """
        upfront = upfront_charge(kind, self._rules)
        decision = await self._gate.ensure(user_id, upfront)
        if not decision.allowed:
            self._record_consume("insufficient")
            raise InsufficientBalanceError(balance=decision.balance, required=upfront)

        session_id = uuid4().hex
        try:
            await self._ledger.append(
                user_id=user_id,
                amount=-upfront,
                reason=f"{kind.value}_upfront_block",
                metadata={"session_id": session_id},
            )
        except InsufficientBalanceError:
            self._record_consume("insufficient")
            logger.info("Upfront block lost race: user=%s kind=%s", user_id, kind.value)
            raise
        self._record_consume("ok", upfront)

        now = self._clock.now()
        session = MeteredSession(
            session_id=session_id,
            user_id=user_id,
            kind=kind,
            opened_at=now,
            last_heartbeat_at=now,
            charged_tokens=upfront,
        )
        for _, evicted in self._sessions.put(session_id, session):
            if evicted.is_active:
                self._expire(evicted, now, cause="evicted")

        if self._metrics is not None:
            self._metrics.sessions.labels(kind=kind.value, transition="opened").inc()
            self._metrics.active_sessions.labels(kind=kind.value).inc()
        logger.info(
            "Session opened: id=%s user=%s kind=%s upfront=%s",
            session_id,
            user_id,
            kind.value,
            upfront,
        )
        return session

    async def heartbeat(
        self,
        session_id: str,
        user_id: UUID,
        elapsed_seconds: float | None = None,
    ) -> HeartbeatResult:
        """Record elapsed time and charge any whole increments now due.

        elapsed_seconds is the client's tick since its previous heartbeat.
        It is clamped to the wall-clock time since the last heartbeat seen
        by the server; when omitted the wall clock is used. A heartbeat that
        arrives after the timeout finds the session expired: the silent gap
        is never billed, whether or not the sweeper has run yet.

        Raises:
            SessionNotFoundError: Unknown, foreign, closed or expired session.
                Nothing is charged.
            InsufficientBalanceError: The due increment could not be paid;
                the session is now expired.
        """
        async with self._locks.hold(session_id):
            now = self._clock.now()
            session = self._active_session(session_id, user_id, now)
            wall = max((now - session.last_heartbeat_at).total_seconds(), 0.0)
            if elapsed_seconds is None:
                tick = wall
            else:
                tick = min(_non_negative_seconds(elapsed_seconds, "elapsed_seconds"), wall)

            session.metered_seconds += tick
            session.accumulated_uncharged_seconds += tick
            session.last_heartbeat_at = now
            self._sessions.touch(session_id)

            due = session_cost(session.kind, session.metered_seconds, self._rules) - (
                session.charged_tokens
            )
            if due < increment_for(session.kind, self._rules):
                balance = await self._ledger.balance(session.user_id)
                return HeartbeatResult(session=session, charged=_ZERO, balance=balance)

            try:
                receipt = await self._charge(session, due, f"{session.kind.value}_tick")
            except InsufficientBalanceError:
                self._expire(session, now, cause="insufficient_balance")
                raise
            return HeartbeatResult(session=session, charged=due, balance=receipt.balance_after)

    async def close(
        self,
        session_id: str,
        user_id: UUID,
        duration_seconds: float | None = None,
    ) -> SessionTotals:
        """Finalize a session and settle the outstanding remainder.

        duration_seconds is the client-reported total duration; it is
        clamped to the wall-clock time since open and to the metered time
        plus the gap since the last heartbeat, and never lowers the already
        metered time. Closing a closed or expired session returns
        its totals again without charging; a session silent past the
        timeout is expired here and nothing is settled.

        Raises:
            SessionNotFoundError: Unknown or foreign session.
        """
        async with self._locks.hold(session_id):
            session = self._sessions.get(session_id)
            if session is None or session.user_id != user_id:
                raise SessionNotFoundError(session_id)
            now = self._clock.now()
            self._expire_if_silent(session, now)
            if not session.is_active:
                balance = await self._ledger.balance(session.user_id)
                return self._totals(session, settled=_ZERO, unpaid=_ZERO, balance=balance)

            # Under the timeout here, so since_beat never spans a silent gap.
            since_beat = max((now - session.last_heartbeat_at).total_seconds(), 0.0)
            ceiling = session.metered_seconds + since_beat
            if duration_seconds is None:
                final_seconds = ceiling
            else:
                since_open = max((now - session.opened_at).total_seconds(), 0.0)
                reported = _non_negative_seconds(duration_seconds, "duration_seconds")
                final_seconds = max(session.metered_seconds, min(reported, since_open, ceiling))
            session.metered_seconds = final_seconds

            due = session_cost(session.kind, final_seconds, self._rules) - session.charged_tokens
            settled = _ZERO
            unpaid = _ZERO
            balance: Decimal | None = None
            if due > 0:
                try:
                    receipt = await self._charge(session, due, f"{session.kind.value}_close")
                except InsufficientBalanceError as exc:
                    unpaid = due
                    balance = exc.balance
                    logger.warning(
                        "Session closed with unpaid remainder: id=%s user=%s unpaid=%s",
                        session_id,
                        session.user_id,
                        due,
                        extra={"billing_event": "unpaid_close", "unpaid_tokens": str(due)},
                    )
                else:
                    settled = due
                    balance = receipt.balance_after

            session.status = SessionStatus.CLOSED
            session.closed_at = now
            self._sessions.touch(session_id)
            if self._metrics is not None:
                self._metrics.sessions.labels(kind=session.kind.value, transition="closed").inc()
                self._metrics.active_sessions.labels(kind=session.kind.value).dec()
            logger.info(
                "Session closed: id=%s user=%s seconds=%.1f charged=%s",
                session_id,
                session.user_id,
                session.metered_seconds,
                session.charged_tokens,
            )

            if balance is None:
                balance = await self._ledger.balance(session.user_id)
            return self._totals(session, settled=settled, unpaid=unpaid, balance=balance)

    async def sweep(self) -> int:
        """Expire active sessions past the heartbeat timeout and drop stale records.

        Expiry charges nothing. Returns the number of sessions expired.
        """
        now = self._clock.now()
        expired = 0
        for session in self._sessions.values():
            if not session.is_active or now - session.last_heartbeat_at < self._timeout:
                continue
            async with self._locks.hold(session.session_id):
                # Re-check: a heartbeat may have landed while waiting for the lock.
                if self._expire_if_silent(session, now):
                    expired += 1

        for _, stale in self._sessions.evict_expired():
            if stale.is_active:
                self._expire(stale, now, cause="evicted")
                expired += 1
        if expired:
            logger.info("Session sweep expired %d sessions", expired)
        return expired

    # -- One-shot actions --

    async def charge_action(self, user_id: UUID, action: str) -> AppendReceipt:
        """Charge the flat cost of a discrete action.

        Raises:
            ValidationError: Unknown action.
            InsufficientBalanceError: Balance below the action cost.
        """
        cost = action_cost(action, self._rules)
        try:
            receipt = await self._ledger.append(
                user_id=user_id,
                amount=-cost,
                reason=f"action:{action}",
            )
        except InsufficientBalanceError:
            self._record_consume("insufficient")
            raise
        self._record_consume("ok", cost)
        return receipt

    def get(self, session_id: str) -> MeteredSession | None:
        return self._sessions.get(session_id)

    # -- Internals --

    def _active_session(self, session_id: str, user_id: UUID, now: datetime) -> MeteredSession:
        session = self._sessions.get(session_id)
        if session is None or session.user_id != user_id or not session.is_active:
            raise SessionNotFoundError(session_id)
        if self._expire_if_silent(session, now):
            raise SessionNotFoundError(session_id)
        return session

    def _expire_if_silent(self, session: MeteredSession, now: datetime) -> bool:
        """Expire an active session whose last heartbeat is older than the timeout."""
        if not session.is_active or now - session.last_heartbeat_at < self._timeout:
            return False
        self._expire(session, now, cause="heartbeat_timeout")
        return True

    async def _charge(self, session: MeteredSession, amount: Decimal, reason: str) -> AppendReceipt:
        try:
            receipt = await self._ledger.append(
                user_id=session.user_id,
                amount=-amount,
                reason=reason,
                metadata={
                    "session_id": session.session_id,
                    "metered_seconds": round(session.metered_seconds, 3),
                },
            )
        except InsufficientBalanceError:
            self._record_consume("insufficient")
            raise
        session.charged_tokens += amount
        session.accumulated_uncharged_seconds = 0.0
        self._record_consume("ok", amount)
        return receipt

    def _expire(self, session: MeteredSession, now: datetime, *, cause: str) -> None:
        session.status = SessionStatus.EXPIRED
        session.closed_at = now
        if self._metrics is not None:
            self._metrics.sessions.labels(kind=session.kind.value, transition="expired").inc()
            self._metrics.active_sessions.labels(kind=session.kind.value).dec()
        logger.info(
            "Session expired: id=%s user=%s cause=%s charged=%s",
            session.session_id,
            session.user_id,
            cause,
            session.charged_tokens,
        )

    def _totals(
        self,
        session: MeteredSession,
        *,
        settled: Decimal,
        unpaid: Decimal,
        balance: Decimal,
    ) -> SessionTotals:
        return SessionTotals(
            session_id=session.session_id,
            kind=session.kind,
            status=session.status,
            metered_seconds=session.metered_seconds,
            charged_tokens=session.charged_tokens,
            settled_now=settled,
            unpaid_tokens=unpaid,
            balance=balance,
        )

    def _record_consume(self, outcome: str, amount: Decimal | None = None) -> None:
        if self._metrics is not None:
            self._metrics.record_consume(outcome, amount)


class SessionSweeper:
    """Background task running MeteredSessionManager.sweep on an interval."""

    def __init__(self, manager: MeteredSessionManager, *, interval_seconds: float) -> None:
        self._manager = manager
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="session-sweeper")
        logger.info("Session sweeper started: interval=%ss", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Session sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._manager.sweep()
            except Exception:
                logger.exception("Session sweep failed")
