"""Rounding policy: elapsed time and one-shot actions -> token cost.

Pure functions over fixed constants. Nothing here reads or writes the ledger.

Pricing:
    practice  1 token/min, billed in 0.25-token increments (15 s), min 1 increment
    realtime  9 tokens/min, billed in 1.5-token increments (10 s), min 5 tokens/session
    typed answer scoring: flat 1 token

All costs round UP to the next increment.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Any

from src.shared.errors import ValidationError
from src.shared.types import SessionKind

_SECONDS_PER_MINUTE = Decimal(60)


def _default_action_costs() -> dict[str, Decimal]:
    return {"typed_answer": Decimal(1)}


@dataclass(frozen=True)
class RoundingRules:
    """Unit rates and billing granularity."""

    practice_tokens_per_minute: Decimal = Decimal(1)
    practice_increment: Decimal = Decimal("0.25")
    realtime_tokens_per_minute: Decimal = Decimal(9)
    realtime_increment: Decimal = Decimal("1.5")
    realtime_session_floor: Decimal = Decimal(5)
    action_costs: Mapping[str, Decimal] = field(default_factory=_default_action_costs)

    def to_dict(self) -> dict[str, Any]:
        """Public view of the constants, for clients pre-computing estimates."""
        return {
            "practice": {
                "tokens_per_minute": str(self.practice_tokens_per_minute),
                "increment_tokens": str(self.practice_increment),
                "increment_seconds": str(seconds_per_increment(SessionKind.PRACTICE, self)),
                "minimum_tokens": str(self.practice_increment),
            },
            "realtime": {
                "tokens_per_minute": str(self.realtime_tokens_per_minute),
                "increment_tokens": str(self.realtime_increment),
                "increment_seconds": str(seconds_per_increment(SessionKind.REALTIME, self)),
                "minimum_tokens": str(self.realtime_session_floor),
            },
            "actions": {name: str(cost) for name, cost in self.action_costs.items()},
        }


DEFAULT_RULES = RoundingRules()


def _as_seconds(seconds: float | Decimal | int) -> Decimal:
    try:
        value = Decimal(str(seconds))
    except InvalidOperation as exc:
        msg = f"seconds must be numeric, got {seconds!r}"
        raise ValidationError(msg, field="seconds") from exc
    if not value.is_finite() or value < 0:
        msg = f"seconds must be a non-negative finite number, got {seconds!r}"
        raise ValidationError(msg, field="seconds")
    return value


def _billed(seconds: Decimal, rate: Decimal, step: Decimal) -> Decimal:
    # Single division keeps exact multiples exact (40 s realtime == 4 increments).
    increments = (seconds * rate / (_SECONDS_PER_MINUTE * step)).to_integral_value(
        rounding=ROUND_CEILING
    )
    return max(step, increments * step)


def practice_cost(seconds: float | Decimal | int, rules: RoundingRules = DEFAULT_RULES) -> Decimal:
    """Cost of `seconds` of practice usage; never less than one increment."""
    return _billed(_as_seconds(seconds), rules.practice_tokens_per_minute, rules.practice_increment)


def realtime_cost(seconds: float | Decimal | int, rules: RoundingRules = DEFAULT_RULES) -> Decimal:
    """Cost of `seconds` of realtime usage; never less than the per-session floor."""
    billed = _billed(
        _as_seconds(seconds), rules.realtime_tokens_per_minute, rules.realtime_increment
    )
    return max(billed, rules.realtime_session_floor)


def session_cost(
    kind: SessionKind,
    seconds: float | Decimal | int,
    rules: RoundingRules = DEFAULT_RULES,
) -> Decimal:
    """Total cost of a metered session of the given kind lasting `seconds`."""
    if kind is SessionKind.REALTIME:
        return realtime_cost(seconds, rules)
    return practice_cost(seconds, rules)


def increment_for(kind: SessionKind, rules: RoundingRules = DEFAULT_RULES) -> Decimal:
    if kind is SessionKind.REALTIME:
        return rules.realtime_increment
    return rules.practice_increment


def seconds_per_increment(kind: SessionKind, rules: RoundingRules = DEFAULT_RULES) -> Decimal:
    """Wall-clock seconds one billing increment covers (15 s practice, 10 s realtime)."""
    if kind is SessionKind.REALTIME:
        rate = rules.realtime_tokens_per_minute
    else:
        rate = rules.practice_tokens_per_minute
    return increment_for(kind, rules) * _SECONDS_PER_MINUTE / rate


def upfront_charge(kind: SessionKind, rules: RoundingRules = DEFAULT_RULES) -> Decimal:
    """Upfront block taken when a session opens.

    Practice: one increment. Realtime: the per-session floor.
    """
    if kind is SessionKind.REALTIME:
        return rules.realtime_session_floor
    return rules.practice_increment


def action_cost(action: str, rules: RoundingRules = DEFAULT_RULES) -> Decimal:
    """Flat cost of a discrete one-shot action.

    Raises:
        ValidationError: Unknown action name.
    """
    try:
        return rules.action_costs[action]
    except KeyError:
        msg = f"Unknown billable action: {action}"
        raise ValidationError(msg, field="action") from None
