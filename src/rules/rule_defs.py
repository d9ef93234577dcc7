"""
Rule definitions for the alert engine.

Each target carries a rule kind (stored as the `alert_type` string the API
writes) plus a target price and a tolerance percentage. Every kind maps to
exactly one predicate below; `RULE_PREDICATES` must cover the whole enum.
"""
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Union

DEFAULT_TOLERANCE = 1.0

Number = Union[int, float, Decimal, str]


class RuleKind(str, Enum):
    PROFIT_TARGET = "Profit target"
    LOSS_LIMIT = "Loss limit"
    WATCH_MARKET = "Watch Market"
    TARGET = "Target"
    STEP_BUY = "Step buy"
    STEP_SELL = "Step sell"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["RuleKind"]:
        """Map a stored alert_type to a RuleKind, or None if unknown."""
        if value is None:
            return None
        if isinstance(value, RuleKind):
            return value
        try:
            return cls(str(value).strip())
        except ValueError:
            return None


def _dec(value: Number) -> Decimal:
    # str() keeps 0.1 as Decimal("0.1") rather than its binary expansion
    return value if isinstance(value, Decimal) else Decimal(str(value))


def effective_tolerance(tolerance: Optional[Number]) -> Decimal:
    """Tolerance in percent; unset/null falls back to 1%."""
    if tolerance is None:
        return _dec(DEFAULT_TOLERANCE)
    try:
        return _dec(tolerance)
    except (InvalidOperation, ValueError):
        return _dec(DEFAULT_TOLERANCE)


def tolerance_bounds(target_price: Number, tolerance: Optional[Number]) -> Tuple[Decimal, Decimal]:
    """
    Lower/upper bounds of the tolerance band around a target price.

    Example:
        tolerance_bounds(100, 1) -> (Decimal("99"), Decimal("101"))
    """
    target = _dec(target_price)
    margin = target * effective_tolerance(tolerance) / Decimal(100)
    return target - margin, target + margin


def is_price_within_tolerance(current_price: Number, target_price: Number,
                              tolerance: Optional[Number]) -> bool:
    """Inclusive band check: lower <= current <= upper."""
    lower, upper = tolerance_bounds(target_price, tolerance)
    return lower <= _dec(current_price) <= upper


def _at_or_above_lower(current: Number, target: Number, tolerance: Optional[Number]) -> bool:
    lower, _ = tolerance_bounds(target, tolerance)
    return _dec(current) >= lower


def _at_or_below_upper(current: Number, target: Number, tolerance: Optional[Number]) -> bool:
    _, upper = tolerance_bounds(target, tolerance)
    return _dec(current) <= upper


def fires_profit_target(current, target, tolerance) -> bool:
    return _at_or_above_lower(current, target, tolerance)


def fires_loss_limit(current, target, tolerance) -> bool:
    return _at_or_below_upper(current, target, tolerance)


def fires_step_buy(current, target, tolerance) -> bool:
    return _at_or_below_upper(current, target, tolerance)


def fires_step_sell(current, target, tolerance) -> bool:
    return _at_or_above_lower(current, target, tolerance)


def fires_in_band(current, target, tolerance) -> bool:
    return is_price_within_tolerance(current, target, tolerance)


Predicate = Callable[[Number, Number, Optional[Number]], bool]

RULE_PREDICATES: Dict[RuleKind, Predicate] = {
    RuleKind.PROFIT_TARGET: fires_profit_target,
    RuleKind.LOSS_LIMIT: fires_loss_limit,
    RuleKind.WATCH_MARKET: fires_in_band,
    RuleKind.TARGET: fires_in_band,
    RuleKind.STEP_BUY: fires_step_buy,
    RuleKind.STEP_SELL: fires_step_sell,
    RuleKind.CUSTOM: fires_in_band,
}

assert set(RULE_PREDICATES) == set(RuleKind), "every RuleKind needs a predicate"


def should_fire(rule_kind: RuleKind, current_price: Number, target_price: Number,
                tolerance: Optional[Number]) -> bool:
    """Decide whether a target of the given kind fires at current_price."""
    return RULE_PREDICATES[rule_kind](current_price, target_price, tolerance)
