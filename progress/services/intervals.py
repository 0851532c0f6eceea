"""Interval geometry shared by the aggregator and the formula evaluator.

Positions are stationing values in metres along a road. An interval whose
start equals its end is a point marker: it counts as one unit, not as zero
length.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Tuple

from django.core.exceptions import ValidationError

from progress.choices import SIDE_BOTH, SIDE_LEFT, SIDE_RIGHT

VALID_SIDES = (SIDE_LEFT, SIDE_RIGHT, SIDE_BOTH)

# Point structures are identified at millimetre precision (3 decimals).
POINT_KEY_SCALE = Decimal(1000)

ZERO = Decimal("0")
ONE = Decimal("1")


def to_decimal(value, *, field: str = "position") -> Decimal:
    """Coerce ``value`` into a finite :class:`Decimal` or raise ``ValidationError``."""

    if isinstance(value, bool) or value is None:
        raise ValidationError({field: f"{field} must be a number."})
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError({field: f"{field} must be a number."})
    if not number.is_finite():
        raise ValidationError({field: f"{field} must be a finite number."})
    return number


def normalize_range(a, b) -> Tuple[Decimal, Decimal]:
    start = to_decimal(a, field="start")
    end = to_decimal(b, field="end")
    return (start, end) if start <= end else (end, start)


def ensure_side(side: str | None) -> str:
    """Read-side normalisation: anything unknown is treated as both sides."""

    return side if side in VALID_SIDES else SIDE_BOTH


def validate_side(side: str | None) -> str:
    if side is None or side == "":
        return SIDE_BOTH
    normalized = str(side).strip().upper()
    if normalized not in VALID_SIDES:
        raise ValidationError({"side": f"Unknown side '{side}'."})
    return normalized


def expand_sides(side: str | None) -> Tuple[str, ...]:
    side = ensure_side(side)
    if side == SIDE_BOTH:
        return (SIDE_LEFT, SIDE_RIGHT)
    return (side,)


def side_factor(side: str | None) -> int:
    return 2 if ensure_side(side) == SIDE_BOTH else 1


def raw_length(interval) -> Decimal:
    return max(Decimal(interval.end) - Decimal(interval.start), ZERO)


def is_point_marker(interval) -> bool:
    return raw_length(interval) == ZERO


def linear_quantity(interval) -> Decimal:
    base = raw_length(interval)
    if base == ZERO:
        base = ONE
    return base * side_factor(interval.side)


def _scaled(value) -> int:
    return int((Decimal(value) * POINT_KEY_SCALE).to_integral_value(rounding=ROUND_HALF_UP))


def point_structure_key(start, end, side: str | None) -> str:
    """Stable identity of a point structure.

    Both positions are rounded to :data:`POINT_KEY_SCALE` so records of the same
    structure group together despite representation jitter.
    """

    low, high = sorted((Decimal(start), Decimal(end)))
    return f"{_scaled(low)}:{_scaled(high)}:{ensure_side(side)}"


def interval_structure_key(interval) -> str:
    return point_structure_key(interval.start, interval.end, interval.side)
