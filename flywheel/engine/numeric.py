"""Numeric helpers shared by the decision-loop stages."""

from __future__ import annotations

import math
from datetime import datetime


def clamp(value: float, lower: float, upper: float) -> float:
    return min(max(value, lower), upper)


def round_half_up(value: float, precision: int = 0) -> float:
    """Round with ties toward +infinity.

    Published scores use ``floor(x + 0.5)`` rather than Python's
    round-half-even, so 2.5 becomes 3 and -2.5 becomes -2.
    """
    power = 10 ** precision
    return math.floor(value * power + 0.5) / power


def round_int(value: float) -> int:
    return int(round_half_up(value))


def hours_between(start: datetime, end: datetime) -> float:
    """Signed hours from *start* to *end*."""
    return (end - start).total_seconds() / 3600
