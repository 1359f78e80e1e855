"""Column types shared by the roster ORM models."""

from __future__ import annotations

import math
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.types import Numeric, TypeDecorator


class PreciseFloat(TypeDecorator):
    """Float in Python, Decimal-backed NUMERIC in the database.

    Scores and metric snapshots are compared against thresholds after a
    round trip, so binary float artifacts are kept out of storage. NaN and
    infinities are rejected at bind time.
    """

    impl = Numeric(24, 12, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):
        if value is None:
            return None
        if isinstance(value, Decimal):
            if not value.is_finite():
                raise ValueError(f"Non-finite numeric value: {value!r}")
            return value
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid numeric value for {type(self).__name__}: {value!r}") from exc
        if not math.isfinite(number):
            raise ValueError(f"Non-finite numeric value: {value!r}")
        try:
            return Decimal(str(value))
        except InvalidOperation as exc:
            raise ValueError(f"Invalid numeric value for {type(self).__name__}: {value!r}") from exc

    def process_result_value(self, value: Any, dialect):
        if value is None:
            return None
        return float(value)


class Percent(PreciseFloat):
    """Allocation percentage stored with four decimal places."""

    impl = Numeric(10, 4, asdecimal=True)
    cache_ok = True

    _QUANTUM = Decimal("0.0001")

    def process_bind_param(self, value: Any, dialect):
        decimal_value = super().process_bind_param(value, dialect)
        if decimal_value is None:
            return None
        return decimal_value.quantize(self._QUANTUM, rounding=ROUND_HALF_EVEN)
