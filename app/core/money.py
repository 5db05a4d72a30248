"""
Fixed-precision money.

Every balance and order amount goes through ``Money``; floats never take part
in arithmetic. Values may carry more than two places internally (per-unit
micro pricing), ``cents()`` rounds half-up when an amount is paid out or
persisted.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, List, Union

from sqlalchemy import Numeric
from sqlalchemy.types import TypeDecorator

from app.core.exceptions import BadRequestError

CENT = Decimal("0.01")

MoneyLike = Union["Money", Decimal, int, str]


def q2(v: Decimal) -> Decimal:
    return Decimal(v).quantize(CENT, rounding=ROUND_HALF_UP)


def _as_decimal(value) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("bool is not a monetary value")
    if isinstance(value, (int, str)):
        return Decimal(value)
    if isinstance(value, float):
        # str() keeps the shortest repr, so 0.1 becomes Decimal("0.1")
        return Decimal(str(value))
    raise TypeError(f"unsupported monetary operand: {type(value).__name__}")


class Money:
    __slots__ = ("_amount",)

    def __init__(self, amount: MoneyLike = 0):
        value = _as_decimal(amount)
        if not value.is_finite():
            raise ValueError(f"non-finite monetary value: {amount!r}")
        self._amount = value

    @classmethod
    def parse(cls, value, *, allow_negative: bool = False, field: str = "amount") -> "Money":
        """Convert user input into Money, rejecting garbage with BadRequestError."""
        if value is None:
            raise BadRequestError(f"{field} is required")
        try:
            money = cls(value)
        except (InvalidOperation, ValueError, TypeError) as e:
            raise BadRequestError(f"{field} must be a finite decimal number", {"field": field}) from e
        if not allow_negative and money.is_negative():
            raise BadRequestError(f"{field} must not be negative", {"field": field})
        return money

    @classmethod
    def zero(cls) -> "Money":
        return cls(0)

    @property
    def amount(self) -> Decimal:
        return self._amount

    def cents(self) -> "Money":
        return Money(q2(self._amount))

    def to_str(self) -> str:
        return format(q2(self._amount), "f")

    def is_zero(self) -> bool:
        return self._amount == 0

    def is_negative(self) -> bool:
        return self._amount < 0

    def is_positive(self) -> bool:
        return self._amount > 0

    def split(self, shares: Iterable[MoneyLike]) -> List["Money"]:
        """Split into cent-rounded parts; the last part absorbs the remainder."""
        factors = [_as_decimal(s) for s in shares]
        if not factors:
            return []
        if sum(factors) != 1:
            raise ValueError(f"shares must sum to 1, got {sum(factors)}")
        whole = q2(self._amount)
        parts = [q2(whole * f) for f in factors[:-1]]
        parts.append(whole - sum(parts, Decimal("0")))
        return [Money(p) for p in parts]

    # arithmetic

    def __add__(self, other: MoneyLike) -> "Money":
        try:
            return Money(self._amount + _as_decimal(other))
        except TypeError:
            return NotImplemented

    __radd__ = __add__

    def __sub__(self, other: MoneyLike) -> "Money":
        try:
            return Money(self._amount - _as_decimal(other))
        except TypeError:
            return NotImplemented

    def __rsub__(self, other: MoneyLike) -> "Money":
        try:
            return Money(_as_decimal(other) - self._amount)
        except TypeError:
            return NotImplemented

    def __mul__(self, factor) -> "Money":
        if isinstance(factor, Money):
            return NotImplemented
        try:
            return Money(self._amount * _as_decimal(factor))
        except TypeError:
            return NotImplemented

    __rmul__ = __mul__

    def __neg__(self) -> "Money":
        return Money(-self._amount)

    def __abs__(self) -> "Money":
        return Money(abs(self._amount))

    # comparison

    def _cmp_value(self, other):
        try:
            return _as_decimal(other)
        except TypeError:
            return None

    def __eq__(self, other) -> bool:
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount == value

    def __lt__(self, other) -> bool:
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount < value

    def __le__(self, other) -> bool:
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount <= value

    def __gt__(self, other) -> bool:
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount > value

    def __ge__(self, other) -> bool:
        value = self._cmp_value(other)
        if value is None:
            return NotImplemented
        return self._amount >= value

    def __hash__(self) -> int:
        return hash(self._amount)

    def __bool__(self) -> bool:
        return self._amount != 0

    def __str__(self) -> str:
        return self.to_str()

    def __repr__(self) -> str:
        return f"Money('{self._amount}')"


class MoneyType(TypeDecorator):
    """NUMERIC(16,2) column that loads and stores Money."""

    impl = Numeric(16, 2)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return q2(_as_decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Money(q2(_as_decimal(value)))

    def coerce_compared_value(self, op, value):
        return self
