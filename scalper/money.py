"""
Fixed-scale decimal arithmetic for prices, quantities and percentages.

Money wraps a Decimal quantized to a fixed number of fractional digits so that
repeated arithmetic never drifts the way floats do. Values are immutable; every
operation returns a new Money.

Division always rounds down (toward zero). When the bot computes how much base
currency to buy for a counter-currency budget, rounding down guarantees the
order never costs more than the budget.

Examples:
    >>> budget = Money("20")
    >>> bid = Money("30000")
    >>> str(budget / bid)
    '0.00066666'
    >>> Money("100") * Decimal("0.95") < Money("96")
    True
"""

from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Context, Decimal, InvalidOperation
from functools import total_ordering
from typing import Union

DEFAULT_SCALE = 8

# Money quantizes in its own context: at most 28 significant digits, whatever
# the caller's decimal context says.
_CONTEXT = Context(prec=28)

MoneyLike = Union["Money", Decimal, int, str]


def to_decimal(value: MoneyLike) -> Decimal:
    """Convert a Money, Decimal, int or numeric string to Decimal.

    Floats are rejected: their binary representation is exactly the drift this
    module exists to avoid.
    """
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, bool):
        raise TypeError("Booleans are not monetary values")
    if isinstance(value, float):
        raise TypeError(f"Refusing float {value!r}; pass a str or Decimal instead")
    if isinstance(value, (Decimal, int)):
        return Decimal(value)
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"Not a decimal value: {value!r}")
    raise TypeError(f"Unsupported monetary value type: {type(value).__name__}")


def _quantum(scale: int) -> Decimal:
    return Decimal(1).scaleb(-scale)


def _quantize(value: Decimal, scale: int, rounding: str) -> Decimal:
    try:
        return value.quantize(_quantum(scale), rounding=rounding, context=_CONTEXT)
    except InvalidOperation:
        raise ValueError(f"{value} has too many digits to hold at scale {scale}")


@total_ordering
class Money:
    """Immutable decimal value with a fixed fractional scale.

    Attributes:
        amount: The quantized Decimal value
        scale: Number of fractional digits kept (>= 8)
    """

    __slots__ = ("_amount", "_scale")

    def __init__(self, amount: MoneyLike = 0, scale: int = DEFAULT_SCALE):
        if scale < DEFAULT_SCALE:
            raise ValueError(f"Money scale must be at least {DEFAULT_SCALE}, got {scale}")
        value = to_decimal(amount)
        if not value.is_finite():
            raise ValueError(f"Money must be finite, got {value}")
        object.__setattr__(self, "_scale", scale)
        object.__setattr__(self, "_amount", _quantize(value, scale, ROUND_HALF_EVEN))

    def __setattr__(self, name, value):
        raise AttributeError("Money is immutable")

    @property
    def amount(self) -> Decimal:
        return self._amount

    @property
    def scale(self) -> int:
        return self._scale

    def _wrap(self, value: Decimal, other: MoneyLike = None) -> "Money":
        scale = self._scale
        if isinstance(other, Money):
            scale = max(scale, other.scale)
        return Money(value, scale)

    def __add__(self, other: MoneyLike) -> "Money":
        return self._wrap(self._amount + to_decimal(other), other)

    __radd__ = __add__

    def __sub__(self, other: MoneyLike) -> "Money":
        return self._wrap(self._amount - to_decimal(other), other)

    def __rsub__(self, other: MoneyLike) -> "Money":
        return self._wrap(to_decimal(other) - self._amount, other)

    def __mul__(self, other: MoneyLike) -> "Money":
        return self._wrap(self._amount * to_decimal(other), other)

    __rmul__ = __mul__

    def __truediv__(self, other: MoneyLike) -> "Money":
        return self.divide(other)

    def divide(self, other: MoneyLike, scale: int = None) -> "Money":
        """Divide, rounding the result down to ``scale`` fractional digits.

        Args:
            other: Divisor (must be non-zero)
            scale: Result scale; defaults to the wider of the two operands

        Raises:
            ZeroDivisionError: If the divisor is zero
            ValueError: If the quotient is too large to hold at ``scale``
        """
        divisor = to_decimal(other)
        if divisor == 0:
            raise ZeroDivisionError("Money division by zero")
        if scale is None:
            scale = max(self._scale, other.scale) if isinstance(other, Money) else self._scale
        quotient = _quantize(self._amount / divisor, scale, ROUND_DOWN)
        return Money(quotient, scale)

    def round_down(self, scale: int) -> "Money":
        """Truncate to fewer fractional digits, keeping this value's scale."""
        truncated = _quantize(self._amount, scale, ROUND_DOWN)
        return Money(truncated, self._scale)

    def __neg__(self) -> "Money":
        return Money(-self._amount, self._scale)

    def __abs__(self) -> "Money":
        return Money(abs(self._amount), self._scale)

    def __bool__(self) -> bool:
        return self._amount != 0

    def is_zero(self) -> bool:
        return self._amount == 0

    def __eq__(self, other) -> bool:
        try:
            return self._amount == to_decimal(other)
        except (TypeError, ValueError):
            return NotImplemented

    def __lt__(self, other) -> bool:
        try:
            return self._amount < to_decimal(other)
        except (TypeError, ValueError):
            return NotImplemented

    def __hash__(self) -> int:
        return hash(self._amount)

    def __str__(self) -> str:
        # "#.########" style: no trailing zeros, no exponent
        normalized = self._amount.normalize()
        return format(normalized, "f") if normalized != 0 else "0"

    def __repr__(self) -> str:
        return f"Money('{self}')"

    def __reduce__(self):
        return (Money, (str(self._amount), self._scale))


ZERO = Money(0)
