"""
Values -- Immutable, self-validating money value object.

Responsibility:
    Provides ``Money``, the fixed-point representation used for every
    monetary amount in documents, funding sources, credit balances and
    allocations.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Imported by every other domain module and by the engines.

Invariants enforced:
    - Amounts are ``Decimal`` with exactly two fractional digits.  Floats are
      refused at construction, so binary floating-point drift can never enter
      a computation.
    - Values with more than two fractional digits are refused unless the
      caller rounds explicitly through ``Money.rounded``.

Failure modes:
    - TypeError on float input or arithmetic with a non-Money operand.
    - ValueError on non-numeric strings or excess precision.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
DECIMAL_PLACES = 2


def _to_decimal(value: Decimal | str | int) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Money amounts must be Decimal, str or int, got {type(value).__name__}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (str, int)):
        try:
            return Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount: {value!r}") from e
    raise TypeError(f"Money amounts must be Decimal, str or int, got {type(value).__name__}")


@dataclass(frozen=True, slots=True, order=False)
class Money:
    """
    Monetary amount value object.

    Contract:
        Wraps a ``Decimal`` quantized to two places.  The same precision is
        used end to end; formatting for display happens only in ``format()``.

    Guarantees:
        - Immutable and hashable.
        - ``amount.as_tuple().exponent == -2`` for every instance.
        - Arithmetic between Money values is exact.

    Non-goals:
        - No currency tracking (single-currency system).
        - No implicit rounding; use ``Money.rounded`` for derived values.
    """

    amount: Decimal

    def __post_init__(self) -> None:
        value = _to_decimal(self.amount)
        if not value.is_finite():
            raise ValueError(f"Invalid amount: {self.amount!r}")
        quantized = value.quantize(CENT)
        if quantized != value:
            raise ValueError(
                f"Amount {value} has more than {DECIMAL_PLACES} decimal places; "
                "use Money.rounded() for derived values"
            )
        object.__setattr__(self, "amount", quantized)

    @classmethod
    def of(cls, amount: Decimal | str | int) -> Money:
        """Create Money from an exact two-place value."""
        return cls(_to_decimal(amount))

    @classmethod
    def rounded(cls, amount: Decimal | str | int) -> Money:
        """Create Money from any decimal value, rounding half-up to cents."""
        return cls(_to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP))

    @classmethod
    def zero(cls) -> Money:
        return cls(Decimal("0.00"))

    @classmethod
    def from_minor_units(cls, cents: int) -> Money:
        """Create Money from an integer number of cents."""
        if not isinstance(cents, int) or isinstance(cents, bool):
            raise TypeError("cents must be an int")
        return cls(Decimal(cents).scaleb(-DECIMAL_PLACES))

    @property
    def minor_units(self) -> int:
        """Integer number of cents."""
        return int(self.amount.scaleb(DECIMAL_PLACES))

    @property
    def is_zero(self) -> bool:
        return self.amount == 0

    @property
    def is_positive(self) -> bool:
        return self.amount > 0

    @property
    def is_negative(self) -> bool:
        return self.amount < 0

    def format(self) -> str:
        """Display form with thousands separators, e.g. ``1,234.50``."""
        return f"{self.amount:,.2f}"

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount + other.amount)

    def __sub__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount - other.amount)

    def __neg__(self) -> Money:
        return Money(-self.amount)

    def __abs__(self) -> Money:
        return Money(abs(self.amount))

    def __lt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount <= other.amount

    def __gt__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount > other.amount

    def __ge__(self, other: Money) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount >= other.amount

    def __str__(self) -> str:
        return str(self.amount)

    def __repr__(self) -> str:
        return f"Money('{self.amount}')"


def sum_money(values) -> Money:
    """Sum an iterable of Money, returning zero for an empty iterable."""
    total = Money.zero()
    for value in values:
        total = total + value
    return total
