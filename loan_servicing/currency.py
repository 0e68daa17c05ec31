"""
Money Module

Handles ISO 4217 currency codes and proper Decimal precision for loan
calculations. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import List
from enum import Enum
import re

getcontext().prec = 28

class Currency(Enum):
    """ISO 4217 codes the servicer books loans in, with their minor-unit precision"""
    DOP = ("DOP", 2)  # Dominican Peso, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount, e.g. 0.01 for two decimals"""
        return Decimal('0.1') ** self.precision

@dataclass(frozen=True)
class Money:
    """
    An amount in one currency, always held at that currency's precision.
    Every balance, installment and payment component is a Money.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if isinstance(self.amount, float):
            raise TypeError("Money cannot be built from float, convert at the boundary")
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(self.currency.minor_unit, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def from_minor_units(cls, units: int, currency: Currency) -> 'Money':
        """Build from an integer count of minor units (cents)"""
        return cls(Decimal(units).scaleb(-currency.precision), currency)

    @property
    def minor_units(self) -> int:
        """Amount as an integer count of minor units (cents)"""
        return int(self.amount.scaleb(self.currency.precision))

    def _same_currency(self, other: 'Money', verb: str) -> Decimal:
        """Amount of ``other`` after checking it is Money in this currency"""
        if not isinstance(other, Money):
            raise TypeError(f"Cannot {verb} Money and {type(other).__name__}")
        if other.currency is not self.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")
        return other.amount

    def _with(self, amount: Decimal) -> 'Money':
        return Money(amount, self.currency)

    def __add__(self, other: 'Money') -> 'Money':
        return self._with(self.amount + self._same_currency(other, "add"))

    def __sub__(self, other: 'Money') -> 'Money':
        return self._with(self.amount - self._same_currency(other, "subtract"))

    def __mul__(self, factor: Decimal) -> 'Money':
        if isinstance(factor, float):
            raise TypeError("Cannot multiply Money by float")
        return self._with(self.amount * Decimal(factor if isinstance(factor, Decimal) else str(factor)))

    def __neg__(self) -> 'Money':
        return self._with(-self.amount)

    def __abs__(self) -> 'Money':
        return self._with(abs(self.amount))

    def __eq__(self, other) -> bool:
        return (
            isinstance(other, Money)
            and other.currency is self.currency
            and other.amount == self.amount
        )

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        return self.amount < self._same_currency(other, "compare")

    def __le__(self, other: 'Money') -> bool:
        return self.amount <= self._same_currency(other, "compare")

    def __gt__(self, other: 'Money') -> bool:
        return self.amount > self._same_currency(other, "compare")

    def __ge__(self, other: 'Money') -> bool:
        return self.amount >= self._same_currency(other, "compare")

    def is_zero(self) -> bool:
        return self.amount.is_zero()

    def is_positive(self) -> bool:
        return self.amount > 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def split_evenly(self, parts: int) -> List['Money']:
        """
        Split into equal parts in whole minor units.

        Remainder units go to the last part so that the parts always sum
        back to exactly this amount.

        Args:
            parts: Number of parts, must be positive

        Returns:
            List of Money with len == parts
        """
        if parts <= 0:
            raise ValueError("parts must be positive")
        total = self.minor_units
        base = int(Decimal(total) / Decimal(parts))  # truncates toward zero
        last = total - base * (parts - 1)
        return (
            [Money.from_minor_units(base, self.currency) for _ in range(parts - 1)]
            + [Money.from_minor_units(last, self.currency)]
        )

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def sum_money(values, currency: Currency) -> Money:
    """Sum Money values, starting from zero in the given currency"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


# A known currency code or a symbol may lead or trail the number
_AFFIX = "|".join([c.code for c in Currency] + [r"RD\$", r"[$€£¥]"])
_AMOUNT = re.compile(rf"^(?:{_AFFIX})?\s*([-+]?[\d.,]+)\s*(?:{_AFFIX})?$", re.IGNORECASE)


def _finite(value: Decimal, raw: str) -> Decimal:
    if not value.is_finite():
        raise ValueError(f"Cannot convert '{raw}' to a finite Decimal")
    return value


def decimal_from_string(value: str) -> Decimal:
    """
    Parse an amount as written by a person, e.g. "1e3", "DOP 1,234.50" or "12,5".

    Plain Decimal syntax is taken as is. Otherwise one currency code or symbol
    may lead or trail the number. With both separators present the comma
    groups thousands; a lone comma followed by at most two digits is a
    decimal comma, otherwise it groups thousands.

    Raises:
        ValueError: If the string holds anything else
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Value must be a non-empty string")

    text = value.strip()
    try:
        return _finite(Decimal(text), value)
    except InvalidOperation:
        pass

    match = _AMOUNT.match(text)
    if match is None:
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    digits = match.group(1)
    whole, comma, tail = digits.partition(',')
    if comma and '.' not in digits and ',' not in tail and len(tail) <= 2:
        digits = f"{whole}.{tail}"
    else:
        digits = digits.replace(',', '')

    try:
        return _finite(Decimal(digits), value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal") from None


def to_decimal(value) -> Decimal:
    """
    Convert a boundary value (str, int, float, Decimal) to Decimal.

    Floats go through their shortest repr so that 0.1 becomes Decimal('0.1')
    rather than its binary expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a monetary value")
    if isinstance(value, (int, float)):
        return _finite(Decimal(str(value)), str(value))
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValueError(f"Cannot convert {type(value).__name__} to Decimal")
