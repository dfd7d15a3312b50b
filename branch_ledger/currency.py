"""
Currency and Money Module

Handles ISO 4217 currency codes and proper Decimal precision for ledger
amounts. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

# Set global decimal context for financial precision
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    LKR = ("LKR", 2)  # Sri Lankan Rupee, 2 decimal places
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


def to_decimal(value: Union[Decimal, int, str]) -> Decimal:
    """Convert to Decimal going through str so floats keep their printed value"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def floor_to_precision(value: Decimal, currency: Currency) -> Decimal:
    """Round down to currency precision (never over-credits)"""
    return value.quantize(currency.quantum, rounding=ROUND_FLOOR)


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Amounts are rounded half-up to the currency precision on construction.
    """
    amount: Decimal
    currency: Currency = Currency.LKR

    def __post_init__(self):
        amount = to_decimal(self.amount)
        rounded = amount.quantize(self.currency.quantum, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency = Currency.LKR) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check(self, other: 'Money') -> None:
        if self.currency != other.currency:
            raise ValueError(f"Currency mismatch: {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __lt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check(other)
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
