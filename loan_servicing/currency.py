"""
Currency Support Module

ISO 4217 currency codes and Decimal-based money arithmetic. NEVER uses float
for monetary values. Business amounts in this system (installments, fines,
balances) are whole currency units; gateway charges are expressed in minor
units.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Union

# High precision for intermediate compound-interest terms
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    PKR = ("PKR", 2)  # Pakistani Rupee, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places
    JPY = ("JPY", 0)  # Japanese Yen, 0 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        for member in cls:
            if member.code == code.upper():
                return member
        raise ValueError(f"Unsupported currency: {code}")


NumberLike = Union[Decimal, int, str]


def to_decimal(value: NumberLike) -> Decimal:
    """Coerce a value to Decimal, rejecting floats and non-numeric strings"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Monetary values must not be {type(value).__name__}")
    return Decimal(str(value))


def round_whole(value: Decimal) -> Decimal:
    """Round to the nearest whole currency unit, halves away from zero"""
    return value.quantize(Decimal('1'), rounding=ROUND_HALF_UP)


def floor_whole(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    def __add__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot add {self.currency.code} and {other.currency.code}")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        if self.currency != other.currency:
            raise ValueError(f"Cannot subtract {other.currency.code} from {self.currency.code}")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def to_minor_units(self) -> int:
        """Amount in the currency's smallest unit, as payment gateways expect"""
        return int(self.amount * (Decimal(10) ** self.currency.precision))

    @classmethod
    def from_minor_units(cls, minor: int, currency: Currency) -> 'Money':
        return cls(Decimal(minor) / (Decimal(10) ** currency.precision), currency)

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
