"""
Money Module

Currency codes with minor-unit precision and an immutable Money value.
Every monetary amount in the loan tracker is a Money; floats are never used.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum

# High precision for compounding factors like (1 + r) ** n
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with minor-unit precision"""
    INR = ("INR", 2)  # Indian Rupee
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound
    JPY = ("JPY", 0)  # Japanese Yen

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def minor_unit(self) -> Decimal:
        """Smallest representable amount (0.01 for INR)"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money value, always rounded half-up to the currency's
    minor unit on construction.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(self.currency.minor_unit, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __truediv__(self, divisor: Decimal) -> 'Money':
        if not isinstance(divisor, Decimal):
            divisor = Decimal(str(divisor))
        return Money(self.amount / divisor, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __abs__(self) -> 'Money':
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def is_close_to(self, other: 'Money', tolerance: Decimal) -> bool:
        """Equality within a rounding tolerance"""
        self._check_currency(other, "compare")
        return abs(self.amount - other.amount) <= tolerance

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def money_sum(amounts, currency: Currency) -> Money:
    """Sum an iterable of Money, starting from zero in the given currency"""
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total
