"""
Currency and Money Module

ISO 4217 currencies and an immutable Decimal-backed Money type.
Wallet balances and offline amounts never pass through float.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Any

getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    USD = ("USD", 2)  # US Dollar
    GHS = ("GHS", 2)  # Ghanaian Cedi
    NGN = ("NGN", 2)  # Nigerian Naira
    KES = ("KES", 2)  # Kenyan Shilling
    EUR = ("EUR", 2)  # Euro
    GBP = ("GBP", 2)  # British Pound

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {code}")


@dataclass(frozen=True)
class Money:
    """
    Immutable money value rounded to its currency's precision.
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

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

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

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def to_decimal_string(self) -> str:
        """Plain decimal string as stored on wallets ("12.50")"""
        return f"{self.amount:.{self.currency.precision}f}"

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def parse_amount(value: Any) -> Decimal:
    """
    Convert a wire amount to Decimal.

    Accepts Decimal, int, str and float (floats go through str() so that
    0.1 stays 0.1). Rejects booleans, empty strings, NaN and infinities.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Invalid amount: {value!r}")

    if isinstance(value, Decimal):
        result = value
    else:
        text = str(value).strip()
        if not text:
            raise ValueError("Invalid amount: empty value")
        try:
            result = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return result
