"""
Decimal Amount Module

Fixed-scale monetary amounts for the game currencies. An Amount is an
integer count of minimum units (scale 4, so 1 unit = 0.0001). NEVER uses
float for monetary values.
"""

from decimal import Decimal, ROUND_DOWN
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import re

from .errors import InvalidAmount, InvalidCurrency


SCALE = 4
UNITS_PER_WHOLE = 10 ** SCALE
# Longest whole part accepted, well above any configured maximum
MAX_WHOLE_DIGITS = 18

_UNSIGNED_LITERAL = re.compile(r"^[0-9]+(\.[0-9]+)?$")
_SIGNED_LITERAL = re.compile(r"^-?[0-9]+(\.[0-9]+)?$")


class Currency(Enum):
    """Game currencies"""
    EURO = "EURO"
    GOLD = "GOLD"
    RON = "RON"

    @property
    def field_suffix(self) -> str:
        """Suffix used by flat persisted field names (balance_euro, ...)"""
        return self.value.lower()

    @classmethod
    def from_code(cls, code: str) -> "Currency":
        """Resolve a currency code case-insensitively"""
        if not isinstance(code, str) or not code.strip():
            raise InvalidCurrency("Currency is required")
        try:
            return cls(code.strip().upper())
        except ValueError:
            valid = ", ".join(c.value for c in cls)
            raise InvalidCurrency(f"Invalid currency: {code}. Valid currencies: {valid}")


class TaxCategory(Enum):
    """Tax categories withheld by the treasury"""
    TRANSFER = "transfer"  # P2P transfers
    MARKET = "market"      # Market purchases and sales
    WORK = "work"          # Salary/income


@dataclass(frozen=True, order=True)
class Amount:
    """
    Immutable monetary amount stored as integer minimum units.
    All arithmetic stays in integers; multiplication by a rate truncates
    toward zero.
    """
    units: int

    def __post_init__(self):
        if isinstance(self.units, bool) or not isinstance(self.units, int):
            raise TypeError(f"Amount units must be int, got {type(self.units).__name__}")

    @classmethod
    def zero(cls) -> "Amount":
        return cls(0)

    @classmethod
    def parse(
        cls,
        value: str,
        signed: bool = False,
        max_magnitude: Optional["Amount"] = None
    ) -> "Amount":
        """
        Parse a plain decimal literal such as "12.5" or "0.0001"

        Args:
            value: Decimal literal, no exponent and no thousands separators
            signed: Allow a leading minus sign (for deltas)
            max_magnitude: Reject literals whose absolute value exceeds this

        Returns:
            Parsed Amount

        Raises:
            InvalidAmount: If the literal is malformed, has more than 4
                fractional digits or exceeds max_magnitude
        """
        if not isinstance(value, str):
            raise InvalidAmount("Amount must be a string for precision safety")

        text = value.strip()
        pattern = _SIGNED_LITERAL if signed else _UNSIGNED_LITERAL
        if not pattern.match(text):
            if not signed and text.startswith("-"):
                raise InvalidAmount("Amount cannot be negative")
            raise InvalidAmount(f"Invalid amount format: {value!r}")

        negative = text.startswith("-")
        digits = text.lstrip("-")
        whole, _, fraction = digits.partition(".")
        if len(fraction) > SCALE:
            raise InvalidAmount(f"Maximum {SCALE} decimal places allowed: {value!r}")
        whole = whole.lstrip("0") or "0"
        if len(whole) > MAX_WHOLE_DIGITS:
            raise InvalidAmount(f"Amount has more than {MAX_WHOLE_DIGITS} integer digits: {text[:24]}...")

        units = int(whole) * UNITS_PER_WHOLE + int(fraction.ljust(SCALE, "0") or "0")
        amount = cls(-units if negative else units)

        if max_magnitude is not None and abs(amount) > max_magnitude:
            raise InvalidAmount(
                f"Amount exceeds maximum allowed value of {max_magnitude}",
                {"max_allowed": str(max_magnitude)}
            )
        return amount

    def apply_rate(self, rate: Decimal) -> "Amount":
        """Multiply by a rate, truncating toward zero at scale 4"""
        if not isinstance(rate, Decimal):
            rate = Decimal(str(rate))
        product = (Decimal(self.units) * rate).to_integral_value(rounding=ROUND_DOWN)
        return Amount(int(product))

    def __add__(self, other: "Amount") -> "Amount":
        if not isinstance(other, Amount):
            return NotImplemented
        return Amount(self.units + other.units)

    def __sub__(self, other: "Amount") -> "Amount":
        if not isinstance(other, Amount):
            return NotImplemented
        return Amount(self.units - other.units)

    def __neg__(self) -> "Amount":
        return Amount(-self.units)

    def __abs__(self) -> "Amount":
        return Amount(abs(self.units))

    def is_zero(self) -> bool:
        return self.units == 0

    def is_positive(self) -> bool:
        return self.units > 0

    def is_negative(self) -> bool:
        return self.units < 0

    def __str__(self) -> str:
        whole, fraction = divmod(abs(self.units), UNITS_PER_WHOLE)
        sign = "-" if self.units < 0 else ""
        return f"{sign}{whole}.{fraction:0{SCALE}d}"

    def __repr__(self) -> str:
        return f"Amount('{self}')"


@dataclass(frozen=True)
class TaxSplit:
    """Gross amount split into withheld tax and net amount"""
    gross: Amount
    tax: Amount
    net: Amount
    rate: Decimal


def split_tax(gross: Amount, rate: Decimal) -> TaxSplit:
    """
    Split a gross amount into tax and net

    tax = floor(gross * rate) at scale 4 and net = gross - tax, so
    net + tax == gross exactly.
    """
    if not isinstance(rate, Decimal):
        rate = Decimal(str(rate))
    if rate < 0 or rate > 1:
        raise ValueError(f"Tax rate must be between 0 and 1, got {rate}")
    tax = gross.apply_rate(rate)
    return TaxSplit(gross=gross, tax=tax, net=gross - tax, rate=rate)

