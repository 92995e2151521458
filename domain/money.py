"""
Domain: money arithmetic.

Amounts are always `Decimal`. Rounding to a currency's minor unit uses
ROUND_HALF_EVEN so that commission totals do not drift upward over many
conversions.
"""

from __future__ import annotations

from decimal import ROUND_HALF_EVEN, Decimal

# ISO-4217 minor unit exponents for currencies that differ from the default of 2.
_MINOR_UNIT_EXPONENTS: dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "BHD": 3,
}

DEFAULT_CURRENCY: str = "USD"


def minor_unit_exponent(currency: str) -> int:
    """Number of decimal places used by `currency` (USD -> 2, JPY -> 0)."""

    return _MINOR_UNIT_EXPONENTS.get(currency.upper(), 2)


def quantize(amount: Decimal, currency: str) -> Decimal:
    """Round `amount` half-to-even to the currency's minor unit."""

    exponent = minor_unit_exponent(currency)
    return amount.quantize(Decimal(1).scaleb(-exponent), rounding=ROUND_HALF_EVEN)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to integer minor units (e.g. cents)."""

    return int(quantize(amount, currency).scaleb(minor_unit_exponent(currency)))


def from_minor_units(value: int, currency: str) -> Decimal:
    """Convert integer minor units (e.g. cents) to a major-unit Decimal."""

    return quantize(Decimal(value).scaleb(-minor_unit_exponent(currency)), currency)


def parse_amount(value: object) -> Decimal:
    """
    Parse a stored or provider-supplied amount into a Decimal.

    Floats are routed through `str` so that 19.99 stays 19.99.
    """

    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise TypeError("Boolean is not a valid amount")
    if isinstance(value, (int, float, str)):
        return Decimal(str(value))
    raise TypeError(f"Unsupported amount type: {type(value)!r}")
