"""Decimal helpers for currency amounts.

All amounts are ``Decimal`` and are rounded half-up to the currency's minor
unit (ISO 4217 exponent).
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

# Currencies whose minor unit is not 2 decimal places
_MINOR_UNIT_EXCEPTIONS: dict[str, int] = {
    "BHD": 3,
    "CLP": 0,
    "IQD": 3,
    "ISK": 0,
    "JOD": 3,
    "JPY": 0,
    "KRW": 0,
    "KWD": 3,
    "OMR": 3,
    "TND": 3,
    "UGX": 0,
    "VND": 0,
}

# Currencies that platforms report in minor units (cents, paise)
ZERO_DECIMAL_CURRENCIES = frozenset(c for c, e in _MINOR_UNIT_EXCEPTIONS.items() if e == 0)


def minor_unit_exponent(currency: str | None) -> int:
    """Number of decimal places for a currency (default 2)."""
    if not currency:
        return 2
    return _MINOR_UNIT_EXCEPTIONS.get(currency.upper(), 2)


def minor_unit(currency: str | None) -> Decimal:
    """Smallest representable amount for a currency, e.g. Decimal('0.01')."""
    return Decimal(1).scaleb(-minor_unit_exponent(currency))


def quantize(amount: Decimal, currency: str | None) -> Decimal:
    """Round an amount half-up to the currency's minor unit."""
    return amount.quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def within_tolerance(a: Decimal, b: Decimal, currency: str | None) -> bool:
    """True when two amounts differ by at most one minor unit."""
    return abs(a - b) <= minor_unit(currency)


def to_decimal(value: Any) -> Decimal | None:
    """Parse a number from JSON-ish input.

    Accepts ints, floats, Decimals and strings with thousands separators or a
    leading currency symbol. Floats go through ``str`` so 0.1 stays 0.1.

    Returns:
        Decimal value, or None for empty input

    Raises:
        ValueError: If the value is not a number
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not an amount: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int | float):
        return Decimal(str(value))
    if isinstance(value, str):
        cleaned = value.strip().lstrip("$€£₹¥").replace(",", "").replace(" ", "")
        try:
            return Decimal(cleaned)
        except InvalidOperation as e:
            raise ValueError(f"Not an amount: {value!r}") from e
    raise ValueError(f"Not an amount: {value!r}")


def from_minor_units(value: Any, currency: str | None) -> Decimal | None:
    """Convert an integer amount in minor units (cents, paise) to major units."""
    amount = to_decimal(value)
    if amount is None:
        return None
    return quantize(amount.scaleb(-minor_unit_exponent(currency)), currency)
