"""Fixed-point money helpers.

Amounts are ``Decimal`` values paired with an ISO 4217 code. Floats are never
accepted: a float that reaches this module is a programming error upstream.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Decimal, InvalidOperation
from fractions import Fraction
from typing import Any

from royalties.errors import ValidationError

DEFAULT_EXPONENT = 2

CURRENCY_EXPONENTS: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "JPY": 0,
    "CAD": 2,
    "AUD": 2,
    "SEK": 2,
    "NOK": 2,
    "DKK": 2,
    "CHF": 2,
    "BRL": 2,
    "MXN": 2,
    "INR": 2,
    "KRW": 0,
    "CNY": 2,
    "PLN": 2,
    "TRY": 2,
    "ZAR": 2,
    "NZD": 2,
    "BHD": 3,
    "KWD": 3,
}


def normalize_currency(code: Any) -> str:
    if not isinstance(code, str):
        raise ValidationError("Currency code must be a string", currency=code)
    normalized = code.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError("Currency code must be three letters", currency=code)
    return normalized


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)


def minor_unit(currency: str) -> Decimal:
    return Decimal(1).scaleb(-currency_exponent(currency))


def parse_amount(value: Any, *, field: str = "amount") -> Decimal:
    """Coerce ``value`` into a finite ``Decimal`` without going through float."""

    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(f"{field} must be a decimal value, not {type(value).__name__}", value=value)
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValidationError(f"{field} is not a valid decimal", value=value) from exc
    else:
        raise ValidationError(f"{field} has unsupported type {type(value).__name__}", value=value)
    if not amount.is_finite():
        raise ValidationError(f"{field} must be finite", value=value)
    return amount


def quantize_money(amount: Decimal, currency: str, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    return amount.quantize(minor_unit(currency), rounding=rounding)


def round_down_to(amount: Decimal, increment: Decimal) -> Decimal:
    """Largest multiple of ``increment`` not exceeding ``amount``."""

    if increment <= 0:
        raise ValidationError("Rounding increment must be positive", increment=increment)
    units = (amount / increment).to_integral_value(rounding=ROUND_DOWN)
    return units * increment


def require_minor_precision(amount: Decimal, currency: str) -> Decimal:
    quantized = quantize_money(amount, currency)
    if quantized != amount:
        raise ValidationError(
            "Amount has more precision than the currency minor unit",
            amount=amount,
            currency=currency,
        )
    return quantized


def to_minor_units(amount: Decimal, currency: str) -> int:
    return int(require_minor_precision(amount, currency).scaleb(currency_exponent(currency)))


def from_minor_units(units: int, currency: str) -> Decimal:
    return quantize_money(Decimal(units).scaleb(-currency_exponent(currency)), currency)


def round_half_even(value: Fraction) -> int:
    """Round an exact rational to the nearest integer, ties to even."""

    return round(value)


__all__ = [
    "CURRENCY_EXPONENTS",
    "currency_exponent",
    "from_minor_units",
    "minor_unit",
    "normalize_currency",
    "parse_amount",
    "quantize_money",
    "require_minor_precision",
    "round_down_to",
    "round_half_even",
    "to_minor_units",
]
