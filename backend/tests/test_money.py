from __future__ import annotations

from decimal import Decimal
from fractions import Fraction

import pytest

from royalties.domain.money import (
    from_minor_units,
    minor_unit,
    normalize_currency,
    parse_amount,
    require_minor_precision,
    round_down_to,
    round_half_even,
    to_minor_units,
)
from royalties.errors import ValidationError


def test_minor_units_follow_currency_exponent():
    assert minor_unit("USD") == Decimal("0.01")
    assert minor_unit("JPY") == Decimal("1")
    assert to_minor_units(Decimal("12.34"), "USD") == 1234
    assert from_minor_units(1234, "USD") == Decimal("12.34")
    assert from_minor_units(-5, "BHD") == Decimal("-0.005")


def test_parse_amount_rejects_floats_and_garbage():
    assert parse_amount("10.50") == Decimal("10.50")
    assert parse_amount(3) == Decimal("3")
    with pytest.raises(ValidationError):
        parse_amount(10.5)
    with pytest.raises(ValidationError):
        parse_amount("ten")
    with pytest.raises(ValidationError):
        parse_amount("NaN")


def test_require_minor_precision_rejects_sub_cent_amounts():
    with pytest.raises(ValidationError):
        require_minor_precision(Decimal("1.005"), "USD")
    assert require_minor_precision(Decimal("1.5"), "USD") == Decimal("1.50")


def test_currency_codes_are_normalized():
    assert normalize_currency(" eur ") == "EUR"
    with pytest.raises(ValidationError):
        normalize_currency("EURO")


def test_rounding_helpers():
    assert round_half_even(Fraction(5, 2)) == 2
    assert round_half_even(Fraction(7, 2)) == 4
    assert round_down_to(Decimal("123.47"), Decimal("0.05")) == Decimal("123.45")
    assert round_down_to(Decimal("999"), Decimal("100")) == Decimal("900")
