"""
Test suite for the decimal amount module

Tests parsing, fixed-scale arithmetic, tax splitting and formatting. No
float ever touches a monetary value.
"""

import pytest
from decimal import Decimal

from game_economy.amounts import (
    Amount, Currency, TaxCategory, split_tax, UNITS_PER_WHOLE
)
from game_economy.errors import InvalidAmount, InvalidCurrency


class TestAmountParsing:
    """Test Amount.parse"""

    def test_parse_plain_literals(self):
        assert Amount.parse("100").units == 100 * UNITS_PER_WHOLE
        assert Amount.parse("12.5").units == 125000
        assert Amount.parse("0.0001").units == 1
        assert Amount.parse("999999999.9999").units == 9999999999999

    def test_str_is_fixed_point_with_four_digits(self):
        assert str(Amount.parse("12.5")) == "12.5000"
        assert str(Amount.parse("0")) == "0.0000"
        assert str(Amount.parse("-3.25", signed=True)) == "-3.2500"

    def test_parse_of_str_returns_same_amount(self):
        for text in ["0", "1", "0.0001", "123.4567", "999999999.9999"]:
            amount = Amount.parse(text)
            assert Amount.parse(str(amount)) == amount

    def test_too_many_decimal_places_rejected(self):
        with pytest.raises(InvalidAmount) as exc_info:
            Amount.parse("1.00001")
        assert exc_info.value.code == "INVALID_AMOUNT"

    @pytest.mark.parametrize("text", ["", "abc", "1e5", "1,000", " 1 2", ".5", "5.", "NaN", "Infinity", "+1"])
    def test_malformed_literals_rejected(self, text):
        with pytest.raises(InvalidAmount):
            Amount.parse(text)

    def test_negative_rejected_unless_signed(self):
        with pytest.raises(InvalidAmount, match="negative"):
            Amount.parse("-1")
        assert Amount.parse("-1", signed=True).units == -UNITS_PER_WHOLE

    def test_non_string_rejected(self):
        with pytest.raises(InvalidAmount):
            Amount.parse(10.5)
        with pytest.raises(InvalidAmount):
            Amount.parse(None)

    def test_max_magnitude(self):
        limit = Amount.parse("999999999.9999")
        assert Amount.parse("999999999.9999", max_magnitude=limit) == limit
        with pytest.raises(InvalidAmount) as exc_info:
            Amount.parse("1000000000", max_magnitude=limit)
        assert exc_info.value.details["max_allowed"] == "999999999.9999"

    def test_units_must_be_int(self):
        with pytest.raises(TypeError):
            Amount(1.5)
        with pytest.raises(TypeError):
            Amount(True)


class TestAmountArithmetic:
    """Test integer arithmetic and rate application"""

    def test_add_subtract_negate(self):
        a = Amount.parse("10.5")
        b = Amount.parse("0.25")
        assert a + b == Amount.parse("10.75")
        assert a - b == Amount.parse("10.25")
        assert -b == Amount.parse("-0.25", signed=True)
        assert abs(-b) == b

    def test_comparisons(self):
        assert Amount.parse("1") < Amount.parse("1.0001")
        assert Amount.parse("2") >= Amount.parse("2.0000")
        assert Amount.zero().is_zero()
        assert Amount.parse("0.0001").is_positive()
        assert Amount.parse("-0.0001", signed=True).is_negative()

    def test_apply_rate_truncates_toward_zero(self):
        assert Amount.parse("0.0019").apply_rate(Decimal("0.05")) == Amount.zero()
        assert Amount.parse("33.3333").apply_rate(Decimal("0.15")) == Amount.parse("4.9999")
        assert Amount.parse("-1.0001", signed=True).apply_rate(Decimal("0.5")) == Amount(-5000)

    def test_overlong_literals_rejected(self):
        with pytest.raises(InvalidAmount):
            Amount.parse("9" * 5000, max_magnitude=Amount.parse("1000"))
        with pytest.raises(InvalidAmount):
            Amount.parse("1" * 19)
        assert Amount.parse("0" * 5000 + "1.5") == Amount.parse("1.5")
        assert Amount.parse("9" * 18) == Amount(int("9" * 18) * UNITS_PER_WHOLE)


class TestTaxSplit:
    """Test split_tax"""

    def test_transfer_tax_scenario(self):
        split = split_tax(Amount.parse("10"), Decimal("0.05"))
        assert split.tax == Amount.parse("0.5")
        assert split.net == Amount.parse("9.5")
        assert split.gross == Amount.parse("10")

    def test_net_plus_tax_equals_gross(self):
        for text in ["0.0001", "0.0019", "1.2345", "77.7777", "999999.9999"]:
            for rate in ["0", "0.05", "0.10", "0.15", "1"]:
                split = split_tax(Amount.parse(text), Decimal(rate))
                assert split.net + split.tax == split.gross
                assert not split.tax.is_negative()

    def test_rate_out_of_range(self):
        with pytest.raises(ValueError):
            split_tax(Amount.parse("1"), Decimal("1.5"))
        with pytest.raises(ValueError):
            split_tax(Amount.parse("1"), Decimal("-0.1"))


class TestCurrency:
    """Test currency codes and tax categories"""

    def test_from_code_is_case_insensitive(self):
        assert Currency.from_code("euro") is Currency.EURO
        assert Currency.from_code(" Gold ") is Currency.GOLD
        assert Currency.from_code("RON") is Currency.RON

    def test_unknown_currency(self):
        with pytest.raises(InvalidCurrency) as exc_info:
            Currency.from_code("USD")
        assert exc_info.value.code == "INVALID_CURRENCY"
        with pytest.raises(InvalidCurrency):
            Currency.from_code("")

    def test_field_suffix(self):
        assert Currency.EURO.field_suffix == "euro"

    def test_tax_categories(self):
        assert {c.value for c in TaxCategory} == {"transfer", "market", "work"}