from decimal import Decimal

import pytest

from src.shared.utils.money import amounts_match, format_kes, round_money


class TestRoundMoney:
    """Tests for round_money function."""

    def test_round_half_up(self):
        """Test ROUND_HALF_UP behavior."""
        assert round_money(10.125) == Decimal("10.13")
        assert round_money(10.124) == Decimal("10.12")
        assert round_money(10.115) == Decimal("10.12")  # banker's rounding edge case
        assert round_money(10.145) == Decimal("10.15")

    def test_from_decimal(self):
        """Test rounding from Decimal input."""
        assert round_money(Decimal("10.125")) == Decimal("10.13")
        assert round_money(Decimal("99.999")) == Decimal("100.00")

    def test_from_string(self):
        """Test rounding from string input."""
        assert round_money("10.125") == Decimal("10.13")
        assert round_money("0.001") == Decimal("0.00")

    def test_from_int(self):
        """Test rounding from int input."""
        assert round_money(100) == Decimal("100.00")
        assert round_money(0) == Decimal("0.00")

    def test_negative_numbers(self):
        """Test rounding negative numbers."""
        assert round_money(-10.125) == Decimal("-10.12")  # rounds toward zero
        assert round_money(-10.126) == Decimal("-10.13")

    def test_precision(self):
        """Test that result always has 2 decimal places."""
        result = round_money(10)
        assert str(result) == "10.00"

        result = round_money(10.1)
        assert str(result) == "10.10"


class TestAmountsMatch:
    def test_within_one_cent(self):
        assert amounts_match(Decimal("29999.99"), Decimal("30000.00"))
        assert amounts_match("30000.01", 30000)

    def test_outside_tolerance(self):
        assert not amounts_match(Decimal("29999.98"), Decimal("30000.00"))
        assert not amounts_match(25000, 30000)


class TestFormatKes:
    def test_whole_amount(self):
        assert format_kes(Decimal("10000.00")) == "KES 10,000"

    def test_cents_are_kept(self):
        assert format_kes("1234.5") == "KES 1,234.50"
