"""Tests for exact unit and quantity conversions."""

import pytest

from envoy.units import format_ether, from_quantity, parse_base_units, parse_ether, parse_units, to_quantity


class TestUnits:
    def test_parse_ether_exact(self):
        assert parse_ether("0.04") == 40_000_000_000_000_000
        assert parse_ether("1000") == 10**21

    def test_parse_rounds_down(self):
        assert parse_units("1.9999999", 6) == 1_999_999

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            parse_ether(0.1)

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            parse_ether("-1")

    def test_format_trims_zeros(self):
        assert format_ether(parse_ether("0.5")) == "0.5"
        assert format_ether(10**18) == "1"


class TestQuantities:
    @pytest.mark.parametrize("raw,expected", [("0x0", 0), ("0x", 0), (None, 0), ("0x7a120", 500_000), (12, 12), ("42", 42)])
    def test_from_quantity(self, raw, expected):
        assert from_quantity(raw) == expected

    def test_to_quantity(self):
        assert to_quantity(500_000) == "0x7a120"
        with pytest.raises(ValueError):
            to_quantity(-1)

    def test_base_units_accepts_decimal_strings(self):
        assert parse_base_units(str(2**200), "amount") == 2**200
        with pytest.raises(ValueError):
            parse_base_units("1.5", "amount")
