"""
Tests for nanocharge.units.

Tests cover:
- Exact raw to display conversion
- Display to raw parsing and rejection of bad input
"""
from __future__ import annotations

from decimal import Decimal

import pytest

from nanocharge.units import RAW_PER_XNO, display_to_raw, raw_to_display


class TestRawToDisplay:
    """Tests for raw_to_display."""

    def test_whole_units(self):
        """Should render whole XNO without a decimal point."""
        assert raw_to_display(RAW_PER_XNO) == "1"
        assert raw_to_display(0) == "0"

    def test_trims_trailing_zeros(self):
        """Should trim trailing fractional zeros."""
        assert raw_to_display(10**29) == "0.1"
        assert raw_to_display(10**24) == "0.000001"

    def test_smallest_unit(self):
        """Should render a single raw exactly."""
        assert raw_to_display(1) == "0." + "0" * 29 + "1"

    def test_large_balance_is_exact(self):
        """Should not lose precision on 128-bit balances."""
        raw = 2**128 - 1
        whole, frac = raw_to_display(raw).split(".")
        assert int(whole) * RAW_PER_XNO + int(frac.ljust(30, "0")) == raw

    def test_accepts_decimal_string(self):
        """Should accept raw amounts as decimal strings."""
        assert raw_to_display("1000000") == "0.000000000000000000000001"

    def test_rejects_negative(self):
        """Should reject negative amounts."""
        with pytest.raises(ValueError):
            raw_to_display(-1)


class TestDisplayToRaw:
    """Tests for display_to_raw."""

    def test_parses_fraction(self):
        """Should parse fractional XNO exactly."""
        assert display_to_raw("0.1") == 10**29
        assert display_to_raw("1.5") == 15 * 10**29

    def test_accepts_int_and_decimal(self):
        """Should accept ints and Decimals."""
        assert display_to_raw(2) == 2 * RAW_PER_XNO
        assert display_to_raw(Decimal("0.000001")) == 10**24

    def test_thirty_decimal_places(self):
        """Should accept exactly thirty decimal places."""
        assert display_to_raw("0." + "0" * 29 + "1") == 1

    def test_rejects_too_many_decimals(self):
        """Should reject amounts finer than one raw."""
        with pytest.raises(ValueError):
            display_to_raw("0." + "0" * 30 + "1")

    @pytest.mark.parametrize("bad", ["abc", "", "NaN", "Infinity", "-1"])
    def test_rejects_invalid(self, bad):
        """Should reject non-numeric, non-finite and negative input."""
        with pytest.raises(ValueError):
            display_to_raw(bad)

    def test_matches_raw_to_display(self):
        """Should invert raw_to_display."""
        raw = 123456789 * 10**20 + 42
        assert display_to_raw(raw_to_display(raw)) == raw
