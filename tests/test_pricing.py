"""Tests for price and P&L helpers."""

from __future__ import annotations

import pytest

from autotrade.pricing import (
    calculate_pnl,
    calculate_stop_price,
    calculate_take_profit_price,
    exit_triggered,
    protected_limit_price,
    slippage_band,
)


class TestPnl:
    def test_long_profit(self):
        assert calculate_pnl("LONG", 100, 110, 2) == pytest.approx(20)

    def test_short_profit(self):
        assert calculate_pnl("SHORT", 100, 90, 2) == pytest.approx(20)

    def test_short_loss(self):
        assert calculate_pnl("SHORT", 100, 105, 1) == pytest.approx(-5)


class TestStopAndTarget:
    def test_long(self):
        assert calculate_stop_price("LONG", 100, 0.03) == pytest.approx(97)
        assert calculate_take_profit_price("LONG", 100, 0.06) == pytest.approx(106)

    def test_short(self):
        assert calculate_stop_price("SHORT", 100, 0.03) == pytest.approx(103)
        assert calculate_take_profit_price("SHORT", 100, 0.06) == pytest.approx(94)


class TestSlippage:
    def test_band(self):
        low, high = slippage_band(100, 0.005)
        assert low == pytest.approx(99.5)
        assert high == pytest.approx(100.5)

    def test_protected_price_by_side(self):
        assert protected_limit_price("LONG", 100, 0.005) == pytest.approx(100.5)
        assert protected_limit_price("SHORT", 100, 0.005) == pytest.approx(99.5)


class TestExitTriggered:
    def test_long_stop(self):
        assert exit_triggered("LONG", 96, 97, 106) == "stop_loss"

    def test_long_target(self):
        assert exit_triggered("LONG", 107, 97, 106) == "take_profit"

    def test_short_stop(self):
        assert exit_triggered("SHORT", 104, 103, 94) == "stop_loss"

    def test_short_target(self):
        assert exit_triggered("SHORT", 93, 103, 94) == "take_profit"

    def test_inside_band(self):
        assert exit_triggered("LONG", 100, 97, 106) is None

    def test_no_levels(self):
        assert exit_triggered("LONG", 50, None, None) is None
