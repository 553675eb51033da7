"""
Unit tests for core/risk_gate.py.

Tests verify:
- Limits load from config; a missing config file locks the gate down
- can_open() checks run in order and report the first failing reason
- Position sizing clamps to [min_trade_size, max_position_size]
- Daily loss accounting, reset and the derived metrics (win rate, Sharpe)
- Reduction advice and position health classification
- Heat, daily loss and drawdown sweeps flip from allowed to rejected once
"""

from __future__ import annotations

import math
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_position
from core.risk_gate import LOCKDOWN_LIMITS, RiskGate, load_risk_limits, sats_to_quote
from shared.types import PositionHealth, PositionSide, TradeOutcome

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _d(v) -> Decimal:
    return Decimal(str(v))


def _make_gate(mock_config_loader, limits=None) -> RiskGate:
    with (
        patch("core.risk_gate.get_config", return_value=mock_config_loader),
        patch("core.risk_gate.setup_module_logger", return_value=MagicMock()),
    ):
        return RiskGate(limits)


def _outcome(pnl, quantity="100") -> TradeOutcome:
    return TradeOutcome(pnl=_d(pnl), quantity=_d(quantity), timestamp=1_700_000_000.0)


@pytest.fixture
def gate(mock_config_loader):
    return _make_gate(mock_config_loader)


def _open(gate, size="50", leverage="2", balance="1000", positions=()):
    return gate.can_open(
        PositionSide.LONG,
        _d(size),
        _d(leverage),
        balance=_d(balance),
        open_positions=list(positions),
    )


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------


class TestLimits:
    def test_sats_to_quote(self):
        assert sats_to_quote(100_000, _d(102000)) == _d(102)

    def test_loads_from_config(self, mock_config_loader):
        with patch("core.risk_gate.get_config", return_value=mock_config_loader):
            limits = load_risk_limits()
        assert limits.max_positions == 3
        assert limits.max_position_size == _d(100)
        assert limits.max_leverage == _d(2)
        assert limits.max_daily_loss == _d(50)
        assert limits.max_portfolio_heat_pct == _d(6)
        assert limits.stop_loss_pct == _d(2)

    def test_missing_config_locks_down(self, mock_config_loader):
        mock_config_loader.get_trading_config.return_value = {}
        with patch("core.risk_gate.get_config", return_value=mock_config_loader):
            assert load_risk_limits() == LOCKDOWN_LIMITS

    def test_lockdown_rejects_everything(self, mock_config_loader):
        gate = _make_gate(mock_config_loader, LOCKDOWN_LIMITS)
        check = _open(gate, size="1", leverage="1")
        assert not check.allowed
        assert check.reason.startswith("Position limit reached")


# ---------------------------------------------------------------------------
# can_open ordering
# ---------------------------------------------------------------------------


class TestCanOpen:
    def test_all_checks_pass(self, gate):
        check = _open(gate)
        assert check.allowed
        assert check.reason == "All risk checks passed"

    def test_position_limit(self, gate):
        positions = [make_position(f"p{i}", quantity="10") for i in range(3)]
        check = _open(gate, positions=positions)
        assert not check.allowed
        assert check.reason == "Position limit reached: 3/3"

    def test_size_above_max(self, gate):
        check = _open(gate, size="150")
        assert "exceeds max $100" in check.reason

    def test_non_positive_size(self, gate):
        check = _open(gate, size="0")
        assert check.reason.startswith("Invalid position size")

    def test_leverage_above_max(self, gate):
        check = _open(gate, leverage="3")
        assert check.reason == "Leverage 3x exceeds max 2x"

    def test_size_checked_before_leverage(self, gate):
        check = _open(gate, size="150", leverage="3")
        assert "Position size" in check.reason

    def test_daily_loss_limit(self, gate):
        gate.record_outcome(_outcome("-50"))
        check = _open(gate)
        assert check.reason.startswith("Daily loss limit reached")

    def test_insufficient_balance(self, gate):
        # required = 50 / 2 + 50 * 2% = 26
        check = _open(gate, balance="25")
        assert check.reason == "Insufficient balance: $25.00 < required $26.00"

    def test_drawdown_from_high_water_mark(self, gate):
        gate.update_balance(_d(1000))
        check = _open(gate, balance="850")
        assert check.reason.startswith("Max drawdown exceeded: 15.00%")

    def test_drawdown_within_limit(self, gate):
        gate.update_balance(_d(1000))
        assert _open(gate, balance="950").allowed

    def test_portfolio_heat(self, gate):
        # 2 * 1500 * 2% = 60 at risk -> 6% + 2% > 6%
        positions = [make_position(f"p{i}", quantity="1500") for i in range(2)]
        check = _open(gate, positions=positions)
        assert check.reason.startswith("Portfolio heat limit")

    def test_heat_at_limit_passes(self, gate):
        # 2 * 1000 * 2% = 40 -> 4% + 2% == 6%
        positions = [make_position(f"p{i}", quantity="1000") for i in range(2)]
        assert _open(gate, positions=positions).allowed


# ---------------------------------------------------------------------------
# Sizing
# ---------------------------------------------------------------------------


class TestSizing:
    def test_risk_fraction_of_balance(self, gate):
        size = gate.size_for(_d(1000), price=_d(100000))
        assert size.quote_amount == _d(20)
        assert size.base_quantity == _d("0.0002")

    def test_clamped_to_minimum(self, gate):
        assert gate.size_for(_d(10)).quote_amount == _d(1)

    def test_clamped_to_maximum(self, gate):
        assert gate.size_for(_d(10000)).quote_amount == _d(100)

    def test_explicit_risk_pct(self, gate):
        assert gate.size_for(_d(1000), risk_pct=_d(5)).quote_amount == _d(50)

    def test_no_price_gives_zero_base(self, gate):
        assert gate.size_for(_d(1000)).base_quantity == 0
        assert gate.size_for(_d(1000), price=_d(0)).base_quantity == 0

    def test_stop_loss_price(self, gate):
        assert gate.stop_loss_price(_d(100000), PositionSide.LONG) == _d(98000)
        assert gate.stop_loss_price(_d(100000), PositionSide.SHORT) == _d(102000)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class TestOutcomes:
    def test_daily_loss_counts_only_losses(self, gate):
        gate.record_outcome(_outcome("-10"))
        gate.record_outcome(_outcome("25"))
        gate.record_outcome(_outcome("-5"))
        assert gate.daily_loss == _d(-15)

    def test_reset_daily_limits(self, gate):
        gate.record_outcome(_outcome("-10"))
        gate.reset_daily_limits()
        assert gate.daily_loss == 0
        assert gate.daily_limits()["daily_trades"] == 0

    def test_outcome_moves_balance_and_peak(self, gate):
        gate.update_balance(_d(1000))
        gate.record_outcome(_outcome("10"))
        assert gate.peak_balance == _d(1010)

    def test_daily_limits_snapshot(self, gate):
        gate.record_outcome(_outcome("-20"))
        limits = gate.daily_limits()
        assert limits["remaining"] == _d(30)
        assert limits["utilization_pct"] == _d(40)
        assert limits["daily_trades"] == 1

    def test_win_rate_and_sharpe(self, gate):
        # returns 0.1 and -0.05: mean 0.025, population std 0.075
        gate.record_outcome(_outcome("10"))
        gate.record_outcome(_outcome("-5"))
        metrics = gate.metrics()
        assert metrics["win_rate"] == _d(50)
        assert metrics["avg_win"] == _d(10)
        assert metrics["avg_loss"] == _d(-5)
        assert float(metrics["sharpe_ratio"]) == pytest.approx(math.sqrt(252) / 3, rel=1e-6)

    def test_sharpe_needs_two_trades(self, gate):
        gate.record_outcome(_outcome("10"))
        assert gate.metrics()["sharpe_ratio"] == 0

    def test_recent_losses(self, gate):
        for pnl in ["-1", "2", "-3", "-4"]:
            gate.record_outcome(_outcome(pnl))
        assert gate.recent_losses(3) == 2
        assert gate.recent_losses(0) == 0
        assert gate.metrics()["recent_losses"] == 3


# ---------------------------------------------------------------------------
# Monotonicity toward the limits
# ---------------------------------------------------------------------------


def _flips_once(results: list[bool]) -> bool:
    """Allowed for a prefix, rejected afterwards; never back to allowed."""
    return results[0] and not results[-1] and results == sorted(results, reverse=True)


class TestLimitMonotonicity:
    def test_heat_sweep(self, gate):
        # single position: heat = q * 2% / 1000, rejected once q > 2000
        results = [
            _open(gate, positions=[make_position(quantity=str(q))]).allowed
            for q in range(0, 4001, 250)
        ]
        assert _flips_once(results)
        assert results.index(False) == 9

    def test_daily_loss_sweep(self, gate):
        results = []
        for _ in range(15):
            results.append(_open(gate).allowed)
            gate.record_outcome(_outcome("-5"))
        assert _flips_once(results)
        # rejected from the tenth loss of $5
        assert results.index(False) == 10

    def test_drawdown_sweep(self, gate):
        gate.update_balance(_d(1000))
        results = [_open(gate, balance=str(b)).allowed for b in range(1000, 790, -10)]
        assert _flips_once(results)
        # 900 is exactly 10%, 890 is the first balance past the limit
        assert results.index(False) == 11

    def test_reasons_match_the_limit_hit(self, gate):
        gate.update_balance(_d(1000))
        assert _open(gate, balance="880").reason.startswith("Max drawdown exceeded")
        heavy = [make_position(quantity="2500")]
        assert _open(gate, positions=heavy).reason.startswith("Portfolio heat limit")
        for _ in range(10):
            gate.record_outcome(_outcome("-5"))
        assert _open(gate).reason.startswith("Daily loss limit reached")


# ---------------------------------------------------------------------------
# Position advice
# ---------------------------------------------------------------------------


class TestPositionAdvice:
    def test_partial_profit(self, gate):
        advice = gate.should_reduce(make_position(), _d(104000))
        assert advice.reduce
        assert advice.percentage == 50

    def test_daily_loss_near_limit(self, gate):
        gate.record_outcome(_outcome("-45"))
        advice = gate.should_reduce(make_position(), _d(100000))
        assert advice.reduce
        assert advice.percentage == 75

    def test_no_reduction(self, gate):
        assert not gate.should_reduce(make_position(), _d(100500)).reduce

    @pytest.mark.parametrize(
        "side,price,expected",
        [
            (PositionSide.LONG, "98300", PositionHealth.CRITICAL),
            (PositionSide.LONG, "99000", PositionHealth.WARNING),
            (PositionSide.LONG, "100500", PositionHealth.HEALTHY),
            (PositionSide.LONG, "104000", PositionHealth.PROFITABLE),
            (PositionSide.SHORT, "104000", PositionHealth.CRITICAL),
            (PositionSide.SHORT, "96000", PositionHealth.PROFITABLE),
        ],
    )
    def test_health_classification(self, gate, side, price, expected):
        report = gate.position_health(make_position(side=side), _d(price))
        assert report.health is expected

    def test_health_report_fields(self, gate):
        position = make_position(opened_at=1_700_000_000.0)
        report = gate.position_health(position, _d(100000), now=1_700_000_060.0)
        assert report.pnl_pct == 0
        assert report.time_open_seconds == 60.0
        # default stop at 98000
        assert report.stop_loss_distance_pct == _d(2)

    def test_health_uses_explicit_stop(self, gate):
        position = make_position(stop_loss="99000")
        report = gate.position_health(position, _d(100000))
        assert report.stop_loss_distance_pct == _d(1)
