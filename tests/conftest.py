"""
Shared pytest configuration and fixtures for the BTC futures trading agent tests.

Provides standard config dicts, a patched ConfigLoader and small builders for
prices and positions.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from shared.types import Position, PositionSide, PriceSample

# ---------------------------------------------------------------------------
# Decimal helper
# ---------------------------------------------------------------------------


def _d(v) -> Decimal:
    """Shorthand Decimal factory."""
    return Decimal(str(v))


# ---------------------------------------------------------------------------
# Standard mock configs (can be overridden per test via fixture params)
# ---------------------------------------------------------------------------

STANDARD_TRADING_CONFIG = {
    "max_position_size": "100",
    "max_leverage": "2",
    "default_leverage": "2",
    "stop_loss_pct": "2",
    "position_limit": 3,
    "min_trade_size": "1",
}

STANDARD_RISK_CONFIG = {
    "max_daily_loss": "50",
    "max_drawdown_pct": "10",
    "risk_per_trade_pct": "2",
    "portfolio_heat_limit_pct": "6",
}

STANDARD_AGENT_CONFIG = {
    "dry_run": True,
    "decision_interval_seconds": 30,
    "exchange_timeout_seconds": 10,
    "max_tracking_failures": 3,
    "panic_timeout_seconds": 300,
    "event_queue_size": 100,
    "auto_start": False,
}

STANDARD_EXCHANGE_CONFIG = {
    "network": "testnet",
    "base_urls": {
        "mainnet": "https://api.lnmarkets.com",
        "testnet": "https://api.testnet4.lnmarkets.com",
    },
    "api_version": "v2",
    "min_margin_sats": 1000,
    "paper": {"starting_balance_sats": 100000, "fee_rate": "0.001"},
}

STANDARD_STRATEGY_CONFIG = {
    "default": "basic",
    "indicators": {
        "sma_short": 10,
        "sma_long": 30,
        "ema_fast": 9,
        "ema_slow": 21,
        "rsi_period": 14,
        "bollinger": {"period": 20, "k": "2"},
        "macd": {"fast": 12, "slow": 26, "signal": 9},
        "volatility_period": 20,
        "window": 50,
    },
    "basic": {
        "threshold": "0.1",
        "ma_gap_pct": "0.1",
        "max_volatility": "0.5",
        "recent_loss_limit": 3,
        "weights": {"ma_crossover": "0.4", "rsi": "0.3", "bollinger": "0.2", "trend": "0.1"},
    },
    "enhanced": {
        "threshold": "0.15",
        "min_samples": 30,
        "divergence": {"lookback": 10, "strength": "0.6"},
        "weights": {
            "macd_crossover": "0.3",
            "macd_zero_cross": "0.2",
            "macd_divergence": "0.4",
            "rsi_extreme": "0.25",
            "rsi_momentum": "0.15",
            "rsi_divergence": "0.35",
            "stoch_rsi": "0.2",
            "ema_crossover": "0.25",
            "bollinger_touch": "0.2",
            "bollinger_squeeze": "0.1",
            "confluence": "0.1",
        },
    },
}

STANDARD_DATA_SERVICE_CONFIG = {
    "coingecko": {
        "base_url": "https://api.coingecko.com/api/v3",
        "coin_id": "bitcoin",
        "vs_currency": "usd",
        "seed_days": 1,
    },
    "poll_interval_seconds": 90,
    "cache_ttl_seconds": 60,
    "request_timeout_seconds": 10,
    "synthetic_half_spread": "10",
    "max_backoff_multiplier": 8,
}


# ---------------------------------------------------------------------------
# Price series
# ---------------------------------------------------------------------------

# Equal short/long averages, RSI ~50, price inside the bands: no rule fires.
CHOP_PRICES = [100000 if i % 2 == 0 else 100100 for i in range(40)]

# 30 alternating samples then a steady climb to 102000:
# SMA10 = 101100, SMA30 = 100366.67 (gap 0.73%), RSI ~55, upper band ~102517,
# annualized volatility ~0.23 -> only the basic MA gap rule fires (0.4 * 0.365).
RISING_PRICES = [99000 if i % 2 == 0 else 101000 for i in range(30)] + [
    100000 + 200 * i for i in range(1, 11)
]

# Flat +-1% chop ending on a down step (RSI ~48.7), then a 2% climb: the first
# step up lifts RSI to ~51 and the climb ends near 55. Same averages and
# bands as RISING_PRICES at the last sample.
FLAT_THEN_RISE_PRICES = [99000 if i % 2 == 0 else 101000 for i in range(31)] + [
    100000 + 200 * i for i in range(1, 11)
]

# Steady decline of 20 per sample that flattens to 1 per sample for the last
# ten: RSI 0, MACD turning up from its trough while price makes fresh lows,
# price inside 1% of the lower band, both EMAs falling.
FLATTENING_DECLINE_PRICES = [100000 - 20 * i for i in range(40)] + [
    99220 - i for i in range(1, 11)
]


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_samples(prices: list, start: float = 1_700_000_000.0, step: float = 90.0):
    """PriceSamples at a fixed cadence with a 10-dollar synthetic spread."""
    return [
        PriceSample(
            price=_d(p),
            timestamp=start + i * step,
            bid=_d(p) - 10,
            ask=_d(p) + 10,
        )
        for i, p in enumerate(prices)
    ]


def make_position(
    position_id: str = "pos-1",
    side: PositionSide = PositionSide.LONG,
    quantity="100",
    entry_price="100000",
    leverage="2",
    margin: int = 50_000,
    opened_at: float = 1_700_000_000.0,
    stop_loss=None,
) -> Position:
    return Position(
        id=position_id,
        side=side,
        quantity=_d(quantity),
        entry_price=_d(entry_price),
        leverage=_d(leverage),
        margin=margin,
        opened_at=opened_at,
        stop_loss=_d(stop_loss) if stop_loss is not None else None,
    )


# ---------------------------------------------------------------------------
# Config loader fixture (patched singleton)
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_config_loader():
    """
    Provide a mock ConfigLoader that returns standard configs.

    Usage in tests:
        def test_something(mock_config_loader):
            mock_config_loader.get_risk_config.return_value = {...}
    """
    loader = MagicMock()
    loader.get_trading_config.return_value = dict(STANDARD_TRADING_CONFIG)
    loader.get_risk_config.return_value = dict(STANDARD_RISK_CONFIG)
    loader.get_agent_config.return_value = dict(STANDARD_AGENT_CONFIG)
    loader.get_exchange_config.return_value = dict(STANDARD_EXCHANGE_CONFIG)
    loader.get_strategy_config.return_value = dict(STANDARD_STRATEGY_CONFIG)
    loader.get_data_service_config.return_value = dict(STANDARD_DATA_SERVICE_CONFIG)
    loader.get_app_config.return_value = {"logging": {"log_dir": "logs"}}
    return loader


# ---------------------------------------------------------------------------
# asyncio.Queue fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def event_queue():
    """Outbound agent event queue."""
    return asyncio.Queue(maxsize=100)
