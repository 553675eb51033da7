"""
Shared constants for the BTC futures trading agent.

Numeric constants and default values used across all modules.
"""

from decimal import Decimal

# ---------------------------------------------------------------------------
# Numeric Constants
# ---------------------------------------------------------------------------

SATS_PER_BTC = Decimal("100_000_000")
TRADING_DAYS_PER_YEAR = 252  # annualization factor for volatility and Sharpe

# ---------------------------------------------------------------------------
# Indicator Defaults
# ---------------------------------------------------------------------------

DEFAULT_HISTORY_CAPACITY = 1000
DEFAULT_SMA_SHORT = 10
DEFAULT_SMA_LONG = 30
DEFAULT_EMA_FAST = 9
DEFAULT_EMA_SLOW = 21
DEFAULT_RSI_PERIOD = 14
DEFAULT_STOCH_RSI = {"rsi_period": 14, "stoch_period": 14, "k_period": 3, "d_period": 3}
DEFAULT_BOLLINGER_PERIOD = 20
DEFAULT_BOLLINGER_K = Decimal("2")
DEFAULT_MACD = {"fast": 12, "slow": 26, "signal": 9}
DEFAULT_VOLATILITY_PERIOD = 20
TREND_THRESHOLD_PCT = Decimal("1")

# ---------------------------------------------------------------------------
# Strategy Defaults
# ---------------------------------------------------------------------------

DEFAULT_BASIC_THRESHOLD = Decimal("0.1")
DEFAULT_ENHANCED_THRESHOLD = Decimal("0.15")
DEFAULT_DIVERGENCE_LOOKBACK = 10
DEFAULT_DIVERGENCE_STRENGTH = Decimal("0.6")
DEFAULT_OUTCOME_WINDOW = 5
DEFAULT_SIGNAL_HISTORY = 100

# ---------------------------------------------------------------------------
# Default Risk Values
# ---------------------------------------------------------------------------

DEFAULT_MAX_POSITIONS = 3
DEFAULT_MAX_POSITION_SIZE = Decimal("100")
DEFAULT_MAX_LEVERAGE = Decimal("2")
DEFAULT_MAX_DAILY_LOSS = Decimal("50")
DEFAULT_MAX_DRAWDOWN_PCT = Decimal("10")
DEFAULT_MAX_PORTFOLIO_HEAT_PCT = Decimal("6")
DEFAULT_RISK_PER_TRADE_PCT = Decimal("2")
DEFAULT_MIN_TRADE_SIZE = Decimal("1")
DEFAULT_STOP_LOSS_PCT = Decimal("2")
PARTIAL_PROFIT_PCT = Decimal("3")
DAILY_LOSS_WARNING_RATIO = Decimal("0.8")

# ---------------------------------------------------------------------------
# Agent Defaults
# ---------------------------------------------------------------------------

DEFAULT_DRY_RUN = True
DEFAULT_DECISION_INTERVAL_SECONDS = 30
DEFAULT_EXCHANGE_TIMEOUT_SECONDS = 10
DEFAULT_LEVERAGE = Decimal("2")
DEFAULT_MAX_TRACKING_FAILURES = 3
DEFAULT_EVENT_QUEUE_SIZE = 1000
PANIC_TIMEOUT_SECONDS = 300
MIN_MARGIN_SATS = 1000
