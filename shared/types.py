"""
Shared data types for the BTC futures trading agent.

Centralized dataclasses and enums used across all modules.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Action(Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class TrendLabel(Enum):
    BULLISH = "BULLISH"  # short SMA > long SMA by more than 1%
    BEARISH = "BEARISH"  # short SMA < long SMA by more than 1%
    NEUTRAL = "NEUTRAL"


class MarketStructure(Enum):
    BULLISH = "BULLISH"  # fast and slow EMA rising, fast above slow
    BEARISH = "BEARISH"  # fast and slow EMA falling, fast below slow
    SIDEWAYS = "SIDEWAYS"
    UNKNOWN = "UNKNOWN"  # not enough EMA history


class PositionSide(Enum):
    LONG = "long"  # exchange side 'b'
    SHORT = "short"  # exchange side 's'

    @classmethod
    def from_action(cls, action: Action) -> PositionSide:
        if action is Action.BUY:
            return cls.LONG
        if action is Action.SELL:
            return cls.SHORT
        raise ValueError(f"No position side for action {action.value}")


class AgentStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class PositionHealth(Enum):
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"  # loss beyond half the stop distance
    CRITICAL = "CRITICAL"  # loss beyond 80% of the stop distance
    PROFITABLE = "PROFITABLE"  # gain above 3%


# ---------------------------------------------------------------------------
# Market Data Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceSample:
    price: Decimal
    timestamp: float  # unix seconds
    bid: Decimal
    ask: Decimal

    @property
    def spread(self) -> Decimal:
        return self.ask - self.bid


@dataclass(frozen=True)
class BollingerBands:
    upper: Decimal
    middle: Decimal
    lower: Decimal
    width: Decimal  # (upper - lower) / middle


@dataclass(frozen=True)
class MACDPoint:
    macd: Decimal
    signal: Decimal
    histogram: Decimal


@dataclass(frozen=True)
class StochRSIPoint:
    k: Decimal  # 0.0-1.0
    d: Decimal  # 0.0-1.0


@dataclass(frozen=True)
class IndicatorSet:
    """Indicator values derived from one PriceHistory window. Series are oldest first."""

    current_price: Decimal | None
    sample_count: int
    prices: tuple[Decimal, ...] = ()
    sma_short: Decimal | None = None
    sma_long: Decimal | None = None
    ema_fast: tuple[Decimal, ...] = ()
    ema_slow: tuple[Decimal, ...] = ()
    rsi: tuple[Decimal, ...] = ()
    stoch_rsi: tuple[StochRSIPoint, ...] = ()
    macd: tuple[MACDPoint, ...] = ()
    bollinger: BollingerBands | None = None
    volatility: Decimal | None = None  # annualized
    trend: TrendLabel | None = None


# ---------------------------------------------------------------------------
# Signal Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Signal:
    action: Action
    weight: Decimal  # rule weight from strategy config
    strength: Decimal  # 0.0-1.0 rule-specific magnitude
    reason: str

    @property
    def contribution(self) -> Decimal:
        return self.weight * self.strength


@dataclass(frozen=True)
class FusedDecision:
    action: Action
    confidence: Decimal  # 0.0-1.0
    reasons: tuple[str, ...]
    strategy: str = ""
    timestamp: float = 0.0


# ---------------------------------------------------------------------------
# Risk Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskLimits:
    max_positions: int
    max_position_size: Decimal  # quote currency (USD)
    max_leverage: Decimal
    max_daily_loss: Decimal  # quote currency (USD)
    max_drawdown_pct: Decimal
    max_portfolio_heat_pct: Decimal
    risk_per_trade_pct: Decimal
    min_trade_size: Decimal  # quote currency (USD)
    stop_loss_pct: Decimal


@dataclass(frozen=True)
class RiskCheck:
    allowed: bool
    reason: str


@dataclass(frozen=True)
class PositionSize:
    quote_amount: Decimal
    base_quantity: Decimal


@dataclass(frozen=True)
class TradeOutcome:
    pnl: Decimal
    quantity: Decimal
    timestamp: float


@dataclass(frozen=True)
class ReduceAdvice:
    reduce: bool
    percentage: int = 0
    reason: str = ""


@dataclass(frozen=True)
class PositionHealthReport:
    health: PositionHealth
    pnl_pct: Decimal
    time_open_seconds: float
    stop_loss_distance_pct: Decimal


# ---------------------------------------------------------------------------
# Exchange / Position Types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Position:
    id: str
    side: PositionSide
    quantity: Decimal  # notional in quote currency (USD)
    entry_price: Decimal
    leverage: Decimal
    margin: int  # sats
    opened_at: float  # unix seconds
    unrealized_pnl: Decimal = Decimal("0")
    stop_loss: Decimal | None = None

    def price_move(self, price: Decimal) -> Decimal:
        """Fractional price move in the position's favour; 0 without an entry price."""
        if self.entry_price <= 0:
            return Decimal("0")
        move = (price - self.entry_price) / self.entry_price
        return move if self.side is PositionSide.LONG else -move

    def pnl_at(self, price: Decimal) -> Decimal:
        """Mark-to-market P&L in quote currency at `price`."""
        return self.quantity * self.price_move(price)


@dataclass(frozen=True)
class ClosedTrade:
    position_id: str
    exit_price: Decimal
    realized_pnl: Decimal  # quote currency (USD)


@dataclass(frozen=True)
class ReconciliationReport:
    opened: tuple[Position, ...] = ()
    closed: tuple[TradeClosedEvent, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.opened and not self.closed


@dataclass(frozen=True)
class PanicRequest:
    requested_at: float
    positions: tuple[Position, ...]
    total_exposure: Decimal
    unrealized_pnl: Decimal


# ---------------------------------------------------------------------------
# Outbound Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DecisionRecord:
    action: Action
    confidence: Decimal
    reasons: tuple[str, ...]
    timestamp: float
    strategy: str
    executed: bool = False
    position_id: str | None = None


@dataclass(frozen=True)
class DecisionEvent:
    record: DecisionRecord


@dataclass(frozen=True)
class ExecutionEvent:
    action: Action
    success: bool
    message: str
    timestamp: float
    position_id: str | None = None


@dataclass(frozen=True)
class TradeClosedEvent:
    position_id: str
    side: PositionSide
    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    realized_pnl: Decimal
    opened_at: float
    closed_at: float
    source: str = "engine"  # engine | external | panic
    estimated: bool = False  # exit price inferred from latest sample


# ---------------------------------------------------------------------------
# Agent State Types
# ---------------------------------------------------------------------------


@dataclass
class PerformanceCounters:
    cycles: int = 0
    decisions: int = 0
    trades_executed: int = 0
    trades_failed: int = 0
    trades_closed: int = 0
    external_closures: int = 0
    tracking_failures: int = 0
    total_realized_pnl: Decimal = Decimal("0")


@dataclass
class AgentState:
    status: AgentStatus = AgentStatus.IDLE
    strategy_name: str = "enhanced"
    last_decision: DecisionRecord | None = None
    positions: dict[str, Position] = field(default_factory=dict)
    performance: PerformanceCounters = field(default_factory=PerformanceCounters)
    panic_request: PanicRequest | None = None


@dataclass(frozen=True)
class CommandResult:
    command: str
    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# P&L Types
# ---------------------------------------------------------------------------


@dataclass
class TradingStats:
    total_trades: int
    winning_trades: int
    losing_trades: int
    total_pnl: Decimal
    avg_pnl_per_trade: Decimal
    win_rate: Decimal
    sharpe_ratio: Decimal
    avg_hold_duration_hours: Decimal
    current_drawdown_pct: Decimal
    max_drawdown_pct: Decimal
