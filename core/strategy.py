"""
Trading strategies for the BTC futures trading agent.

A strategy turns one IndicatorSet into one FusedDecision:
    1. Data gate - too little history yields HOLD "Insufficient price data".
    2. Rules - independent indicator rules from core.signal_engine.
    3. Fusion - weighted buy/sell netting against the strategy threshold.
    4. Softening - volatility and recent-performance filters that pull
       low-conviction decisions toward HOLD before the risk gate sees them.

Two variants share the TradingStrategy interface:
    basic     - SMA gap, RSI extremes, band breach and trend label (threshold 0.1)
    enhanced  - MACD, RSI, StochRSI, EMA cross, Bollinger, divergence and
                confluence rules (threshold 0.15, higher to avoid noise trades)

Weights, thresholds and filter parameters come from config/strategy.json.

Usage:
    strategies = build_strategies()
    decision = strategies["enhanced"].evaluate(history.build_indicator_set(params))
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import replace
from decimal import Decimal
from typing import Any

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from core.indicators import Indicators
from core.signal_engine import (
    band_breach_signal,
    bollinger_squeeze_signal,
    bollinger_touch_signal,
    combine_signals,
    confluence_signal,
    divergence_signal,
    ema_crossover_signal,
    ma_gap_signal,
    macd_crossover_signal,
    macd_zero_cross_signal,
    rsi_extreme_signal,
    rsi_momentum_signal,
    stoch_rsi_signal,
    trend_signal,
)
from shared.constants import (
    DEFAULT_BASIC_THRESHOLD,
    DEFAULT_DIVERGENCE_LOOKBACK,
    DEFAULT_DIVERGENCE_STRENGTH,
    DEFAULT_ENHANCED_THRESHOLD,
    DEFAULT_OUTCOME_WINDOW,
    DEFAULT_SIGNAL_HISTORY,
)
from shared.types import (
    Action,
    FusedDecision,
    IndicatorSet,
    MarketStructure,
    Signal,
)

INSUFFICIENT_DATA_REASON = "Insufficient price data"
_ZERO = Decimal("0")
_HALF = Decimal("0.5")


def _dec(section: dict[str, Any], key: str, default: str | Decimal) -> Decimal:
    return Decimal(str(section.get(key, default)))


class TradingStrategy:
    """
    Base class: data gate, fusion, filters and bookkeeping.

    Subclasses implement has_enough_data(), generate_signals() and
    apply_filters().
    """

    name = "base"
    default_threshold = DEFAULT_BASIC_THRESHOLD

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        self._logger = setup_module_logger("strategy", "strategy.log", module_folder="Strategy_Logs")

        if config is None:
            config = get_config().get_strategy_config()
        self._config = config
        self._section: dict[str, Any] = config.get(self.name, {})

        self._threshold = _dec(self._section, "threshold", self.default_threshold)
        self._weights = {
            key: Decimal(str(value)) for key, value in self._section.get("weights", {}).items()
        }
        self._outcome_window = int(config.get("outcome_window", DEFAULT_OUTCOME_WINDOW))

        history_size = int(config.get("signal_history_size", DEFAULT_SIGNAL_HISTORY))
        self._history: deque[FusedDecision] = deque(maxlen=history_size)
        self._outcomes: deque[Decimal] = deque(maxlen=history_size)

    @property
    def threshold(self) -> Decimal:
        return self._threshold

    def weight(self, rule: str) -> Decimal:
        return self._weights.get(rule, _ZERO)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, indicators: IndicatorSet) -> FusedDecision:
        """Produce this cycle's decision from an IndicatorSet."""
        now = time.time()
        if not self.has_enough_data(indicators):
            decision = FusedDecision(
                action=Action.HOLD,
                confidence=_ZERO,
                reasons=(INSUFFICIENT_DATA_REASON,),
                strategy=self.name,
                timestamp=now,
            )
            self._history.append(decision)
            return decision

        signals = self.generate_signals(indicators)
        decision = combine_signals(
            signals,
            self._threshold,
            _dec(self._section, "hold_bonus_factor", "0.1"),
        )
        decision = self.apply_filters(decision, indicators)
        decision = replace(decision, strategy=self.name, timestamp=now)

        self._history.append(decision)
        self._logger.info(
            "%s decision: %s (confidence %.3f, %d signals)",
            self.name,
            decision.action.value,
            decision.confidence,
            len(signals),
        )
        return decision

    def has_enough_data(self, indicators: IndicatorSet) -> bool:
        raise NotImplementedError

    def generate_signals(self, indicators: IndicatorSet) -> list[Signal]:
        raise NotImplementedError

    def apply_filters(self, decision: FusedDecision, indicators: IndicatorSet) -> FusedDecision:
        return decision

    # ------------------------------------------------------------------
    # Outcomes and reporting
    # ------------------------------------------------------------------

    def record_outcome(self, pnl: Decimal) -> None:
        """Record a closed trade's realized P&L for the performance filters."""
        self._outcomes.append(Decimal(str(pnl)))

    def recent_outcomes(self) -> list[Decimal]:
        return list(self._outcomes)[-self._outcome_window :]

    def recent_win_ratio(self) -> Decimal:
        """Win ratio over the outcome window; 0.5 until the window is full."""
        recent = self.recent_outcomes()
        if len(recent) < self._outcome_window:
            return _HALF
        wins = sum(1 for pnl in recent if pnl > 0)
        return Decimal(wins) / Decimal(len(recent))

    def signal_history(self, n: int | None = None) -> list[FusedDecision]:
        history = list(self._history)
        return history if n is None else history[-n:]

    def metrics(self) -> dict[str, Any]:
        history = list(self._history)
        last = history[-1] if history else None
        return {
            "name": self.name,
            "threshold": self._threshold,
            "signals_generated": len(history),
            "buy_signals": sum(1 for d in history if d.action is Action.BUY),
            "sell_signals": sum(1 for d in history if d.action is Action.SELL),
            "hold_signals": sum(1 for d in history if d.action is Action.HOLD),
            "outcomes_recorded": len(self._outcomes),
            "recent_win_ratio": self.recent_win_ratio(),
            "last_signal": last,
        }

    def reset(self) -> None:
        self._history.clear()
        self._outcomes.clear()


class BasicStrategy(TradingStrategy):
    """SMA gap, RSI 30/70, band breach and trend label."""

    name = "basic"
    default_threshold = DEFAULT_BASIC_THRESHOLD

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        rsi_cfg = self._section.get("rsi", {})
        self._oversold = _dec(rsi_cfg, "oversold", "30")
        self._overbought = _dec(rsi_cfg, "overbought", "70")
        self._ma_gap_pct = _dec(self._section, "ma_gap_pct", "0.1")

        self._max_volatility = _dec(self._section, "max_volatility", "0.5")
        self._volatility_ceiling = _dec(self._section, "volatility_confidence_ceiling", "0.7")
        self._volatility_dampening = _dec(self._section, "volatility_dampening", "0.5")
        self._recent_loss_limit = int(self._section.get("recent_loss_limit", 3))
        self._loss_dampening = _dec(self._section, "loss_dampening", "0.3")

    def has_enough_data(self, indicators: IndicatorSet) -> bool:
        return indicators.current_price is not None and indicators.sma_long is not None

    def generate_signals(self, indicators: IndicatorSet) -> list[Signal]:
        rsi = indicators.rsi[-1] if indicators.rsi else None
        candidates = [
            ma_gap_signal(
                indicators.sma_short,
                indicators.sma_long,
                self.weight("ma_crossover"),
                self._ma_gap_pct,
            ),
            rsi_extreme_signal(rsi, self.weight("rsi"), self._oversold, self._overbought),
            band_breach_signal(
                indicators.current_price, indicators.bollinger, self.weight("bollinger")
            ),
            trend_signal(indicators.trend, self.weight("trend")),
        ]
        return [s for s in candidates if s is not None]

    def apply_filters(self, decision: FusedDecision, indicators: IndicatorSet) -> FusedDecision:
        volatility = indicators.volatility
        if (
            volatility is not None
            and volatility > self._max_volatility
            and decision.confidence < self._volatility_ceiling
        ):
            decision = replace(
                decision,
                action=Action.HOLD,
                confidence=decision.confidence * self._volatility_dampening,
                reasons=decision.reasons + (f"High volatility ({volatility:.2f}), holding",),
            )

        losses = sum(1 for pnl in self.recent_outcomes() if pnl < 0)
        if losses >= self._recent_loss_limit:
            decision = replace(
                decision,
                action=Action.HOLD,
                confidence=decision.confidence * self._loss_dampening,
                reasons=decision.reasons + (f"{losses} recent losses, holding",),
            )
        return decision


class EnhancedStrategy(TradingStrategy):
    """
    Multi-indicator strategy with divergence and confluence.

    Rule order: MACD crossover, MACD zero cross, MACD divergence, RSI
    extreme, RSI momentum, RSI divergence, StochRSI, EMA cross, Bollinger
    squeeze, Bollinger touch, then confluence over the directional rules.
    """

    name = "enhanced"
    default_threshold = DEFAULT_ENHANCED_THRESHOLD

    def __init__(self, config: dict[str, Any] | None = None) -> None:
        super().__init__(config)
        section = self._section
        self._min_samples = int(section.get("min_samples", 30))

        rsi_cfg = section.get("rsi", {})
        self._oversold = _dec(rsi_cfg, "oversold", "30")
        self._overbought = _dec(rsi_cfg, "overbought", "70")

        stoch_cfg = section.get("stoch_rsi", {})
        self._stoch_oversold = _dec(stoch_cfg, "oversold", "0.2")
        self._stoch_overbought = _dec(stoch_cfg, "overbought", "0.8")

        bb_cfg = section.get("bollinger", {})
        self._squeeze_width = _dec(bb_cfg, "squeeze_width", "0.04")
        self._touch_distance = _dec(bb_cfg, "touch_distance", "0.01")

        div_cfg = section.get("divergence", {})
        self._divergence_lookback = int(div_cfg.get("lookback", DEFAULT_DIVERGENCE_LOOKBACK))
        self._divergence_strength = _dec(div_cfg, "strength", DEFAULT_DIVERGENCE_STRENGTH)

        self._confluence_min = int(section.get("confluence_min_signals", 3))

        self._max_band_width = _dec(section, "max_band_width", "0.1")
        self._volatility_ceiling = _dec(section, "volatility_confidence_ceiling", "0.8")
        self._volatility_dampening = _dec(section, "volatility_dampening", "0.6")
        self._sideways_dampening = _dec(section, "sideways_dampening", "0.7")
        self._min_recent_performance = _dec(section, "min_recent_performance", "0.3")
        self._performance_dampening = _dec(section, "performance_dampening", "0.5")
        self._performance_filter_holds = bool(section.get("performance_filter_holds", False))

    def has_enough_data(self, indicators: IndicatorSet) -> bool:
        return (
            indicators.current_price is not None
            and indicators.sample_count >= self._min_samples
            and len(indicators.macd) > 3
            and len(indicators.rsi) > 5
            and len(indicators.ema_fast) > 2
            and len(indicators.ema_slow) > 2
        )

    def generate_signals(self, indicators: IndicatorSet) -> list[Signal]:
        prices = indicators.prices
        macd_line = [point.macd for point in indicators.macd]
        rsi = indicators.rsi

        candidates = [
            macd_crossover_signal(indicators.macd, self.weight("macd_crossover")),
            macd_zero_cross_signal(indicators.macd, self.weight("macd_zero_cross")),
            divergence_signal(
                prices,
                macd_line,
                self.weight("macd_divergence"),
                "MACD",
                self._divergence_strength,
                self._divergence_lookback,
            ),
            rsi_extreme_signal(
                rsi[-1] if rsi else None,
                self.weight("rsi_extreme"),
                self._oversold,
                self._overbought,
            ),
            rsi_momentum_signal(rsi, self.weight("rsi_momentum")),
            divergence_signal(
                prices,
                rsi,
                self.weight("rsi_divergence"),
                "RSI",
                self._divergence_strength,
                self._divergence_lookback,
            ),
            stoch_rsi_signal(
                indicators.stoch_rsi,
                self.weight("stoch_rsi"),
                self._stoch_oversold,
                self._stoch_overbought,
            ),
            ema_crossover_signal(
                indicators.ema_fast, indicators.ema_slow, self.weight("ema_crossover")
            ),
            bollinger_squeeze_signal(
                indicators.bollinger, self.weight("bollinger_squeeze"), self._squeeze_width
            ),
            bollinger_touch_signal(
                indicators.current_price,
                indicators.bollinger,
                self.weight("bollinger_touch"),
                self._touch_distance,
            ),
        ]
        signals = [s for s in candidates if s is not None]

        confluence = confluence_signal(signals, self.weight("confluence"), self._confluence_min)
        if confluence is not None:
            signals.append(confluence)
        return signals

    def apply_filters(self, decision: FusedDecision, indicators: IndicatorSet) -> FusedDecision:
        """Apply the first risk filter that fires; later filters are skipped."""
        bands = indicators.bollinger
        if (
            bands is not None
            and bands.width > self._max_band_width
            and decision.confidence < self._volatility_ceiling
        ):
            return replace(
                decision,
                action=Action.HOLD,
                confidence=decision.confidence * self._volatility_dampening,
                reasons=decision.reasons + (f"High volatility (band width {bands.width:.3f})",),
            )

        structure = Indicators.market_structure(
            list(indicators.ema_fast), list(indicators.ema_slow)
        )
        if decision.action is not Action.HOLD and structure is MarketStructure.SIDEWAYS:
            return replace(
                decision,
                action=Action.HOLD,
                confidence=decision.confidence * self._sideways_dampening,
                reasons=decision.reasons + ("Sideways market structure",),
            )

        win_ratio = self.recent_win_ratio()
        if win_ratio < self._min_recent_performance:
            # Keeps the direction unless performance_filter_holds is set
            action = Action.HOLD if self._performance_filter_holds else decision.action
            return replace(
                decision,
                action=action,
                confidence=decision.confidence * self._performance_dampening,
                reasons=decision.reasons + (f"Poor recent performance ({win_ratio:.0%} wins)",),
            )
        return decision


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

STRATEGY_CLASSES: dict[str, type[TradingStrategy]] = {
    BasicStrategy.name: BasicStrategy,
    EnhancedStrategy.name: EnhancedStrategy,
}
STRATEGY_NAMES = tuple(STRATEGY_CLASSES)


def build_strategies(config: dict[str, Any] | None = None) -> dict[str, TradingStrategy]:
    """Instantiate every registered strategy from one strategy config."""
    if config is None:
        config = get_config().get_strategy_config()
    return {name: cls(config) for name, cls in STRATEGY_CLASSES.items()}
