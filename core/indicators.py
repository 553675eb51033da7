"""
Technical indicator computation module for the BTC futures trading agent.

Pure computation - no I/O, no side effects. Takes price lists (oldest first)
and returns indicator values. All computations use Decimal for precision
consistency.

Every function reports "insufficient data" instead of raising: scalar
indicators return None and series indicators return an empty list when the
input is shorter than the required period. Callers treat both as "no signal",
never as zero.

Indicators implemented:
- Moving averages: SMA, EMA (SMA-seeded)
- Oscillators: RSI (Wilder's smoothing), Stochastic RSI, MACD
- Volatility: Bollinger Bands, annualized close-to-close volatility
- Structure: SMA trend label, EMA market structure

References:
    Wilder (1978), "New Concepts in Technical Trading Systems".
    Chande & Kroll (1994), "The New Technical Trader" - Stochastic RSI.
    Appel (1979) - MACD.
    Bollinger (2001), "Bollinger on Bollinger Bands".

Usage:
    from core.indicators import Indicators

    closes = [sample.price for sample in history.window(50)]
    ema_values = Indicators.ema(closes, period=9)
    rsi = Indicators.rsi(closes, period=14)
"""

from __future__ import annotations

import math
from decimal import Decimal

from shared.constants import TRADING_DAYS_PER_YEAR, TREND_THRESHOLD_PCT
from shared.types import (
    BollingerBands,
    MACDPoint,
    MarketStructure,
    StochRSIPoint,
    TrendLabel,
)

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def _sqrt(value: Decimal) -> Decimal:
    """Decimal square root via float conversion."""
    if value <= 0:
        return _ZERO
    return Decimal(str(math.sqrt(float(value))))


class Indicators:
    """Static methods for technical indicator computation."""

    # ------------------------------------------------------------------
    # Moving averages
    # ------------------------------------------------------------------

    @staticmethod
    def sma(prices: list[Decimal], period: int) -> Decimal | None:
        """Simple moving average of the last `period` prices."""
        if period <= 0 or len(prices) < period:
            return None
        return sum(prices[-period:], _ZERO) / Decimal(period)

    @staticmethod
    def sma_series(values: list[Decimal], period: int) -> list[Decimal]:
        """Rolling SMA, one value per full window."""
        if period <= 0 or len(values) < period:
            return []
        window_sum = sum(values[:period], _ZERO)
        result = [window_sum / Decimal(period)]
        for i in range(period, len(values)):
            window_sum += values[i] - values[i - period]
            result.append(window_sum / Decimal(period))
        return result

    @staticmethod
    def ema(prices: list[Decimal], period: int) -> list[Decimal]:
        """
        Exponential Moving Average.

        Uses standard multiplier k = 2 / (period + 1). First value is
        initialized with SMA of the first `period` prices.

        Args:
            prices: List of price values (oldest first).
            period: EMA lookback period.

        Returns:
            List of EMA values, one per price from index period-1 onward.
            Returns empty list if insufficient data.
        """
        if period <= 0 or len(prices) < period:
            return []

        k = Decimal("2") / Decimal(period + 1)
        one_minus_k = Decimal("1") - k

        # Seed with SMA of first `period` values
        result = [sum(prices[:period], _ZERO) / Decimal(period)]
        for price in prices[period:]:
            result.append(price * k + result[-1] * one_minus_k)

        return result

    # ------------------------------------------------------------------
    # Oscillators
    # ------------------------------------------------------------------

    @staticmethod
    def rsi_series(prices: list[Decimal], period: int = 14) -> list[Decimal]:
        """
        Relative Strength Index series using Wilder's smoothing method.

        Wilder (1978): averages gains and losses with smoothing factor
        1/period (NOT the standard EMA 2/(period+1)). An average loss of
        zero yields RSI 100.

        Args:
            prices: Price values (oldest first). Needs period+1 values minimum.
            period: RSI lookback period (default 14).

        Returns:
            RSI values between 0 and 100, the first aligned to prices[period].
        """
        if period <= 0 or len(prices) < period + 1:
            return []

        changes = [prices[i] - prices[i - 1] for i in range(1, len(prices))]
        p = Decimal(period)

        avg_gain = sum((max(c, _ZERO) for c in changes[:period]), _ZERO) / p
        avg_loss = sum((max(-c, _ZERO) for c in changes[:period]), _ZERO) / p

        def _value(gain: Decimal, loss: Decimal) -> Decimal:
            if loss == 0:
                return _HUNDRED
            return _HUNDRED - _HUNDRED / (Decimal("1") + gain / loss)

        result = [_value(avg_gain, avg_loss)]
        for c in changes[period:]:
            avg_gain = (avg_gain * (p - 1) + max(c, _ZERO)) / p
            avg_loss = (avg_loss * (p - 1) + max(-c, _ZERO)) / p
            result.append(_value(avg_gain, avg_loss))

        return result

    @staticmethod
    def rsi(prices: list[Decimal], period: int = 14) -> Decimal | None:
        """Latest RSI value, or None if insufficient data."""
        series = Indicators.rsi_series(prices, period)
        return series[-1] if series else None

    @staticmethod
    def stoch_rsi(
        prices: list[Decimal],
        rsi_period: int = 14,
        stoch_period: int = 14,
        k_period: int = 3,
        d_period: int = 3,
    ) -> list[StochRSIPoint]:
        """
        Stochastic oscillator applied to the RSI series, scaled to [0, 1].

        raw = (rsi - min(rsi window)) / (max - min); k = SMA(raw, k_period);
        d = SMA(k, d_period). A flat RSI window gives raw 0.
        """
        rsi_values = Indicators.rsi_series(prices, rsi_period)
        if len(rsi_values) < stoch_period:
            return []

        raw: list[Decimal] = []
        for i in range(stoch_period - 1, len(rsi_values)):
            window = rsi_values[i - stoch_period + 1 : i + 1]
            low, high = min(window), max(window)
            raw.append(_ZERO if high == low else (rsi_values[i] - low) / (high - low))

        k_values = Indicators.sma_series(raw, k_period)
        d_values = Indicators.sma_series(k_values, d_period)
        if not d_values:
            return []

        k_aligned = k_values[len(k_values) - len(d_values) :]
        return [StochRSIPoint(k=k, d=d) for k, d in zip(k_aligned, d_values)]

    @staticmethod
    def macd(
        prices: list[Decimal],
        fast: int = 12,
        slow: int = 26,
        signal: int = 9,
    ) -> list[MACDPoint]:
        """
        Moving Average Convergence Divergence series.

        MACD line = EMA(fast) - EMA(slow); signal line = EMA(signal) of the
        MACD line; histogram = MACD - signal.

        Args:
            prices: List of price values (oldest first).
            fast: Fast EMA period (default 12).
            slow: Slow EMA period (default 26).
            signal: Signal line EMA period (default 9).

        Returns:
            MACDPoint list aligned to the most recent prices.
            Empty if fewer than slow + signal - 1 prices.
        """
        if fast >= slow or len(prices) < slow + signal - 1:
            return []

        fast_ema = Indicators.ema(prices, fast)
        slow_ema = Indicators.ema(prices, slow)

        # Align: fast EMA starts at index (fast-1), slow at (slow-1)
        offset = slow - fast
        macd_values = [fast_ema[i + offset] - slow_ema[i] for i in range(len(slow_ema))]

        signal_ema = Indicators.ema(macd_values, signal)
        if not signal_ema:
            return []

        macd_aligned = macd_values[signal - 1 :]
        return [
            MACDPoint(macd=m, signal=s, histogram=m - s)
            for m, s in zip(macd_aligned, signal_ema)
        ]

    # ------------------------------------------------------------------
    # Volatility
    # ------------------------------------------------------------------

    @staticmethod
    def bollinger_bands(
        prices: list[Decimal],
        period: int = 20,
        std_mult: Decimal = Decimal("2"),
    ) -> BollingerBands | None:
        """
        Bollinger Bands (SMA-based with population standard deviation bands).

        Returns:
            BollingerBands with width = (upper - lower) / middle, or None.
        """
        if period <= 0 or len(prices) < period:
            return None

        window = prices[-period:]
        middle = sum(window, _ZERO) / Decimal(period)

        # Population standard deviation over the window
        variance = sum(((p - middle) ** 2 for p in window), _ZERO) / Decimal(period)
        std_dev = _sqrt(variance)

        upper = middle + std_mult * std_dev
        lower = middle - std_mult * std_dev
        width = (upper - lower) / middle if middle != 0 else _ZERO

        return BollingerBands(upper=upper, middle=middle, lower=lower, width=width)

    @staticmethod
    def annualized_volatility(prices: list[Decimal], period: int = 20) -> Decimal | None:
        """
        Annualized close-to-close volatility.

        Population standard deviation of simple returns over the last
        period+1 prices, scaled by sqrt(252).
        """
        if period <= 1 or len(prices) < period + 1:
            return None

        recent = prices[-(period + 1) :]
        returns = [
            (recent[i] - recent[i - 1]) / recent[i - 1]
            for i in range(1, len(recent))
            if recent[i - 1] != 0
        ]
        if len(returns) < 2:
            return None

        mean = sum(returns, _ZERO) / Decimal(len(returns))
        variance = sum(((r - mean) ** 2 for r in returns), _ZERO) / Decimal(len(returns))
        return _sqrt(variance) * _sqrt(Decimal(TRADING_DAYS_PER_YEAR))

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @staticmethod
    def trend_label(
        prices: list[Decimal], short_period: int = 10, long_period: int = 30
    ) -> TrendLabel | None:
        """BULLISH / BEARISH when the short SMA is more than 1% above / below the long SMA."""
        short_sma = Indicators.sma(prices, short_period)
        long_sma = Indicators.sma(prices, long_period)
        if short_sma is None or long_sma is None or long_sma == 0:
            return None

        gap_pct = (short_sma - long_sma) / long_sma * _HUNDRED
        if gap_pct > TREND_THRESHOLD_PCT:
            return TrendLabel.BULLISH
        if gap_pct < -TREND_THRESHOLD_PCT:
            return TrendLabel.BEARISH
        return TrendLabel.NEUTRAL

    @staticmethod
    def market_structure(
        ema_fast: list[Decimal], ema_slow: list[Decimal], lookback: int = 5
    ) -> MarketStructure:
        """
        Classify EMA structure over the last `lookback` values.

        BULLISH needs both EMAs rising with fast above slow; BEARISH the
        mirror; anything else is SIDEWAYS.
        """
        if len(ema_fast) < lookback or len(ema_slow) < lookback or lookback < 3:
            return MarketStructure.UNKNOWN

        fast = ema_fast[-lookback:]
        slow = ema_slow[-lookback:]
        if fast[0] == 0 or slow[0] == 0:
            return MarketStructure.UNKNOWN

        fast_slope = (fast[-1] - fast[0]) / fast[0]
        slow_slope = (slow[-1] - slow[0]) / slow[0]

        if fast_slope > 0 and slow_slope > 0 and fast[-1] > slow[-1]:
            return MarketStructure.BULLISH
        if fast_slope < 0 and slow_slope < 0 and fast[-1] < slow[-1]:
            return MarketStructure.BEARISH
        return MarketStructure.SIDEWAYS
