"""
Indicator rules and signal fusion for the BTC futures trading agent.

Each rule inspects one indicator family and returns a Signal (direction,
weight, strength, rationale) or None when it does not fire. Rules are pure
and independent: none of them reads another rule's output except the
confluence rule, which only counts directions. Missing indicator inputs
(None or too-short series) never fire a rule.

combine_signals() fuses the rule outputs into a FusedDecision:
    buy  = sum(weight * strength) over BUY signals
    sell = sum(weight * strength) over SELL signals
    net  = buy - sell
    action = BUY if net > threshold, SELL if net < -threshold, else HOLD
    confidence = min(|net| + hold * hold_bonus_factor, 1)

Divergence (detect_divergence) compares a price window with an oscillator
window of the same length. A bullish divergence is a fresh price low whose
matching oscillator low sits above the oscillator's earlier low; bearish is
the mirror image with highs. Extrema inside the first third of the window
are ignored to avoid edge artifacts.

References:
    Murphy (1999), "Technical Analysis of the Financial Markets" - divergence.
    Pring (2002), "Technical Analysis Explained" - indicator confluence.

Usage:
    from core.signal_engine import combine_signals, macd_crossover_signal

    signals = [s for s in (macd_crossover_signal(ind.macd, weight),) if s]
    decision = combine_signals(signals, threshold=Decimal("0.15"))
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

from shared.constants import DEFAULT_DIVERGENCE_LOOKBACK
from shared.types import (
    Action,
    BollingerBands,
    FusedDecision,
    MACDPoint,
    Signal,
    StochRSIPoint,
    TrendLabel,
)

_ZERO = Decimal("0")
_ONE = Decimal("1")
_HUNDRED = Decimal("100")
_FIFTY = Decimal("50")

DEFAULT_HOLD_BONUS_FACTOR = Decimal("0.1")
CONFLUENCE_SATURATION = Decimal("5")


def _clamp(value: Decimal, low: Decimal = _ZERO, high: Decimal = _ONE) -> Decimal:
    return max(low, min(value, high))


# ---------------------------------------------------------------------------
# MACD rules
# ---------------------------------------------------------------------------


def macd_crossover_signal(macd: Sequence[MACDPoint], weight: Decimal) -> Signal | None:
    """MACD line crossing its signal line."""
    if len(macd) < 2:
        return None
    prev, curr = macd[-2], macd[-1]
    strength = _clamp(abs(curr.macd - curr.signal) / _HUNDRED)
    if prev.macd <= prev.signal and curr.macd > curr.signal:
        return Signal(Action.BUY, weight, strength, "MACD bullish crossover")
    if prev.macd >= prev.signal and curr.macd < curr.signal:
        return Signal(Action.SELL, weight, strength, "MACD bearish crossover")
    return None


def macd_zero_cross_signal(macd: Sequence[MACDPoint], weight: Decimal) -> Signal | None:
    """MACD line crossing the zero line."""
    if len(macd) < 2:
        return None
    prev, curr = macd[-2].macd, macd[-1].macd
    strength = _clamp(abs(curr) / _FIFTY)
    if prev <= 0 < curr:
        return Signal(Action.BUY, weight, strength, "MACD crossed above zero")
    if prev >= 0 > curr:
        return Signal(Action.SELL, weight, strength, "MACD crossed below zero")
    return None


# ---------------------------------------------------------------------------
# RSI rules
# ---------------------------------------------------------------------------


def rsi_extreme_signal(
    rsi: Decimal | None,
    weight: Decimal,
    oversold: Decimal = Decimal("30"),
    overbought: Decimal = Decimal("70"),
) -> Signal | None:
    """RSI inside the oversold or overbought zone; strength grows with depth."""
    if rsi is None:
        return None
    if rsi < oversold:
        strength = _clamp((oversold - rsi) / oversold) if oversold > 0 else _ONE
        return Signal(Action.BUY, weight, strength, f"RSI oversold ({rsi:.1f})")
    if rsi > overbought:
        zone = _HUNDRED - overbought
        strength = _clamp((rsi - overbought) / zone) if zone > 0 else _ONE
        return Signal(Action.SELL, weight, strength, f"RSI overbought ({rsi:.1f})")
    return None


def rsi_momentum_signal(rsi: Sequence[Decimal], weight: Decimal) -> Signal | None:
    """RSI crossing the 50 line (momentum shift)."""
    if len(rsi) < 2:
        return None
    prev, curr = rsi[-2], rsi[-1]
    strength = _clamp(abs(curr - _FIFTY) / _FIFTY)
    if prev <= _FIFTY < curr:
        return Signal(Action.BUY, weight, strength, "RSI bullish momentum shift")
    if prev >= _FIFTY > curr:
        return Signal(Action.SELL, weight, strength, "RSI bearish momentum shift")
    return None


def stoch_rsi_signal(
    points: Sequence[StochRSIPoint],
    weight: Decimal,
    oversold: Decimal = Decimal("0.2"),
    overbought: Decimal = Decimal("0.8"),
) -> Signal | None:
    """%K crossing %D inside the oversold (BUY) or overbought (SELL) zone."""
    if len(points) < 2:
        return None
    prev, curr = points[-2], points[-1]
    if prev.k <= prev.d and curr.k > curr.d and curr.k < oversold:
        strength = _clamp((oversold - curr.k) / oversold) if oversold > 0 else _ONE
        return Signal(Action.BUY, weight, strength, "StochRSI bullish cross in oversold zone")
    if prev.k >= prev.d and curr.k < curr.d and curr.k > overbought:
        zone = _ONE - overbought
        strength = _clamp((curr.k - overbought) / zone) if zone > 0 else _ONE
        return Signal(Action.SELL, weight, strength, "StochRSI bearish cross in overbought zone")
    return None


# ---------------------------------------------------------------------------
# Moving average rules
# ---------------------------------------------------------------------------


def ema_crossover_signal(
    ema_fast: Sequence[Decimal], ema_slow: Sequence[Decimal], weight: Decimal
) -> Signal | None:
    """Golden / death cross of the fast and slow EMA. Both series end at the latest price."""
    if len(ema_fast) < 2 or len(ema_slow) < 2:
        return None
    prev_fast, curr_fast = ema_fast[-2], ema_fast[-1]
    prev_slow, curr_slow = ema_slow[-2], ema_slow[-1]
    if curr_slow == 0:
        return None
    strength = _clamp(abs(curr_fast - curr_slow) / curr_slow * _HUNDRED)
    if prev_fast <= prev_slow and curr_fast > curr_slow:
        return Signal(Action.BUY, weight, strength, "EMA golden cross")
    if prev_fast >= prev_slow and curr_fast < curr_slow:
        return Signal(Action.SELL, weight, strength, "EMA death cross")
    return None


def ma_gap_signal(
    sma_short: Decimal | None,
    sma_long: Decimal | None,
    weight: Decimal,
    min_gap_pct: Decimal = Decimal("0.1"),
) -> Signal | None:
    """Short SMA above / below the long SMA by more than min_gap_pct percent."""
    if sma_short is None or sma_long is None or sma_long == 0:
        return None
    gap_pct = (sma_short - sma_long) / sma_long * _HUNDRED
    strength = _clamp(abs(gap_pct) / Decimal("2"))
    if gap_pct > min_gap_pct:
        return Signal(Action.BUY, weight, strength, f"Short MA above long MA ({gap_pct:.2f}%)")
    if gap_pct < -min_gap_pct:
        return Signal(Action.SELL, weight, strength, f"Short MA below long MA ({gap_pct:.2f}%)")
    return None


def trend_signal(trend: TrendLabel | None, weight: Decimal) -> Signal | None:
    if trend is TrendLabel.BULLISH:
        return Signal(Action.BUY, weight, _ONE, "Bullish trend")
    if trend is TrendLabel.BEARISH:
        return Signal(Action.SELL, weight, _ONE, "Bearish trend")
    return None


# ---------------------------------------------------------------------------
# Bollinger rules
# ---------------------------------------------------------------------------


def bollinger_squeeze_signal(
    bands: BollingerBands | None,
    weight: Decimal,
    squeeze_width: Decimal = Decimal("0.04"),
) -> Signal | None:
    """Narrow bands: a breakout is likely but its direction is unknown."""
    if bands is None or bands.width >= squeeze_width:
        return None
    return Signal(Action.HOLD, weight, Decimal("0.5"), f"Bollinger squeeze (width {bands.width:.4f})")


def bollinger_touch_signal(
    price: Decimal | None,
    bands: BollingerBands | None,
    weight: Decimal,
    touch_distance: Decimal = Decimal("0.01"),
) -> Signal | None:
    """Price within touch_distance (fraction of price) of a band."""
    if price is None or bands is None or price <= 0:
        return None
    lower_distance = (price - bands.lower) / price
    if abs(lower_distance) < touch_distance:
        strength = _clamp(abs(lower_distance) * _HUNDRED)
        return Signal(Action.BUY, weight, strength, "Price touching lower Bollinger band")
    upper_distance = (bands.upper - price) / price
    if abs(upper_distance) < touch_distance:
        strength = _clamp(abs(upper_distance) * _HUNDRED)
        return Signal(Action.SELL, weight, strength, "Price touching upper Bollinger band")
    return None


def band_breach_signal(
    price: Decimal | None, bands: BollingerBands | None, weight: Decimal
) -> Signal | None:
    """Price at or beyond a band; strength from the distance to the middle band."""
    if price is None or bands is None or bands.middle == 0:
        return None
    distance_pct = (price - bands.middle) / bands.middle * _HUNDRED
    strength = _clamp(abs(distance_pct) / Decimal("2"))
    if price <= bands.lower:
        return Signal(Action.BUY, weight, strength, "Price at or below lower band")
    if price >= bands.upper:
        return Signal(Action.SELL, weight, strength, "Price at or above upper band")
    return None


# ---------------------------------------------------------------------------
# Divergence
# ---------------------------------------------------------------------------


def _last_extreme_index(values: list[Decimal], start: int, lowest: bool) -> int:
    segment = values[start:]
    target = min(segment) if lowest else max(segment)
    return start + max(i for i, v in enumerate(segment) if v == target)


def _diverges(prices: list[Decimal], osc: list[Decimal], edge: int, lowest: bool) -> bool:
    i = _last_extreme_index(prices, 0, lowest)
    if i <= edge:
        return False
    prior_prices = prices[:i]
    if lowest and not prices[i] < min(prior_prices):
        return False
    if not lowest and not prices[i] > max(prior_prices):
        return False

    j = _last_extreme_index(osc, edge + 1, lowest)
    prior_osc = osc[:j]
    return osc[j] > min(prior_osc) if lowest else osc[j] < max(prior_osc)


def detect_divergence(
    prices: Sequence[Decimal],
    oscillator: Sequence[Decimal],
    lookback: int = DEFAULT_DIVERGENCE_LOOKBACK,
) -> Action | None:
    """
    Detect price/oscillator divergence over the last `lookback` aligned values.

    Args:
        prices: Price series, oldest first, aligned to the oscillator's tail.
        oscillator: Oscillator series (RSI, MACD line), oldest first.
        lookback: Window length. Extrema at or before index lookback // 3
            are treated as edge artifacts.

    Returns:
        Action.BUY for bullish divergence, Action.SELL for bearish, None
        otherwise (including when both patterns appear in one window).
    """
    if lookback < 3 or len(prices) < lookback or len(oscillator) < lookback:
        return None

    window_prices = list(prices[-lookback:])
    window_osc = list(oscillator[-lookback:])
    edge = lookback // 3

    bullish = _diverges(window_prices, window_osc, edge, lowest=True)
    bearish = _diverges(window_prices, window_osc, edge, lowest=False)
    if bullish and not bearish:
        return Action.BUY
    if bearish and not bullish:
        return Action.SELL
    return None


def divergence_signal(
    prices: Sequence[Decimal],
    oscillator: Sequence[Decimal],
    weight: Decimal,
    label: str,
    strength: Decimal = Decimal("0.6"),
    lookback: int = DEFAULT_DIVERGENCE_LOOKBACK,
) -> Signal | None:
    direction = detect_divergence(prices, oscillator, lookback)
    if direction is Action.BUY:
        return Signal(Action.BUY, weight, strength, f"Bullish {label} divergence")
    if direction is Action.SELL:
        return Signal(Action.SELL, weight, strength, f"Bearish {label} divergence")
    return None


# ---------------------------------------------------------------------------
# Confluence and combination
# ---------------------------------------------------------------------------


def confluence_signal(
    signals: Sequence[Signal], weight: Decimal, min_signals: int = 3
) -> Signal | None:
    """Bonus signal when at least min_signals rules agree; BUY is checked first."""
    buys = sum(1 for s in signals if s.action is Action.BUY)
    sells = sum(1 for s in signals if s.action is Action.SELL)
    if buys >= min_signals:
        strength = _clamp(Decimal(buys) / CONFLUENCE_SATURATION)
        return Signal(Action.BUY, weight, strength, f"Bullish confluence ({buys} signals)")
    if sells >= min_signals:
        strength = _clamp(Decimal(sells) / CONFLUENCE_SATURATION)
        return Signal(Action.SELL, weight, strength, f"Bearish confluence ({sells} signals)")
    return None


def format_reason(signal: Signal) -> str:
    sign = {Action.BUY: "+", Action.SELL: "-", Action.HOLD: "="}[signal.action]
    return f"{signal.reason} ({sign}{signal.contribution * _HUNDRED:.1f}%)"


def combine_signals(
    signals: Sequence[Signal],
    threshold: Decimal,
    hold_bonus_factor: Decimal = DEFAULT_HOLD_BONUS_FACTOR,
) -> FusedDecision:
    """
    Fuse rule outputs into one decision.

    Args:
        signals: Fired rule signals, in evaluation order.
        threshold: Minimum |net| for a directional action.
        hold_bonus_factor: Share of HOLD contributions added to confidence.

    Returns:
        FusedDecision with reasons in signal order.
    """
    buy = sum((s.contribution for s in signals if s.action is Action.BUY), _ZERO)
    sell = sum((s.contribution for s in signals if s.action is Action.SELL), _ZERO)
    hold = sum((s.contribution for s in signals if s.action is Action.HOLD), _ZERO)

    net = buy - sell
    confidence = _clamp(abs(net) + hold * hold_bonus_factor)

    if net > threshold:
        action = Action.BUY
    elif net < -threshold:
        action = Action.SELL
    else:
        action = Action.HOLD

    return FusedDecision(
        action=action,
        confidence=confidence,
        reasons=tuple(format_reason(s) for s in signals),
    )
