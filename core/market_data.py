"""
Rolling price buffer and indicator pipeline for the BTC futures trading agent.

PriceHistory keeps a bounded, time-ordered sequence of PriceSample objects
(oldest evicted once capacity is exceeded) and derives indicators on demand
from the current window. It has no external dependencies; the price feed
appends to it and strategies consume the IndicatorSet it builds.

Usage:
    history = PriceHistory(capacity=1000)
    history.append(PriceSample(price=..., timestamp=..., bid=..., ask=...))
    indicators = history.build_indicator_set()
"""

from __future__ import annotations

from collections import deque
from decimal import Decimal
from typing import Any

from core.indicators import Indicators
from shared.constants import (
    DEFAULT_BOLLINGER_K,
    DEFAULT_BOLLINGER_PERIOD,
    DEFAULT_EMA_FAST,
    DEFAULT_EMA_SLOW,
    DEFAULT_HISTORY_CAPACITY,
    DEFAULT_MACD,
    DEFAULT_RSI_PERIOD,
    DEFAULT_SMA_LONG,
    DEFAULT_SMA_SHORT,
    DEFAULT_STOCH_RSI,
    DEFAULT_VOLATILITY_PERIOD,
)
from shared.types import (
    BollingerBands,
    IndicatorSet,
    MACDPoint,
    PriceSample,
    TrendLabel,
)

DEFAULT_INDICATOR_WINDOW = 50


class PriceHistory:
    """
    Bounded buffer of price samples with on-demand indicators.

    Indicator methods return None (scalars) or an empty list (series) when
    the buffer is shorter than the requested period.
    """

    def __init__(self, capacity: int = DEFAULT_HISTORY_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._samples: deque[PriceSample] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._samples)

    @property
    def capacity(self) -> int:
        return self._capacity

    # ------------------------------------------------------------------
    # Buffer operations
    # ------------------------------------------------------------------

    def append(self, sample: PriceSample) -> None:
        """Append a sample, evicting the oldest beyond capacity."""
        if self._samples and sample.timestamp < self._samples[-1].timestamp:
            raise ValueError(
                f"Out-of-order sample: {sample.timestamp} < {self._samples[-1].timestamp}"
            )
        self._samples.append(sample)

    def extend(self, samples: list[PriceSample]) -> None:
        for sample in samples:
            self.append(sample)

    def clear(self) -> None:
        self._samples.clear()

    def window(self, n: int | None = None) -> list[PriceSample]:
        """Last n samples, oldest first. All samples when n is None."""
        if n is None or n >= len(self._samples):
            return list(self._samples)
        if n <= 0:
            return []
        return list(self._samples)[-n:]

    def prices(self, n: int | None = None) -> list[Decimal]:
        return [sample.price for sample in self.window(n)]

    @property
    def latest_sample(self) -> PriceSample | None:
        return self._samples[-1] if self._samples else None

    @property
    def latest_price(self) -> Decimal | None:
        return self._samples[-1].price if self._samples else None

    def is_ready(self, min_samples: int) -> bool:
        return len(self._samples) >= min_samples

    # ------------------------------------------------------------------
    # Indicators over the whole buffer
    # ------------------------------------------------------------------

    def simple_moving_average(self, period: int) -> Decimal | None:
        return Indicators.sma(self.prices(), period)

    def exponential_moving_average(self, period: int) -> Decimal | None:
        series = Indicators.ema(self.prices(), period)
        return series[-1] if series else None

    def relative_strength(self, period: int = DEFAULT_RSI_PERIOD) -> Decimal | None:
        return Indicators.rsi(self.prices(), period)

    def volatility_bands(
        self, period: int = DEFAULT_BOLLINGER_PERIOD, k: Decimal = DEFAULT_BOLLINGER_K
    ) -> BollingerBands | None:
        return Indicators.bollinger_bands(self.prices(), period, k)

    def momentum_oscillator(
        self,
        fast: int = DEFAULT_MACD["fast"],
        slow: int = DEFAULT_MACD["slow"],
        signal_period: int = DEFAULT_MACD["signal"],
    ) -> MACDPoint | None:
        series = Indicators.macd(self.prices(), fast, slow, signal_period)
        return series[-1] if series else None

    def annualized_volatility(self, period: int = DEFAULT_VOLATILITY_PERIOD) -> Decimal | None:
        return Indicators.annualized_volatility(self.prices(), period)

    def trend_label(
        self, short_period: int = DEFAULT_SMA_SHORT, long_period: int = DEFAULT_SMA_LONG
    ) -> TrendLabel | None:
        return Indicators.trend_label(self.prices(), short_period, long_period)

    # ------------------------------------------------------------------
    # Strategy input
    # ------------------------------------------------------------------

    def build_indicator_set(self, params: dict[str, Any] | None = None) -> IndicatorSet:
        """
        Compute every indicator strategies consume over the configured window.

        Args:
            params: The "indicators" section of strategy.json. Missing keys
                fall back to the shared defaults.

        Returns:
            Immutable IndicatorSet. Indicators without enough data are None
            or empty.
        """
        params = params or {}
        window_size = int(params.get("window", DEFAULT_INDICATOR_WINDOW))
        closes = self.prices(window_size)

        stoch_cfg = {**DEFAULT_STOCH_RSI, **params.get("stoch_rsi", {})}
        bb_cfg = params.get("bollinger", {})
        macd_cfg = {**DEFAULT_MACD, **params.get("macd", {})}
        sma_short = int(params.get("sma_short", DEFAULT_SMA_SHORT))
        sma_long = int(params.get("sma_long", DEFAULT_SMA_LONG))

        return IndicatorSet(
            current_price=closes[-1] if closes else None,
            sample_count=len(closes),
            prices=tuple(closes),
            sma_short=Indicators.sma(closes, sma_short),
            sma_long=Indicators.sma(closes, sma_long),
            ema_fast=tuple(Indicators.ema(closes, int(params.get("ema_fast", DEFAULT_EMA_FAST)))),
            ema_slow=tuple(Indicators.ema(closes, int(params.get("ema_slow", DEFAULT_EMA_SLOW)))),
            rsi=tuple(
                Indicators.rsi_series(closes, int(params.get("rsi_period", DEFAULT_RSI_PERIOD)))
            ),
            stoch_rsi=tuple(
                Indicators.stoch_rsi(
                    closes,
                    rsi_period=int(stoch_cfg["rsi_period"]),
                    stoch_period=int(stoch_cfg["stoch_period"]),
                    k_period=int(stoch_cfg["k_period"]),
                    d_period=int(stoch_cfg["d_period"]),
                )
            ),
            macd=tuple(
                Indicators.macd(
                    closes,
                    fast=int(macd_cfg["fast"]),
                    slow=int(macd_cfg["slow"]),
                    signal=int(macd_cfg["signal"]),
                )
            ),
            bollinger=Indicators.bollinger_bands(
                closes,
                int(bb_cfg.get("period", DEFAULT_BOLLINGER_PERIOD)),
                Decimal(str(bb_cfg.get("k", DEFAULT_BOLLINGER_K))),
            ),
            volatility=Indicators.annualized_volatility(
                closes, int(params.get("volatility_period", DEFAULT_VOLATILITY_PERIOD))
            ),
            trend=Indicators.trend_label(closes, sma_short, sma_long),
        )

    def market_metrics(self, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Snapshot of the current indicators for status reporting."""
        ind = self.build_indicator_set(params)
        latest = self.latest_sample
        macd = ind.macd[-1] if ind.macd else None
        return {
            "samples": len(self._samples),
            "capacity": self._capacity,
            "current_price": ind.current_price,
            "bid": latest.bid if latest else None,
            "ask": latest.ask if latest else None,
            "last_update": latest.timestamp if latest else None,
            "sma_short": ind.sma_short,
            "sma_long": ind.sma_long,
            "rsi": ind.rsi[-1] if ind.rsi else None,
            "macd": macd.macd if macd else None,
            "macd_signal": macd.signal if macd else None,
            "bollinger": ind.bollinger,
            "volatility": ind.volatility,
            "trend": ind.trend,
        }
