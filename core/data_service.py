"""
BTC price feed for the trading agent.

Polls the CoinGecko public API and appends PriceSamples to the shared
PriceHistory. CoinGecko's free tier only returns a last price, so bid/ask
are synthesized around it with a fixed half-spread.

Endpoints:
    - /simple/price             latest price (poll)
    - /coins/{id}/market_chart  intraday history (startup seed)

Caching and rate limiting:
    - latest price cached for cache_ttl_seconds (default 60)
    - polled every poll_interval_seconds (default 90)
    - HTTP 429 doubles the poll interval up to max_backoff_multiplier,
      the next success resets it

Until the first successful fetch the history is simply empty; strategies
treat that as insufficient data and HOLD.

Usage:
    data_service = PriceDataService()
    await data_service.seed_history(history)
    asyncio.create_task(data_service.run(history))
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import aiohttp

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from shared.types import PriceSample

if TYPE_CHECKING:
    from core.market_data import PriceHistory

_DEFAULT_BASE_URL = "https://api.coingecko.com/api/v3"


class PriceDataError(Exception):
    """Raised when the price source fails or returns unusable data."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


# ---------------------------------------------------------------------------
# Cache entry
# ---------------------------------------------------------------------------


class _CacheEntry:
    """In-memory cache entry with TTL."""

    __slots__ = ("data", "expires_at")

    def __init__(self, data: Any, ttl_seconds: float) -> None:
        self.data = data
        self.expires_at = time.monotonic() + ttl_seconds

    @property
    def is_valid(self) -> bool:
        return time.monotonic() < self.expires_at


class PriceDataService:
    """Async CoinGecko price fetcher with TTL cache and 429 backoff."""

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Args:
            session: Shared aiohttp session (created internally if None).
            clock: Timestamp source for samples (unix seconds).
        """
        self._session = session
        self._owns_session = session is None
        self._clock = clock

        cfg = get_config().get_data_service_config()
        coingecko = cfg.get("coingecko", {})
        self._base_url = coingecko.get("base_url", _DEFAULT_BASE_URL).rstrip("/")
        self._coin_id = coingecko.get("coin_id", "bitcoin")
        self._vs_currency = coingecko.get("vs_currency", "usd")
        self._seed_days = coingecko.get("seed_days", 1)

        self._poll_interval: float = cfg.get("poll_interval_seconds", 90)
        self._cache_ttl: float = cfg.get("cache_ttl_seconds", 60)
        self._timeout: float = cfg.get("request_timeout_seconds", 10)
        self._half_spread = Decimal(str(cfg.get("synthetic_half_spread", "10")))
        self._max_backoff: int = cfg.get("max_backoff_multiplier", 8)

        self._cache: dict[str, _CacheEntry] = {}
        self._backoff = 1
        self._running = False

        self._logger = setup_module_logger(
            "data_service", "data_service.log", module_folder="Data_Service_Logs"
        )

    @property
    def backoff(self) -> int:
        """Current poll interval multiplier."""
        return self._backoff

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _get_cached(self, key: str) -> Any | None:
        entry = self._cache.get(key)
        if entry and entry.is_valid:
            self._logger.debug("Cache hit: %s", key)
            return entry.data
        return None

    def _set_cached(self, key: str, data: Any, ttl: float) -> None:
        self._cache[key] = _CacheEntry(data, ttl)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _get_json(self, path: str, params: dict[str, str]) -> Any:
        url = f"{self._base_url}{path}"
        session = await self._get_session()
        try:
            async with session.get(url, params=params) as resp:
                if resp.status == 429:
                    raise PriceDataError(f"Rate limited by {url}", 429)
                if resp.status != 200:
                    raise PriceDataError(
                        f"HTTP {resp.status} from {url}: {await resp.text()}", resp.status
                    )
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise PriceDataError(f"Request failed for {url}: {exc}") from exc

    def _sample(self, price: Decimal, timestamp: float) -> PriceSample:
        return PriceSample(
            price=price,
            timestamp=timestamp,
            bid=price - self._half_spread,
            ask=price + self._half_spread,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_latest(self) -> PriceSample:
        """Latest BTC price; served from cache while it is fresh."""
        cached = self._get_cached("price")
        if cached is not None:
            return cached

        data = await self._get_json(
            "/simple/price",
            {"ids": self._coin_id, "vs_currencies": self._vs_currency},
        )
        try:
            price = Decimal(str(data[self._coin_id][self._vs_currency]))
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise PriceDataError(f"Unexpected price payload: {data!r}") from exc
        if price <= 0:
            raise PriceDataError(f"Non-positive price {price}")

        sample = self._sample(price, self._clock())
        self._set_cached("price", sample, self._cache_ttl)
        self._logger.debug("BTC price: %s", price)
        return sample

    async def fetch_history(self, days: int | None = None) -> list[PriceSample]:
        """Intraday history from market_chart, oldest first."""
        data = await self._get_json(
            f"/coins/{self._coin_id}/market_chart",
            {"vs_currency": self._vs_currency, "days": str(days or self._seed_days)},
        )
        if not isinstance(data, dict) or not isinstance(data.get("prices"), list):
            raise PriceDataError("Unexpected market_chart payload")

        samples: list[PriceSample] = []
        for point in data["prices"]:
            try:
                timestamp_ms, price = point
                sample = self._sample(Decimal(str(price)), float(timestamp_ms) / 1000)
            except (TypeError, ValueError, InvalidOperation) as exc:
                self._logger.debug("Skipping malformed history point %r: %s", point, exc)
                continue
            if sample.price > 0 and (not samples or sample.timestamp > samples[-1].timestamp):
                samples.append(sample)
        return samples

    async def seed_history(self, history: PriceHistory, days: int | None = None) -> int:
        """
        Pre-load history so indicators are available from the first cycle.

        Only samples newer than the history's latest sample are appended.
        Returns the number of samples added.
        """
        samples = await self.fetch_history(days)
        latest = history.latest_sample
        if latest is not None:
            samples = [s for s in samples if s.timestamp > latest.timestamp]
        history.extend(samples[-history.capacity :])
        self._logger.info("Seeded price history with %d samples", len(samples))
        return len(samples)

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def run(self, history: PriceHistory) -> None:
        """Poll loop - designed to be launched as an asyncio.Task."""
        self._running = True
        self._logger.info(
            "Price feed started: %s/%s every %ss", self._coin_id, self._vs_currency, self._poll_interval
        )

        while self._running:
            try:
                sample = await self.fetch_latest()
                latest = history.latest_sample
                if latest is None or sample.timestamp > latest.timestamp:
                    history.append(sample)
                self._backoff = 1
            except asyncio.CancelledError:
                raise
            except PriceDataError as exc:
                if exc.status == 429:
                    self._backoff = min(self._backoff * 2, self._max_backoff)
                    self._logger.warning(
                        "CoinGecko rate limit hit, backing off x%d", self._backoff
                    )
                else:
                    self._logger.warning("Price fetch failed: %s", exc)
            except Exception as exc:
                self._logger.error("Price feed error: %s", exc, exc_info=True)

            await asyncio.sleep(self._poll_interval * self._backoff)

        self._logger.info("Price feed stopped")

    def stop(self) -> None:
        self._running = False
