"""
LN Markets futures REST client for the BTC futures trading agent.

Signed v2 REST over aiohttp. Every request carries:
    LNM-ACCESS-KEY         API key
    LNM-ACCESS-PASSPHRASE  API passphrase
    LNM-ACCESS-TIMESTAMP   unix milliseconds
    LNM-ACCESS-SIGNATURE   base64(HMAC-SHA256(secret, timestamp + METHOD + path + data))

where `data` is the urlencoded query for GET/DELETE and the JSON body for
POST/PUT. HTTP failures are mapped onto the execution.exchange_client
error taxonomy; nothing is retried here (the next agent cycle retries).

Units: quantities passed to open_position() are BTC; LN Markets takes the
margin in sats (floor(quantity * 1e8 / leverage), minimum 1000 sats).
Positions come back with a USD notional quantity; P&L fields (`pl`) are sats
and are converted to USD at the trade's price.

Usage:
    client = LNMarketsClient(key, secret, passphrase)
    positions = await client.get_open_positions()
    await client.close()
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import time
from decimal import ROUND_FLOOR, Decimal
from typing import Any
from urllib.parse import urlencode

import aiohttp

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from execution.exchange_client import (
    AuthenticationError,
    ExchangeClient,
    ExchangeError,
    ExchangeRequestError,
    ExchangeServerError,
    ExchangeTimeoutError,
    InsufficientBalanceError,
    RateLimitError,
)
from shared.constants import MIN_MARGIN_SATS, SATS_PER_BTC
from shared.types import ClosedTrade, Position, PositionSide

_SIDE_CODES = {PositionSide.LONG: "b", PositionSide.SHORT: "s"}


def _sats_to_usd(sats: Any, price: Decimal) -> Decimal:
    return Decimal(str(sats or 0)) / SATS_PER_BTC * price


class LNMarketsClient(ExchangeClient):
    """Async LN Markets futures client (isolated margin, market orders)."""

    name = "lnmarkets"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        passphrase: str,
        network: str | None = None,
        timeout: float | None = None,
    ) -> None:
        if not api_key or not api_secret or not passphrase:
            raise AuthenticationError("LN Markets API key, secret and passphrase are required")
        self._api_key = api_key
        self._api_secret = api_secret.encode()
        self._passphrase = passphrase

        cfg = get_config()
        exchange_cfg = cfg.get_exchange_config()
        agent_cfg = cfg.get_agent_config()

        self._network = network or exchange_cfg.get("network", "testnet")
        base_urls = exchange_cfg.get("base_urls", {})
        if self._network not in base_urls:
            raise ValueError(f"No LN Markets base URL configured for network {self._network!r}")
        self._base_url = base_urls[self._network].rstrip("/")
        self._prefix = "/" + exchange_cfg.get("api_version", "v2")
        self._min_margin = int(exchange_cfg.get("min_margin_sats", MIN_MARGIN_SATS))
        self._timeout: float = (
            timeout if timeout is not None else agent_cfg.get("exchange_timeout_seconds", 10)
        )

        # Lazy-init aiohttp session
        self._session: aiohttp.ClientSession | None = None

        self._logger = setup_module_logger("exchange", "exchange.log", module_folder="Exchange_Logs")
        self._logger.info("LN Markets client ready (network=%s)", self._network)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_open_positions(self) -> list[Position]:
        trades = await self._request("GET", "/futures", params={"type": "running"})
        if not isinstance(trades, list):
            raise ExchangeRequestError(f"Unexpected positions payload: {type(trades).__name__}")
        positions = [self._parse_position(trade) for trade in trades]
        self._logger.debug("Fetched %d running positions", len(positions))
        return positions

    async def open_position(
        self,
        side: PositionSide,
        quantity: Decimal,
        leverage: Decimal,
        stop_loss: Decimal | None = None,
    ) -> Position:
        margin = self.margin_for(quantity, leverage)
        body: dict[str, Any] = {
            "type": "m",
            "side": _SIDE_CODES[side],
            "margin": margin,
            "leverage": float(leverage),
        }
        if stop_loss is not None:
            body["stoploss"] = float(stop_loss)

        self._logger.info(
            "Opening %s: %s BTC at %sx -> margin %d sats", side.value, quantity, leverage, margin
        )
        trade = await self._request("POST", "/futures", body=body)
        position = self._parse_position(trade)
        self._logger.info(
            "Position opened: %s %s $%s @ %s",
            position.id,
            position.side.value,
            position.quantity,
            position.entry_price,
        )
        return position

    async def close_position(self, position_id: str) -> ClosedTrade:
        trade = await self._request("DELETE", "/futures", params={"id": position_id})
        exit_price = Decimal(str(trade.get("exit_price") or trade.get("price") or 0))
        closed = ClosedTrade(
            position_id=str(trade.get("id", position_id)),
            exit_price=exit_price,
            realized_pnl=_sats_to_usd(trade.get("pl"), exit_price),
        )
        self._logger.info(
            "Position closed: %s exit=%s pnl=$%s",
            closed.position_id,
            closed.exit_price,
            closed.realized_pnl,
        )
        return closed

    async def get_balance(self) -> int:
        user = await self._request("GET", "/user")
        return int(user.get("balance", 0))

    async def close(self) -> None:
        """Close the underlying aiohttp session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def margin_for(self, quantity: Decimal, leverage: Decimal) -> int:
        """Margin in sats for a BTC quantity at a leverage."""
        if leverage <= 0:
            raise ExchangeRequestError(f"Invalid leverage {leverage}")
        sats = (quantity * SATS_PER_BTC / leverage).to_integral_value(rounding=ROUND_FLOOR)
        return max(int(sats), self._min_margin)

    def sign(self, timestamp: str, method: str, path: str, data: str) -> str:
        payload = f"{timestamp}{method}{path}{data}".encode()
        digest = hmac.new(self._api_secret, payload, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def _parse_position(self, trade: dict[str, Any]) -> Position:
        try:
            entry_price = Decimal(str(trade.get("entry_price") or trade["price"]))
            stop = trade.get("stoploss")
            return Position(
                id=str(trade["id"]),
                side=PositionSide.LONG if trade["side"] == "b" else PositionSide.SHORT,
                quantity=Decimal(str(trade["quantity"])),
                entry_price=entry_price,
                leverage=Decimal(str(trade["leverage"])),
                margin=int(trade.get("margin", 0)),
                opened_at=float(trade.get("creation_ts", 0)) / 1000,
                unrealized_pnl=_sats_to_usd(trade.get("pl"), entry_price),
                stop_loss=Decimal(str(stop)) if stop else None,
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as exc:
            raise ExchangeRequestError(f"Malformed trade payload: {exc}") from exc

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        """Signed request; returns decoded JSON or raises an ExchangeError."""
        full_path = f"{self._prefix}{path}"
        query = urlencode(params) if params else ""
        data = json.dumps(body, separators=(",", ":")) if body is not None else ""
        timestamp = str(int(time.time() * 1000))

        headers = {
            "LNM-ACCESS-KEY": self._api_key,
            "LNM-ACCESS-PASSPHRASE": self._passphrase,
            "LNM-ACCESS-TIMESTAMP": timestamp,
            "LNM-ACCESS-SIGNATURE": self.sign(
                timestamp, method, full_path, query if method in ("GET", "DELETE") else data
            ),
        }
        url = f"{self._base_url}{full_path}"
        if query:
            url = f"{url}?{query}"
        if body is not None:
            headers["Content-Type"] = "application/json"

        session = await self._ensure_session()
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        try:
            async with session.request(
                method, url, data=data or None, headers=headers, timeout=timeout
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise self._map_error(resp.status, self._error_message(text))
                return json.loads(text) if text else {}
        except ExchangeError:
            raise
        except asyncio.TimeoutError as exc:
            raise ExchangeTimeoutError(f"{method} {full_path} timed out after {self._timeout}s") from exc
        except aiohttp.ClientError as exc:
            raise ExchangeServerError(f"{method} {full_path} failed: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ExchangeServerError(f"{method} {full_path} returned invalid JSON") from exc

    @staticmethod
    def _error_message(text: str) -> str:
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return str(payload.get("message") or payload.get("error") or payload)
        return str(payload)

    def _map_error(self, status: int, message: str) -> ExchangeError:
        self._logger.error("LN Markets HTTP %d: %s", status, message)
        if status in (401, 403):
            return AuthenticationError(message, status)
        if status == 429:
            return RateLimitError(message, status)
        if status >= 500:
            return ExchangeServerError(message, status)
        if "balance" in message.lower():
            return InsufficientBalanceError(message, status)
        return ExchangeRequestError(message, status)
