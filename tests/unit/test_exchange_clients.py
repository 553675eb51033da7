"""
Unit tests for execution/lnmarkets_client.py and execution/paper_exchange.py.

Tests verify:
- LN Markets request signing (HMAC-SHA256 over timestamp + method + path + data)
- Margin conversion: floor(quantity * 1e8 / leverage), 1000 sats minimum
- Trade payload parsing (USD notional, ms timestamps, sats P&L -> USD)
- HTTP status mapping onto the exchange error taxonomy
- Paper exchange isolated-margin accounting, fees, stop-losses and errors

Mock strategy: LN Markets HTTP is mocked with aioresponses (callbacks capture
headers and bodies). No real API requests are made.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import re
from decimal import Decimal
from unittest.mock import MagicMock, patch

import aiohttp
import pytest
from aioresponses import CallbackResult, aioresponses

from execution.exchange_client import (
    AuthenticationError,
    ExchangeRequestError,
    ExchangeServerError,
    ExchangeTimeoutError,
    InsufficientBalanceError,
    RateLimitError,
)
from execution.lnmarkets_client import LNMarketsClient
from execution.paper_exchange import PaperExchange
from shared.types import PositionSide

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

SECRET = "test-secret"

# aioresponses needs regex patterns to match URLs with query params
RE_FUTURES = re.compile(r"https://api\.testnet4\.lnmarkets\.com/v2/futures(\?.*)?$")
RE_USER = re.compile(r"https://api\.testnet4\.lnmarkets\.com/v2/user$")

SAMPLE_TRADE = {
    "id": "7f1d2c",
    "side": "b",
    "quantity": 2.04,
    "price": 102000,
    "leverage": 2,
    "margin": 1000,
    "creation_ts": 1_700_000_000_000,
    "pl": 100,
    "stoploss": 99960,
}


def _d(v) -> Decimal:
    return Decimal(str(v))


@pytest.fixture
def patched_config(mock_config_loader):
    with (
        patch("execution.lnmarkets_client.get_config", return_value=mock_config_loader),
        patch("execution.lnmarkets_client.setup_module_logger", return_value=MagicMock()),
        patch("execution.paper_exchange.get_config", return_value=mock_config_loader),
        patch("execution.paper_exchange.setup_module_logger", return_value=MagicMock()),
    ):
        yield mock_config_loader


@pytest.fixture
async def client(patched_config):
    lnm = LNMarketsClient("key", SECRET, "passphrase")
    yield lnm
    await lnm.close()


# ===========================================================================
# LN Markets client
# ===========================================================================


class TestLNMarketsSetup:
    def test_missing_credentials(self, patched_config):
        with pytest.raises(AuthenticationError):
            LNMarketsClient("key", "", "passphrase")

    def test_unknown_network(self, patched_config):
        with pytest.raises(ValueError, match="regtest"):
            LNMarketsClient("key", SECRET, "passphrase", network="regtest")

    def test_signature(self, patched_config):
        client = LNMarketsClient("key", SECRET, "passphrase")
        expected = base64.b64encode(
            hmac.new(
                SECRET.encode(), b"1700000000000GET/v2/futurestype=running", hashlib.sha256
            ).digest()
        ).decode()
        assert client.sign("1700000000000", "GET", "/v2/futures", "type=running") == expected


class TestMarginConversion:
    def test_floor_division(self, patched_config):
        client = LNMarketsClient("key", SECRET, "passphrase")
        assert client.margin_for(_d("0.001"), _d(2)) == 50_000
        assert client.margin_for(_d("0.0012345"), _d(3)) == 41_150

    def test_minimum_margin(self, patched_config):
        client = LNMarketsClient("key", SECRET, "passphrase")
        assert client.margin_for(_d("0.00002"), _d(2)) == 1000
        assert client.margin_for(_d("0.000001"), _d(2)) == 1000

    def test_invalid_leverage(self, patched_config):
        client = LNMarketsClient("key", SECRET, "passphrase")
        with pytest.raises(ExchangeRequestError):
            client.margin_for(_d("0.001"), _d(0))


class TestLNMarketsRequests:
    async def test_get_open_positions(self, client):
        captured = {}

        def _capture(url, **kwargs):
            captured["url"] = str(url)
            captured["headers"] = kwargs["headers"]
            return CallbackResult(payload=[SAMPLE_TRADE])

        with aioresponses() as mocked:
            mocked.get(RE_FUTURES, callback=_capture)
            positions = await client.get_open_positions()

        assert len(positions) == 1
        position = positions[0]
        assert position.id == "7f1d2c"
        assert position.side is PositionSide.LONG
        assert position.quantity == _d("2.04")
        assert position.entry_price == _d(102000)
        assert position.margin == 1000
        assert position.opened_at == 1_700_000_000.0
        assert position.unrealized_pnl == _d("0.102")
        assert position.stop_loss == _d(99960)

        headers = captured["headers"]
        assert "type=running" in captured["url"]
        assert headers["LNM-ACCESS-KEY"] == "key"
        assert headers["LNM-ACCESS-PASSPHRASE"] == "passphrase"
        assert headers["LNM-ACCESS-SIGNATURE"] == client.sign(
            headers["LNM-ACCESS-TIMESTAMP"], "GET", "/v2/futures", "type=running"
        )

    async def test_open_position_body(self, client):
        captured = {}

        def _capture(url, **kwargs):
            captured["data"] = kwargs["data"]
            captured["headers"] = kwargs["headers"]
            return CallbackResult(payload=SAMPLE_TRADE)

        with aioresponses() as mocked:
            mocked.post(RE_FUTURES, callback=_capture)
            position = await client.open_position(
                PositionSide.LONG, _d("0.00002"), _d(2), _d(99960)
            )

        body = json.loads(captured["data"])
        assert body == {"type": "m", "side": "b", "margin": 1000, "leverage": 2.0, "stoploss": 99960.0}
        assert captured["headers"]["Content-Type"] == "application/json"
        assert captured["headers"]["LNM-ACCESS-SIGNATURE"] == client.sign(
            captured["headers"]["LNM-ACCESS-TIMESTAMP"], "POST", "/v2/futures", captured["data"]
        )
        assert position.id == "7f1d2c"

    async def test_short_side_code(self, client):
        captured = {}

        def _capture(url, **kwargs):
            captured["data"] = kwargs["data"]
            return CallbackResult(payload={**SAMPLE_TRADE, "side": "s"})

        with aioresponses() as mocked:
            mocked.post(RE_FUTURES, callback=_capture)
            position = await client.open_position(PositionSide.SHORT, _d("0.001"), _d(2))

        body = json.loads(captured["data"])
        assert body["side"] == "s"
        assert "stoploss" not in body
        assert position.side is PositionSide.SHORT

    async def test_close_position(self, client):
        with aioresponses() as mocked:
            mocked.delete(RE_FUTURES, payload={"id": "7f1d2c", "exit_price": 103000, "pl": 1000})
            closed = await client.close_position("7f1d2c")

        assert closed.position_id == "7f1d2c"
        assert closed.exit_price == _d(103000)
        assert closed.realized_pnl == _d("1.03")

    async def test_get_balance(self, client):
        with aioresponses() as mocked:
            mocked.get(RE_USER, payload={"balance": 123456, "username": "bot"})
            assert await client.get_balance() == 123456

    async def test_malformed_trade(self, client):
        with aioresponses() as mocked:
            mocked.get(RE_FUTURES, payload=[{"id": "x"}])
            with pytest.raises(ExchangeRequestError, match="Malformed"):
                await client.get_open_positions()

    async def test_unexpected_positions_payload(self, client):
        with aioresponses() as mocked:
            mocked.get(RE_FUTURES, payload={"trades": []})
            with pytest.raises(ExchangeRequestError):
                await client.get_open_positions()


class TestLNMarketsErrorMapping:
    @pytest.mark.parametrize(
        "status,body,error",
        [
            (401, {"message": "Invalid signature"}, AuthenticationError),
            (403, {"message": "Forbidden"}, AuthenticationError),
            (429, {"message": "Too many requests"}, RateLimitError),
            (502, "Bad gateway", ExchangeServerError),
            (400, {"message": "Insufficient balance"}, InsufficientBalanceError),
            (400, {"message": "Invalid leverage"}, ExchangeRequestError),
        ],
    )
    async def test_status_mapping(self, client, status, body, error):
        with aioresponses() as mocked:
            if isinstance(body, dict):
                mocked.get(RE_USER, status=status, payload=body)
            else:
                mocked.get(RE_USER, status=status, body=body)
            with pytest.raises(error) as exc_info:
                await client.get_balance()
        assert exc_info.value.status == status

    async def test_error_message_from_payload(self, client):
        with aioresponses() as mocked:
            mocked.get(RE_USER, status=400, payload={"message": "Invalid leverage"})
            with pytest.raises(ExchangeRequestError, match="Invalid leverage"):
                await client.get_balance()

    async def test_timeout(self, client):
        with aioresponses() as mocked:
            mocked.get(RE_USER, exception=asyncio.TimeoutError())
            with pytest.raises(ExchangeTimeoutError):
                await client.get_balance()

    async def test_connection_error(self, client):
        with aioresponses() as mocked:
            mocked.get(RE_USER, exception=aiohttp.ClientConnectionError("refused"))
            with pytest.raises(ExchangeServerError):
                await client.get_balance()

    def test_transient_flags(self):
        assert RateLimitError("x").is_transient
        assert ExchangeServerError("x").is_transient
        assert not AuthenticationError("x").is_transient


# ===========================================================================
# Paper exchange
# ===========================================================================


class _Price:
    def __init__(self, value="100000") -> None:
        self.value = _d(value) if value is not None else None

    def __call__(self):
        return self.value


@pytest.fixture
def price():
    return _Price()


@pytest.fixture
def paper(patched_config, price):
    return PaperExchange(price_source=price, clock=lambda: 1_700_000_000.0)


class TestPaperExchange:
    async def test_open_deducts_margin_and_fee(self, paper):
        position = await paper.open_position(PositionSide.LONG, _d("0.001"), _d(2))

        assert position.margin == 50_000
        assert position.quantity == _d(100)
        assert position.entry_price == _d(100000)
        assert position.opened_at == 1_700_000_000.0
        # 100000 sats notional * 0.1% fee
        assert await paper.get_balance() == 100_000 - 50_000 - 100

    async def test_minimum_margin(self, paper):
        position = await paper.open_position(PositionSide.LONG, _d("0.00001"), _d(2))
        assert position.margin == 1000

    async def test_insufficient_balance(self, paper):
        with pytest.raises(InsufficientBalanceError):
            await paper.open_position(PositionSide.LONG, _d("0.01"), _d(2))
        assert await paper.get_balance() == 100_000

    async def test_invalid_order(self, paper):
        with pytest.raises(ExchangeRequestError):
            await paper.open_position(PositionSide.LONG, _d(0), _d(2))

    async def test_no_price(self, patched_config):
        exchange = PaperExchange(price_source=_Price(None))
        with pytest.raises(ExchangeRequestError, match="No market price"):
            await exchange.open_position(PositionSide.LONG, _d("0.001"), _d(2))

    async def test_close_realizes_pnl(self, paper, price):
        position = await paper.open_position(PositionSide.LONG, _d("0.001"), _d(2))
        price.value = _d(101000)

        closed = await paper.close_position(position.id)

        # $1 profit = floor(990.09) sats at 101000
        assert closed.realized_pnl == _d(990) / _d(100_000_000) * _d(101000)
        assert await paper.get_balance() == 49_900 + 50_000 + 990
        assert await paper.get_open_positions() == []
        assert paper.closed_trades == [closed]

    async def test_close_unknown_position(self, paper):
        with pytest.raises(ExchangeRequestError) as exc_info:
            await paper.close_position("missing")
        assert exc_info.value.status == 404

    async def test_unrealized_pnl(self, paper, price):
        await paper.open_position(PositionSide.SHORT, _d("0.001"), _d(2))
        price.value = _d(99000)
        positions = await paper.get_open_positions()
        assert positions[0].unrealized_pnl == _d(1)

    async def test_stop_loss_settles_on_fetch(self, paper, price):
        await paper.open_position(PositionSide.LONG, _d("0.001"), _d(2), stop_loss=_d(99000))
        price.value = _d(98500)

        assert await paper.get_open_positions() == []
        assert len(paper.closed_trades) == 1
        # -$1.5 at 98500 = floor(-1522.8) sats
        assert await paper.get_balance() == 49_900 + 50_000 - 1523

    async def test_short_stop_loss(self, paper, price):
        await paper.open_position(PositionSide.SHORT, _d("0.001"), _d(2), stop_loss=_d(101000))
        price.value = _d(100500)
        assert len(await paper.get_open_positions()) == 1
        price.value = _d(101000)
        assert await paper.get_open_positions() == []

    async def test_loss_capped_at_margin(self, paper, price):
        position = await paper.open_position(PositionSide.LONG, _d("0.001"), _d(2))
        price.value = _d(40000)
        await paper.close_position(position.id)
        assert await paper.get_balance() == 49_900
