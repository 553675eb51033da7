"""
In-memory simulated exchange for dry-run mode.

Implements the ExchangeClient contract against a local sats balance with
isolated-margin accounting and a flat taker fee. Stop-losses are enforced
lazily: get_open_positions() settles any position whose stop was crossed by
the latest price, so the agent sees it disappear exactly as it would on the
real exchange.

PaperExchange is selected only by configuration (agent.json dry_run). It is
never substituted for the live client when the live client fails.

Usage:
    exchange = PaperExchange(price_source=lambda: history.latest_price)
    position = await exchange.open_position(PositionSide.LONG, Decimal("0.0001"), Decimal("2"))
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import replace
from decimal import ROUND_FLOOR, Decimal

from bot_logging.logger_manager import setup_module_logger
from config.loader import get_config
from execution.exchange_client import (
    ExchangeClient,
    ExchangeRequestError,
    InsufficientBalanceError,
)
from shared.constants import MIN_MARGIN_SATS, SATS_PER_BTC
from shared.types import ClosedTrade, Position, PositionSide


class PaperExchange(ExchangeClient):
    """Simulated isolated-margin futures account."""

    name = "paper"

    def __init__(
        self,
        price_source: Callable[[], Decimal | None],
        starting_balance_sats: int | None = None,
        fee_rate: Decimal | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._price_source = price_source
        self._clock = clock

        exchange_cfg = get_config().get_exchange_config()
        paper_cfg = exchange_cfg.get("paper", {})
        self._balance = int(
            starting_balance_sats
            if starting_balance_sats is not None
            else paper_cfg.get("starting_balance_sats", 100_000)
        )
        self._fee_rate = (
            fee_rate if fee_rate is not None else Decimal(str(paper_cfg.get("fee_rate", "0.001")))
        )
        self._min_margin = int(exchange_cfg.get("min_margin_sats", MIN_MARGIN_SATS))

        self._positions: dict[str, Position] = {}
        self._fees: dict[str, int] = {}
        self._closed: list[ClosedTrade] = []

        self._logger = setup_module_logger("exchange", "exchange.log", module_folder="Exchange_Logs")
        self._logger.info(
            "Paper exchange ready: balance=%d sats fee_rate=%s", self._balance, self._fee_rate
        )

    @property
    def closed_trades(self) -> list[ClosedTrade]:
        return list(self._closed)

    # ------------------------------------------------------------------
    # ExchangeClient
    # ------------------------------------------------------------------

    async def get_open_positions(self) -> list[Position]:
        price = self._price_source()
        if price is not None:
            for position in list(self._positions.values()):
                if self._stop_crossed(position, price):
                    self._logger.info(
                        "Paper stop-loss hit: %s stop=%s price=%s",
                        position.id,
                        position.stop_loss,
                        price,
                    )
                    self._settle(position.id, price)
            return [
                replace(p, unrealized_pnl=p.pnl_at(price)) for p in self._positions.values()
            ]
        return list(self._positions.values())

    async def open_position(
        self,
        side: PositionSide,
        quantity: Decimal,
        leverage: Decimal,
        stop_loss: Decimal | None = None,
    ) -> Position:
        price = self._current_price()
        if quantity <= 0 or leverage <= 0:
            raise ExchangeRequestError(f"Invalid order: quantity={quantity} leverage={leverage}")

        sats = (quantity * SATS_PER_BTC / leverage).to_integral_value(rounding=ROUND_FLOOR)
        margin = max(int(sats), self._min_margin)
        notional_sats = Decimal(margin) * leverage
        fee = int((notional_sats * self._fee_rate).to_integral_value(rounding=ROUND_FLOOR))

        if margin + fee > self._balance:
            raise InsufficientBalanceError(
                f"Insufficient balance: need {margin + fee} sats, have {self._balance}", 400
            )

        self._balance -= margin + fee
        position = Position(
            id=uuid.uuid4().hex,
            side=side,
            quantity=notional_sats / SATS_PER_BTC * price,
            entry_price=price,
            leverage=leverage,
            margin=margin,
            opened_at=self._clock(),
            stop_loss=stop_loss,
        )
        self._positions[position.id] = position
        self._fees[position.id] = fee
        self._logger.info(
            "Paper open: %s %s $%s @ %s margin=%d fee=%d",
            position.id,
            side.value,
            position.quantity,
            price,
            margin,
            fee,
        )
        return position

    async def close_position(self, position_id: str) -> ClosedTrade:
        if position_id not in self._positions:
            raise ExchangeRequestError(f"Position {position_id} not found", 404)
        return self._settle(position_id, self._current_price())

    async def get_balance(self) -> int:
        return self._balance

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _current_price(self) -> Decimal:
        price = self._price_source()
        if price is None or price <= 0:
            raise ExchangeRequestError("No market price available yet")
        return price

    @staticmethod
    def _stop_crossed(position: Position, price: Decimal) -> bool:
        if position.stop_loss is None:
            return False
        if position.side is PositionSide.LONG:
            return price <= position.stop_loss
        return price >= position.stop_loss

    def _settle(self, position_id: str, price: Decimal) -> ClosedTrade:
        position = self._positions.pop(position_id)
        self._fees.pop(position_id, None)

        pnl_usd = position.pnl_at(price)
        pnl_sats = int((pnl_usd / price * SATS_PER_BTC).to_integral_value(rounding=ROUND_FLOOR))
        # Isolated margin: a loss never exceeds the posted margin
        pnl_sats = max(pnl_sats, -position.margin)
        self._balance += position.margin + pnl_sats

        closed = ClosedTrade(
            position_id=position_id,
            exit_price=price,
            realized_pnl=Decimal(pnl_sats) / SATS_PER_BTC * price,
        )
        self._closed.append(closed)
        self._logger.info(
            "Paper close: %s exit=%s pnl=%d sats balance=%d",
            position_id,
            price,
            pnl_sats,
            self._balance,
        )
        return closed
