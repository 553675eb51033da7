"""
Exchange collaborator interface for the BTC futures trading agent.

The exchange is the sole source of truth for positions and balance. Every
implementation surfaces failures through the structured error taxonomy
below so the agent and risk gate can branch on them:

    ExchangeError
    ├── InsufficientBalanceError   order rejected for lack of margin
    ├── AuthenticationError        bad or missing credentials (fatal)
    ├── RateLimitError             HTTP 429 (transient)
    ├── ExchangeServerError        HTTP 5xx (transient)
    ├── ExchangeTimeoutError       no response in time (transient)
    └── ExchangeRequestError       any other rejected request

Usage:
    client: ExchangeClient = LNMarketsClient(...)
    positions = await client.get_open_positions()
    balance_sats = await client.get_balance()
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal

from shared.types import ClosedTrade, Position, PositionSide


class ExchangeError(Exception):
    """Base class for exchange collaborator failures."""

    is_transient = False

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class InsufficientBalanceError(ExchangeError):
    """Raised when the exchange rejects an order for insufficient margin."""


class AuthenticationError(ExchangeError):
    """Raised when the exchange rejects the API credentials."""


class RateLimitError(ExchangeError):
    """Raised when the exchange rate-limits the client."""

    is_transient = True


class ExchangeServerError(ExchangeError):
    """Raised on exchange-side (5xx) failures."""

    is_transient = True


class ExchangeTimeoutError(ExchangeError):
    """Raised when an exchange call does not complete in time."""

    is_transient = True


class ExchangeRequestError(ExchangeError):
    """Raised when the exchange rejects a request for any other reason."""


class ExchangeClient(ABC):
    """Boundary contract for futures exchanges."""

    name = "exchange"

    @abstractmethod
    async def get_open_positions(self) -> list[Position]:
        """Authoritative list of running positions."""

    @abstractmethod
    async def open_position(
        self,
        side: PositionSide,
        quantity: Decimal,
        leverage: Decimal,
        stop_loss: Decimal | None = None,
    ) -> Position:
        """
        Open a market position.

        Args:
            side: LONG or SHORT.
            quantity: Size in base units (BTC).
            leverage: Leverage multiplier.
            stop_loss: Optional stop price in quote currency.
        """

    @abstractmethod
    async def close_position(self, position_id: str) -> ClosedTrade:
        """Close a position at market and report the realized P&L."""

    @abstractmethod
    async def get_balance(self) -> int:
        """Account balance in sats."""

    async def close(self) -> None:
        """Release network resources."""
