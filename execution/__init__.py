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
from execution.lnmarkets_client import LNMarketsClient
from execution.paper_exchange import PaperExchange

__all__ = [
    "AuthenticationError",
    "ExchangeClient",
    "ExchangeError",
    "ExchangeRequestError",
    "ExchangeServerError",
    "ExchangeTimeoutError",
    "InsufficientBalanceError",
    "LNMarketsClient",
    "PaperExchange",
    "RateLimitError",
]
