"""
Exchange Layer - LN Markets REST access.

Public API:
    LNMarketsClient - signed aiohttp client for one account
    ExchangeGateway - per-user client cache used by the core
    ExchangeAPIError, RateLimitError, CredentialsMissingError
    OrderRequest, OrderAck, ExchangeTrade, Ticker
"""
from .client import (
    CredentialsMissingError,
    ExchangeAPIError,
    LNMarketsClient,
    RateLimitError,
)
from .gateway import ExchangeGateway
from .models import ExchangeTrade, OrderAck, OrderRequest, Ticker

__all__ = [
    "CredentialsMissingError",
    "ExchangeAPIError",
    "ExchangeGateway",
    "ExchangeTrade",
    "LNMarketsClient",
    "OrderAck",
    "OrderRequest",
    "RateLimitError",
    "Ticker",
]
