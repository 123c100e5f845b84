"""
Market Snapshot Provider - latest BTC/USD ticker for trigger evaluation.

Polls the public LN Markets futures ticker, stores the result in
market_data (one row per symbol) and keeps an in-process copy so the
scheduler can read prices without a round trip.

A snapshot without a positive last price counts as absent: price
triggers treat it as "not yet", never as an error.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx

from trade_scheduler.exchange.models import Ticker
from trade_scheduler.storage.models import DEFAULT_SYMBOL, MarketSnapshot

logger = logging.getLogger(__name__)

LNM_PUBLIC_API = {
    "mainnet": "https://api.lnmarkets.com",
    "testnet": "https://api.testnet.lnmarkets.com",
}
TICKER_PATH = "/v2/futures/ticker"


class MarketSnapshotProvider:
    """
    Supplies the latest known market snapshot per symbol.

    Usage:
        provider = MarketSnapshotProvider(market_repo, network="testnet")
        await provider.refresh()                     # background task
        price = await provider.get_latest_price()    # Decimal or None
    """

    def __init__(
        self,
        market_repo,
        network: str = "mainnet",
        symbol: str = DEFAULT_SYMBOL,
        timeout: float = 10.0,
    ) -> None:
        if network not in LNM_PUBLIC_API:
            raise ValueError(f"Unknown LN Markets network: {network}")
        self._repo = market_repo
        self._url = f"{LNM_PUBLIC_API[network]}{TICKER_PATH}"
        self._symbol = symbol
        self._timeout = timeout
        self._latest: dict[str, MarketSnapshot] = {}

    @property
    def symbol(self) -> str:
        return self._symbol

    async def fetch_ticker(self) -> Ticker:
        """GET the public ticker. Raises httpx errors on failure."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.get(self._url)
            resp.raise_for_status()
            data = resp.json()

        if not isinstance(data, dict):
            raise ValueError(f"Unexpected ticker response type: {type(data)}")
        return Ticker.from_api(data)

    async def refresh(self) -> Optional[MarketSnapshot]:
        """
        Fetch and store a new snapshot.

        Returns the stored snapshot, or None if the exchange returned no
        usable price (the previous snapshot is kept in that case).
        """
        ticker = await self.fetch_ticker()
        snapshot = MarketSnapshot(
            symbol=self._symbol,
            last_price=ticker.last_price,
            index_price=ticker.index_price,
            bid_price=ticker.bid_price,
            ask_price=ticker.ask_price,
            funding_rate=ticker.carry_fee_rate,
            next_funding_time=ticker.carry_fee_time,
            updated_at=datetime.now(timezone.utc),
        )
        if not snapshot.is_usable:
            logger.warning(f"Ticker for {self._symbol} has no usable last price, keeping previous")
            return None

        stored = await self._repo.upsert(snapshot)
        self._latest[stored.symbol] = stored
        logger.debug(f"Market snapshot {stored.symbol}: last={stored.last_price}")
        return stored

    async def get_snapshot(self, symbol: Optional[str] = None) -> Optional[MarketSnapshot]:
        """Latest snapshot for a symbol, from memory or storage."""
        symbol = symbol or self._symbol
        snapshot = self._latest.get(symbol)
        if snapshot is None:
            snapshot = await self._repo.get(symbol)
            if snapshot is not None:
                self._latest[symbol] = snapshot
        return snapshot

    async def get_latest_price(self, symbol: Optional[str] = None) -> Optional[Decimal]:
        """Last price, or None when no usable snapshot exists."""
        snapshot = await self.get_snapshot(symbol)
        if snapshot is None or not snapshot.is_usable:
            return None
        return snapshot.last_price
