"""
Shared test fixtures for integration tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/trade_scheduler/{component}/tests/conftest.py

The whole engine runs on the in-memory storage backend against
FakeLNMarkets, a stateful stand-in for the LN Markets API. Nothing here
talks to the network.
"""
import itertools
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from trade_scheduler.core import SchedulerConfig, TradeSchedulerService, TriggerScheduler
from trade_scheduler.exchange import ExchangeAPIError, ExchangeGateway
from trade_scheduler.execution import StateReconciler, TradeExecutor
from trade_scheduler.ingestion import MarketSnapshotProvider
from trade_scheduler.storage import UserCredentials, memory_repositories


class FakeLNMarkets:
    """
    Futures account on a pretend exchange.

    Implements the LNMarketsClient methods the gateway calls and keeps
    trades as raw API payloads, so parsing is exercised too.
    """

    def __init__(self, price: float = 41000, balance: int = 1_000_000):
        self.credentials = None
        self.price = price
        self.balance = balance
        self.trades: dict[str, dict] = {}
        self.reject_next: Optional[str] = None
        self.submitted = 0
        self._ids = itertools.count(1)

    @staticmethod
    def _now_ms() -> int:
        return int(datetime.now(timezone.utc).timestamp() * 1000)

    async def new_futures_trade(self, payload: dict) -> dict:
        if self.reject_next:
            message, self.reject_next = self.reject_next, None
            raise ExchangeAPIError(message, status_code=400)
        self.submitted += 1

        trade_id = f"f-{next(self._ids)}"
        is_limit = payload["type"] == "l"
        trade = {
            "id": trade_id,
            "type": payload["type"],
            "side": payload["side"],
            "margin": payload.get("margin", 0),
            "leverage": payload["leverage"],
            "quantity": payload.get("quantity"),
            "price": payload["price"] if is_limit else self.price,
            "entry_price": None if is_limit else self.price,
            "takeprofit": payload.get("takeprofit", 0),
            "stoploss": payload.get("stoploss", 0),
            "pl": 0,
            "opening_fee": 0 if is_limit else 10,
            "closing_fee": 0,
            "sum_carry_fees": 0,
            "open": is_limit,
            "running": not is_limit,
            "canceled": False,
            "closed": False,
            "creation_ts": self._now_ms(),
        }
        self.trades[trade_id] = trade
        return dict(trade)

    async def new_options_trade(self, payload: dict) -> dict:
        raise ExchangeAPIError("Options are not supported by the fake exchange", status_code=400)

    async def get_futures_trades(self, trade_type: str) -> list[dict]:
        if trade_type == "closed":
            return [dict(t) for t in self.trades.values() if t["closed"] or t["canceled"]]
        return [dict(t) for t in self.trades.values() if t[trade_type]]

    async def get_options_trades(self) -> list[dict]:
        return []

    def settle(self, trade_id: str, exit_price: float, pl: int) -> None:
        """Close a running trade on the exchange side (take profit, liquidation...)."""
        self.trades[trade_id].update(
            running=False, closed=True, exit_price=exit_price, pl=pl, closed_ts=self._now_ms()
        )

    async def close_futures_trade(self, trade_id: str) -> dict:
        self.settle(trade_id, self.price, 0)
        return dict(self.trades[trade_id])

    async def close_options_trade(self, trade_id: str) -> dict:
        raise ExchangeAPIError("Options are not supported by the fake exchange", status_code=400)

    async def cancel_futures_trade(self, trade_id: str) -> dict:
        self.trades[trade_id].update(open=False, canceled=True, closed_ts=self._now_ms())
        return dict(self.trades[trade_id])

    async def close_all_futures(self) -> list[dict]:
        closed = []
        for trade in self.trades.values():
            if trade["running"]:
                self.settle(trade["id"], self.price, 0)
                closed.append(dict(trade))
        return closed

    async def cancel_all_futures(self) -> list[dict]:
        cancelled = []
        for trade in self.trades.values():
            if trade["open"]:
                trade.update(open=False, canceled=True, closed_ts=self._now_ms())
                cancelled.append(dict(trade))
        return cancelled

    async def get_user(self) -> dict:
        return {"uid": "fake", "balance": self.balance}

    async def close(self) -> None:
        pass


@pytest.fixture
def exchange() -> FakeLNMarkets:
    return FakeLNMarkets()


@pytest_asyncio.fixture
async def stack(exchange):
    """
    Fully wired engine for user-1.

    Returns a namespace with repos, gateway, provider, executor,
    scheduler, reconciler and service.
    """
    repos = memory_repositories()
    await repos.users.save_credentials(
        UserCredentials(user_id="user-1", api_key="k", api_secret="s", api_passphrase="p")
    )

    def client_factory(credentials, network):
        exchange.credentials = credentials
        return exchange

    gateway = ExchangeGateway(repos.users, network="testnet", client_factory=client_factory)
    provider = MarketSnapshotProvider(repos.market_data, network="testnet")
    executor = TradeExecutor(gateway, repos.trades)
    scheduler = TriggerScheduler(
        repos.instructions, provider, executor, config=SchedulerConfig(poll_interval_seconds=30)
    )
    reconciler = StateReconciler(
        gateway, repos.trades, repos.users, price_source=provider.get_latest_price
    )
    service = TradeSchedulerService(repos, scheduler, reconciler, provider)

    yield SimpleNamespace(
        repos=repos,
        gateway=gateway,
        provider=provider,
        executor=executor,
        scheduler=scheduler,
        reconciler=reconciler,
        service=service,
    )

    await scheduler.stop()
    await gateway.close()


@pytest.fixture
def set_market_price(stack, exchange):
    """Move the market: the fake exchange price and the cached ticker."""

    async def _set(price) -> None:
        exchange.price = float(price)
        with patch("httpx.AsyncClient") as mock_client:
            mock_response = MagicMock()
            mock_response.json.return_value = {"lastPrice": float(price), "index": float(price)}
            mock_response.raise_for_status = MagicMock()
            mock_client.return_value.__aenter__.return_value.get = AsyncMock(
                return_value=mock_response
            )
            snapshot = await stack.provider.refresh()
        assert snapshot is not None and snapshot.last_price == Decimal(str(float(price)))

    return _set
