"""
Core layer test fixtures.

Components run against the in-memory repositories and a mocked
exchange gateway. Nothing here talks to LN Markets.
"""
import itertools
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from trade_scheduler.core.scheduler import SchedulerConfig, TriggerScheduler
from trade_scheduler.exchange.models import OrderAck
from trade_scheduler.execution.executor import TradeExecutor
from trade_scheduler.storage.backends import memory_repositories
from trade_scheduler.storage.models import (
    DEFAULT_SYMBOL,
    MarketSnapshot,
    OrderTemplate,
    PriceRangeTrigger,
    ScheduledInstruction,
    TradeSide,
)


class FakeSnapshotProvider:
    """MarketSnapshotProvider stand-in with a settable price."""

    symbol = DEFAULT_SYMBOL

    def __init__(self, price: Optional[Decimal] = None):
        self.price = price
        self.calls = 0

    def set_price(self, price: Optional[Decimal]) -> None:
        self.price = price

    async def get_snapshot(self, symbol: Optional[str] = None) -> Optional[MarketSnapshot]:
        self.calls += 1
        if self.price is None:
            return None
        return MarketSnapshot(symbol=symbol or DEFAULT_SYMBOL, last_price=self.price)

    async def get_latest_price(self, symbol: Optional[str] = None) -> Optional[Decimal]:
        return self.price


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def repos():
    return memory_repositories()


@pytest.fixture
def provider() -> FakeSnapshotProvider:
    return FakeSnapshotProvider(Decimal("41000"))


@pytest.fixture
def exchange():
    """ExchangeGateway double that accepts every order, ext-1, ext-2, ..."""
    ids = itertools.count(1)

    async def accept(user_id, request):
        return OrderAck(external_id=f"ext-{next(ids)}", entry_price=Decimal("41000"))

    gateway = MagicMock()
    gateway.submit_order = AsyncMock(
        side_effect=accept,
        return_value=OrderAck(external_id="ext-1", entry_price=Decimal("41000")),
    )
    return gateway


@pytest.fixture
def executor(exchange, repos, clock):
    return TradeExecutor(exchange, repos.trades, clock=clock)


@pytest.fixture
def scheduler(repos, provider, executor, clock):
    return TriggerScheduler(
        repos.instructions,
        provider,
        executor,
        config=SchedulerConfig(poll_interval_seconds=30, max_concurrency=5),
        clock=clock,
    )


@pytest.fixture
def template() -> OrderTemplate:
    return OrderTemplate(side=TradeSide.BUY, margin=Decimal("10000"), leverage=Decimal("10"))


@pytest.fixture
def make_instruction(repos, template):
    """Store a pending instruction; price range 40000-42000 unless given a trigger."""

    async def _make(trigger=None, user_id: str = "user-1") -> ScheduledInstruction:
        return await repos.instructions.create(
            ScheduledInstruction(
                user_id=user_id,
                trigger=trigger or PriceRangeTrigger(low=Decimal("40000"), high=Decimal("42000")),
                template=template,
            )
        )

    return _make
