"""
Execution layer test fixtures.

The exchange gateway is always a mock; storage is the in-memory backend.
"""
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from trade_scheduler.exchange.models import ExchangeTrade, OrderAck
from trade_scheduler.storage.backends import memory_repositories
from trade_scheduler.storage.models import (
    OrderKind,
    Trade,
    TradeSide,
    TradeStatus,
    TradeType,
)


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
def exchange():
    """ExchangeGateway double."""
    gateway = MagicMock()
    gateway.submit_order = AsyncMock(
        return_value=OrderAck(
            external_id="ext-1",
            entry_price=Decimal("41000"),
            margin=Decimal("10000"),
            liquidation_price=Decimal("37300"),
        )
    )
    gateway.fetch_trades = AsyncMock(return_value=[])
    gateway.close_trade = AsyncMock()
    gateway.cancel_trade = AsyncMock()
    gateway.close_all = AsyncMock()
    gateway.cancel_all = AsyncMock()
    gateway.get_balance = AsyncMock(return_value=Decimal("150000"))
    return gateway


@pytest.fixture
def make_remote():
    """Build an ExchangeTrade with the given flags."""

    def _make(external_id: str, **overrides) -> ExchangeTrade:
        values = dict(
            external_id=external_id,
            trade_type=TradeType.FUTURES,
            side=TradeSide.BUY,
            order_kind=OrderKind.MARKET,
            running=True,
            entry_price=Decimal("41000"),
            margin=Decimal("10000"),
            leverage=Decimal("10"),
            pnl=Decimal("0"),
        )
        values.update(overrides)
        return ExchangeTrade(**values)

    return _make


@pytest.fixture
def make_local(repos):
    """Store a local Trade row."""

    async def _make(external_id: str, status: TradeStatus, user_id: str = "user-1", **fields):
        return await repos.trades.create(
            Trade(
                user_id=user_id,
                external_id=external_id,
                side=TradeSide.BUY,
                status=status,
                **fields,
            )
        )

    return _make
