"""
Integration tests for the full instruction -> trade -> reconcile flow.

Every component is real except the exchange (FakeLNMarkets) and the
ticker HTTP call. These tests verify:
1. A pending instruction fires once when its trigger holds
2. Exchange-side changes reach local trades through reconciliation
3. A lost order confirmation is healed by the next reconcile
4. Bulk cancel/close leave the two sides consistent
"""
from decimal import Decimal

import pytest

from trade_scheduler.storage import (
    InstructionStatus,
    OrderKind,
    OrderTemplate,
    PricePercentageRequest,
    PriceRangeTrigger,
    ScheduledInstructionCreate,
    TradeScope,
    TradeSide,
    TradeStatus,
)

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


def market_buy() -> OrderTemplate:
    return OrderTemplate(side=TradeSide.BUY, margin=Decimal("10000"), leverage=Decimal("10"))


def limit_sell(price: str = "45000") -> OrderTemplate:
    return OrderTemplate(
        side=TradeSide.SELL,
        order_kind=OrderKind.LIMIT,
        quantity=Decimal("100"),
        leverage=Decimal("5"),
        price=Decimal(price),
    )


async def create_range(stack, template=None, low="40000", high="42000"):
    return await stack.service.create_scheduled_instruction(
        ScheduledInstructionCreate(
            user_id="user-1",
            name="Buy the dip",
            trigger=PriceRangeTrigger(low=Decimal(low), high=Decimal(high)),
            template=template or market_buy(),
        )
    )


class TestTriggerToTrade:
    """Instruction fires, trade lands locally and on the exchange."""

    async def test_range_instruction_waits_then_fires_once(self, stack, exchange, set_market_price):
        await set_market_price(43000)
        instruction = await create_range(stack)

        first = await stack.scheduler.run_pass()
        assert first.triggered == 0

        await set_market_price(41000)
        second = await stack.scheduler.run_pass()
        third = await stack.scheduler.run_pass()

        assert second.triggered == 1
        assert third.pending == 0
        assert exchange.submitted == 1

        stored = await stack.service.get_scheduled_instruction(instruction.id)
        assert stored.status is InstructionStatus.TRIGGERED
        trade = await stack.service.get_trade(stored.executed_trade_id, "user-1")
        assert trade.status is TradeStatus.RUNNING
        assert trade.external_id in exchange.trades
        assert trade.entry_price == Decimal("41000")

    async def test_percentage_instruction_uses_creation_price(
        self, stack, exchange, set_market_price
    ):
        await set_market_price(40000)
        instruction = await stack.service.create_scheduled_instruction(
            ScheduledInstructionCreate(
                user_id="user-1",
                trigger=PricePercentageRequest(percent=Decimal("5")),
                template=market_buy(),
            )
        )

        await set_market_price(41999)
        assert (await stack.scheduler.run_pass()).triggered == 0

        await set_market_price(42000)
        assert (await stack.scheduler.run_pass()).triggered == 1

        stored = await stack.service.get_scheduled_instruction(instruction.id)
        assert stored.trigger.base_price == Decimal("40000")

    async def test_rejected_order_fails_instruction(self, stack, exchange, set_market_price):
        await set_market_price(41000)
        exchange.reject_next = "Insufficient margin"
        instruction = await create_range(stack)

        result = await stack.scheduler.run_pass()

        assert result.failed == 1
        stored = await stack.service.get_scheduled_instruction(instruction.id)
        assert stored.status is InstructionStatus.FAILED
        assert stored.error_message == "Insufficient margin"
        assert await stack.service.list_trades("user-1") == []

        # Terminal: the next pass does not retry
        await stack.scheduler.run_pass()
        assert exchange.submitted == 0

    async def test_user_without_credentials(self, stack, exchange, set_market_price):
        await set_market_price(41000)
        await stack.service.create_scheduled_instruction(
            ScheduledInstructionCreate(
                user_id="stranger",
                trigger=PriceRangeTrigger(low=Decimal("40000"), high=Decimal("42000")),
                template=market_buy(),
            )
        )

        result = await stack.scheduler.run_pass()

        assert result.failed == 1
        assert exchange.submitted == 0


class TestReconciliation:
    """Exchange-side state flows back into local trades."""

    async def test_exchange_close_reaches_local_trade(self, stack, exchange, set_market_price):
        await set_market_price(41000)
        await create_range(stack)
        await stack.scheduler.run_pass()
        [trade] = await stack.service.list_trades("user-1")

        exchange.settle(trade.external_id, exit_price=45000, pl=950)
        result = await stack.service.reconcile_now("user-1", TradeScope.ALL)
        again = await stack.service.reconcile_now("user-1", TradeScope.ALL)

        assert result.updated == 1
        assert (again.created, again.updated) == (0, 0)
        closed = await stack.service.get_trade(trade.id)
        assert closed.status is TradeStatus.CLOSED
        assert closed.exit_price == Decimal("45000")
        assert closed.pnl == Decimal("950")
        assert closed.closed_at is not None

    async def test_lost_confirmation_is_imported(self, stack, exchange, set_market_price):
        await set_market_price(41000)
        instruction = await create_range(stack)
        original = stack.repos.trades.create_for_instruction

        async def lost_write(*args, **kwargs):
            raise ConnectionError("database went away")

        stack.repos.trades.create_for_instruction = lost_write
        result = await stack.scheduler.run_pass()
        stack.repos.trades.create_for_instruction = original

        assert result.failed == 1
        assert exchange.submitted == 1
        stored = await stack.service.get_scheduled_instruction(instruction.id)
        assert stored.status is InstructionStatus.FAILED
        assert "could not be recorded" in stored.error_message

        sync = await stack.service.reconcile_now("user-1")

        assert sync.created == 1
        [trade] = await stack.service.list_trades("user-1")
        assert trade.status is TradeStatus.RUNNING
        assert trade.external_id in exchange.trades

    async def test_sweep_refreshes_balance(self, stack, exchange, set_market_price):
        await set_market_price(50000)
        exchange.balance = 200000

        results = await stack.reconciler.reconcile_all_users()

        assert [r.user_id for r in results] == ["user-1"]
        # 0.002 BTC at 50000 USD
        assert await stack.repos.users.get_balance("user-1") == (Decimal("200000"), Decimal("100"))


class TestBulkActions:

    async def _seed(self, stack, set_market_price):
        """One running market buy and one resting limit sell."""
        await set_market_price(41000)
        await create_range(stack)
        await create_range(stack, template=limit_sell())
        result = await stack.scheduler.run_pass()
        assert result.triggered == 2
        trades = await stack.service.list_trades("user-1")
        return {t.order_kind: t for t in trades}

    async def test_cancel_all_orders(self, stack, exchange, set_market_price):
        trades = await self._seed(stack, set_market_price)
        assert trades[OrderKind.LIMIT].status is TradeStatus.OPEN

        bulk = await stack.service.cancel_all_orders("user-1")
        sync = await stack.service.reconcile_now("user-1")

        assert bulk.swept == 1
        assert sync.success
        limit = await stack.service.get_trade(trades[OrderKind.LIMIT].id)
        market = await stack.service.get_trade(trades[OrderKind.MARKET].id)
        assert limit.status is TradeStatus.CANCELLED
        assert market.status is TradeStatus.RUNNING

    async def test_close_all_trades(self, stack, exchange, set_market_price):
        trades = await self._seed(stack, set_market_price)

        bulk = await stack.service.close_all_trades("user-1")

        assert bulk.swept == 2
        active = await stack.service.list_active_trades("user-1")
        assert active == []
        assert all(not t["running"] for t in exchange.trades.values())

    async def test_close_single_trade(self, stack, exchange, set_market_price):
        trades = await self._seed(stack, set_market_price)
        market = trades[OrderKind.MARKET]

        closed = await stack.service.close_trade(market.id, "user-1")

        assert closed.status is TradeStatus.CLOSED
        assert exchange.trades[market.external_id]["closed"]
