"""
Tests for TradeExecutor.

These tests verify:
- A placed order is recorded and the instruction flips to TRIGGERED together
- Exchange rejections surface as ExecutionError and record nothing
- An order placed but not recorded carries its exchange id in the error
"""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from trade_scheduler.exchange.client import ExchangeAPIError
from trade_scheduler.exchange.models import OrderRequest
from trade_scheduler.execution.executor import ExecutionError, TradeExecutor, initial_status
from trade_scheduler.execution.reconciler import StateReconciler
from trade_scheduler.storage.models import (
    InstructionStatus,
    OrderKind,
    OrderTemplate,
    PriceRangeTrigger,
    ScheduledInstruction,
    TradeSide,
    TradeStatus,
    TradeType,
)


@pytest.fixture
def executor(exchange, repos, clock):
    return TradeExecutor(exchange, repos.trades, clock=clock)


@pytest.fixture
def make_instruction(repos):

    async def _make(template: OrderTemplate) -> ScheduledInstruction:
        return await repos.instructions.create(
            ScheduledInstruction(
                user_id="user-1",
                trigger=PriceRangeTrigger(low=Decimal("40000"), high=Decimal("42000")),
                template=template,
            )
        )

    return _make


@pytest.fixture
def market_template():
    return OrderTemplate(
        side=TradeSide.BUY,
        margin=Decimal("10000"),
        leverage=Decimal("10"),
        take_profit=Decimal("45000"),
    )


class TestInitialStatus:

    def test_market_futures_running(self):
        request = OrderRequest(trade_type=TradeType.FUTURES, side=TradeSide.BUY)
        assert initial_status(request) is TradeStatus.RUNNING

    def test_limit_futures_open(self):
        request = OrderRequest(
            trade_type=TradeType.FUTURES, side=TradeSide.BUY, order_kind=OrderKind.LIMIT
        )
        assert initial_status(request) is TradeStatus.OPEN

    def test_options_running(self):
        request = OrderRequest(trade_type=TradeType.OPTIONS, side=TradeSide.BUY)
        assert initial_status(request) is TradeStatus.RUNNING


@pytest.mark.asyncio
class TestExecute:

    async def test_success_records_trade_and_links_instruction(
        self, executor, exchange, repos, market_template, make_instruction, now
    ):
        instruction = await make_instruction(market_template)

        trade = await executor.execute(instruction)

        assert trade.id is not None
        assert trade.external_id == "ext-1"
        assert trade.scheduled_trade_id == instruction.id
        assert trade.status is TradeStatus.RUNNING
        assert trade.entry_price == Decimal("41000")
        assert trade.take_profit == Decimal("45000")
        assert trade.liquidation_price == Decimal("37300")
        assert trade.instrument_name == "BTC/USD"

        stored = await repos.instructions.get(instruction.id)
        assert stored.status is InstructionStatus.TRIGGERED
        assert stored.executed_trade_id == trade.id
        assert stored.executed_at == now

        user_id, request = exchange.submit_order.await_args.args
        assert user_id == "user-1"
        assert request.margin == Decimal("10000")

    async def test_limit_order_starts_open(self, executor, make_instruction):
        template = OrderTemplate(
            side=TradeSide.SELL,
            order_kind=OrderKind.LIMIT,
            quantity=Decimal("100"),
            leverage=Decimal("5"),
            price=Decimal("45000"),
        )
        instruction = await make_instruction(template)

        trade = await executor.execute(instruction)

        assert trade.status is TradeStatus.OPEN
        assert trade.limit_price == Decimal("45000")

    async def test_insufficient_margin_records_nothing(
        self, executor, exchange, repos, market_template, make_instruction
    ):
        exchange.submit_order.side_effect = ExchangeAPIError("Insufficient margin", status_code=400)
        instruction = await make_instruction(market_template)

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(instruction)

        assert exc_info.value.message == "Insufficient margin"
        assert exc_info.value.external_id is None
        assert await repos.trades.count() == 0
        stored = await repos.instructions.get(instruction.id)
        assert stored.status is InstructionStatus.PENDING

    async def test_unexpected_submit_error_wrapped(
        self, executor, exchange, market_template, make_instruction
    ):
        exchange.submit_order.side_effect = ConnectionResetError("reset by peer")
        instruction = await make_instruction(market_template)

        with pytest.raises(ExecutionError, match="Order submission failed"):
            await executor.execute(instruction)

    async def test_placed_but_not_recorded_keeps_exchange_id(
        self, executor, exchange, repos, market_template, make_instruction
    ):
        instruction = await make_instruction(market_template)
        repos.trades.create_for_instruction = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(instruction)

        assert exc_info.value.external_id == "ext-1"
        assert "could not be recorded" in exc_info.value.message
        exchange.submit_order.assert_awaited_once()

    async def test_already_triggered_instruction_not_recorded_twice(
        self, executor, repos, market_template, make_instruction
    ):
        instruction = await make_instruction(market_template)
        await executor.execute(instruction)

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(instruction)

        assert exc_info.value.external_id == "ext-1"
        assert await repos.trades.count() == 1

    async def test_trade_imported_during_submission_is_linked_not_duplicated(
        self, executor, exchange, repos, market_template, make_instruction, make_remote, clock
    ):
        instruction = await make_instruction(market_template)
        reconciler = StateReconciler(exchange, repos.trades, clock=clock)
        ack = exchange.submit_order.return_value

        async def submit_while_reconciling(user_id, request):
            exchange.fetch_trades.return_value = [make_remote(ack.external_id)]
            sync = await reconciler.reconcile(user_id)
            assert sync.created == 1
            return ack

        exchange.submit_order.side_effect = submit_while_reconciling

        trade = await executor.execute(instruction)

        assert await repos.trades.count() == 1
        assert trade.scheduled_trade_id == instruction.id
        stored = await repos.instructions.get(instruction.id)
        assert stored.status is InstructionStatus.TRIGGERED
        assert stored.executed_trade_id == trade.id

        # The next sweep sees the linked row and imports nothing
        again = await reconciler.reconcile("user-1")
        assert again.created == 0

    async def test_instruction_without_id(self, executor, exchange, market_template):
        instruction = ScheduledInstruction(
            user_id="user-1",
            trigger=PriceRangeTrigger(low=Decimal("1"), high=Decimal("2")),
            template=market_template,
        )

        with pytest.raises(ExecutionError):
            await executor.execute(instruction)

        exchange.submit_order.assert_not_called()
