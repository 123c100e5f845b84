"""
Trade Executor - turns a fired instruction into exchange exposure.

The only path from a dormant instruction to a real order. For each call:

    1. Build an OrderRequest from the instruction's template
    2. Submit it once through the exchange gateway
    3. Insert the local Trade and flip the instruction to TRIGGERED in
       one transaction

Any failure surfaces as ExecutionError with a readable message. If the
order reached the exchange but step 3 failed, the error carries the
exchange trade id; the next reconciliation pass imports that trade.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from trade_scheduler.exchange.client import ExchangeAPIError
from trade_scheduler.exchange.models import OrderAck, OrderRequest
from trade_scheduler.storage.models import (
    OrderKind,
    ScheduledInstruction,
    Trade,
    TradeStatus,
    TradeType,
)

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """An instruction could not be turned into a recorded trade."""

    def __init__(self, message: str, external_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.external_id = external_id


def initial_status(request: OrderRequest) -> TradeStatus:
    """Limit futures rest on the book; market futures and options fill immediately."""
    if request.trade_type is TradeType.FUTURES and request.order_kind is OrderKind.LIMIT:
        return TradeStatus.OPEN
    return TradeStatus.RUNNING


class TradeExecutor:
    """
    Executes scheduled instructions against the exchange.

    Usage:
        executor = TradeExecutor(gateway, trade_repo)
        trade = await executor.execute(instruction)   # raises ExecutionError
    """

    def __init__(
        self,
        exchange,
        trade_repo,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._exchange = exchange
        self._trades = trade_repo
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def build_order_request(self, instruction: ScheduledInstruction) -> OrderRequest:
        return OrderRequest.from_template(instruction.template)

    def _build_trade(
        self, instruction: ScheduledInstruction, request: OrderRequest, ack: OrderAck
    ) -> Trade:
        return Trade(
            user_id=instruction.user_id,
            external_id=ack.external_id,
            scheduled_trade_id=instruction.id,
            trade_type=request.trade_type,
            side=request.side,
            order_kind=request.order_kind,
            status=initial_status(request),
            entry_price=ack.entry_price,
            limit_price=request.price if request.order_kind is OrderKind.LIMIT else None,
            margin=ack.margin if ack.margin is not None else request.margin,
            leverage=request.leverage,
            quantity=ack.quantity if ack.quantity is not None else request.quantity,
            take_profit=request.take_profit,
            stop_loss=request.stop_loss,
            fee=ack.fee,
            liquidation_price=ack.liquidation_price,
            instrument_name=request.instrument_name or instruction.symbol,
            settlement=request.settlement,
        )

    async def execute(self, instruction: ScheduledInstruction) -> Trade:
        """
        Submit the instruction's order and record the resulting trade.

        Returns:
            The stored Trade, linked to the instruction.

        Raises:
            ExecutionError: on rejection, network failure, or failure to
                record an order the exchange accepted.
        """
        if instruction.id is None:
            raise ExecutionError("Instruction has no id")

        try:
            request = self.build_order_request(instruction)
        except (TypeError, ValueError) as e:
            raise ExecutionError(f"Invalid order template: {e}") from e

        logger.info(
            f"Submitting {request.order_kind.value} {request.side.value} "
            f"{request.trade_type.value} order for instruction {instruction.id} "
            f"(user {instruction.user_id})"
        )

        try:
            ack = await self._exchange.submit_order(instruction.user_id, request)
        except asyncio.CancelledError:
            raise
        except ExchangeAPIError as e:
            raise ExecutionError(str(e)) from e
        except Exception as e:
            raise ExecutionError(f"Order submission failed: {e}") from e

        trade = self._build_trade(instruction, request, ack)
        try:
            stored = await self._trades.create_for_instruction(
                trade, instruction.id, self._clock()
            )
        except asyncio.CancelledError:
            logger.error(
                f"Cancelled after exchange accepted order {ack.external_id} "
                f"for instruction {instruction.id}; reconciliation will import it"
            )
            raise
        except Exception as e:
            logger.error(
                f"Order {ack.external_id} placed for instruction {instruction.id} "
                f"but recording it failed: {e}"
            )
            raise ExecutionError(
                f"Order {ack.external_id} was placed but could not be recorded: {e}",
                external_id=ack.external_id,
            ) from e

        logger.info(
            f"Instruction {instruction.id} executed: trade {stored.id} "
            f"(exchange id {ack.external_id}, status {stored.status.value})"
        )
        return stored
