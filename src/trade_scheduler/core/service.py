"""
TradeSchedulerService - the operations exposed to the web layer.

A thin facade over the repositories, the scheduler loop and the
reconciler. Instruction mutations are routed through the scheduler so
they serialize against in-flight evaluation; trade mutations are routed
through the reconciler, the only writer of trade status after creation.
"""
from __future__ import annotations

import logging
from typing import Optional

from trade_scheduler.storage.models import (
    PricePercentageRequest,
    PricePercentageTrigger,
    ScheduledInstruction,
    ScheduledInstructionCreate,
    ScheduledInstructionUpdate,
    Trade,
    TradeScope,
    TradeStatus,
)
from trade_scheduler.storage.repositories.instruction_repo import InstructionNotFoundError

logger = logging.getLogger(__name__)


class InstructionValidationError(ValueError):
    """A creation request that cannot be completed with the current state."""
    pass


class TradeNotFoundError(LookupError):
    """No trade with that id (for that user)."""

    def __init__(self, trade_id: int):
        super().__init__(f"Trade {trade_id} not found")
        self.trade_id = trade_id


class TradeSchedulerService:
    """
    Facade consumed by the surrounding web application.

    Usage:
        service = TradeSchedulerService(repos, scheduler, reconciler, provider)

        instruction = await service.create_scheduled_instruction(request)
        await service.delete_scheduled_instruction(instruction.id)
        result = await service.reconcile_now(user_id, TradeScope.ALL)
    """

    def __init__(self, repositories, scheduler, reconciler, snapshot_provider) -> None:
        self._instructions = repositories.instructions
        self._trades = repositories.trades
        self._scheduler = scheduler
        self._reconciler = reconciler
        self._snapshots = snapshot_provider

    # =========================================================================
    # Scheduled instructions
    # =========================================================================

    async def list_scheduled_instructions(self, user_id: str) -> list[ScheduledInstruction]:
        """All instructions of a user, newest first."""
        return await self._instructions.get_by_user(user_id)

    async def get_scheduled_instruction(self, instruction_id: int) -> ScheduledInstruction:
        instruction = await self._instructions.get(instruction_id)
        if instruction is None:
            raise InstructionNotFoundError(instruction_id)
        return instruction

    async def create_scheduled_instruction(
        self, request: ScheduledInstructionCreate
    ) -> ScheduledInstruction:
        """
        Store a new PENDING instruction.

        A percentage trigger without a base price takes the current market
        price as its fixed reference.

        Raises:
            InstructionValidationError: the symbol has no market data feed,
                or there is no market price to use as base
        """
        served = self._snapshots.symbol
        if request.symbol != served:
            raise InstructionValidationError(
                f"No market data for {request.symbol}; only {served} is supported"
            )

        trigger = request.trigger
        if isinstance(trigger, PricePercentageRequest):
            base_price = trigger.base_price
            if base_price is None:
                base_price = await self._snapshots.get_latest_price(request.symbol)
                if base_price is None:
                    raise InstructionValidationError(
                        f"No market price for {request.symbol} to use as percentage base"
                    )
            trigger = PricePercentageTrigger(percent=trigger.percent, base_price=base_price)

        instruction = ScheduledInstruction(
            user_id=request.user_id,
            name=request.name,
            description=request.description,
            symbol=request.symbol,
            trigger=trigger,
            template=request.template,
        )
        stored = await self._instructions.create(instruction)
        logger.info(
            f"Created scheduled instruction {stored.id} for user {stored.user_id} "
            f"({stored.trigger.kind})"
        )
        return stored

    async def update_scheduled_instruction(
        self, instruction_id: int, changes: ScheduledInstructionUpdate
    ) -> ScheduledInstruction:
        return await self._scheduler.update_instruction(instruction_id, changes)

    async def delete_scheduled_instruction(self, instruction_id: int) -> None:
        """Delete a PENDING instruction; never races an in-flight execution."""
        await self._scheduler.delete_instruction(instruction_id)

    async def cancel_scheduled_instruction(
        self, instruction_id: int, reason: Optional[str] = None
    ) -> ScheduledInstruction:
        if reason:
            return await self._scheduler.cancel_instruction(instruction_id, reason)
        return await self._scheduler.cancel_instruction(instruction_id)

    # =========================================================================
    # Trades
    # =========================================================================

    async def list_trades(
        self, user_id: str, status: Optional[TradeStatus] = None
    ) -> list[Trade]:
        return await self._trades.get_by_user(user_id, status)

    async def list_active_trades(self, user_id: str) -> list[Trade]:
        return await self._trades.get_active_by_user(user_id)

    async def get_trade(self, trade_id: int, user_id: Optional[str] = None) -> Trade:
        trade = await self._trades.get(trade_id)
        if trade is None or (user_id is not None and trade.user_id != user_id):
            raise TradeNotFoundError(trade_id)
        return trade

    async def reconcile_now(self, user_id: str, scope: TradeScope = TradeScope.ALL):
        """On-demand sync of one user's trades. Returns the SyncResult."""
        return await self._reconciler.reconcile(user_id, TradeScope(scope))

    async def close_all_trades(self, user_id: str):
        return await self._reconciler.close_all(user_id)

    async def cancel_all_orders(self, user_id: str):
        return await self._reconciler.cancel_all(user_id)

    async def close_trade(self, trade_id: int, user_id: Optional[str] = None) -> Trade:
        await self.get_trade(trade_id, user_id)
        return await self._reconciler.close_trade(trade_id)

    async def cancel_trade(self, trade_id: int, user_id: Optional[str] = None) -> Trade:
        await self.get_trade(trade_id, user_id)
        return await self._reconciler.cancel_trade(trade_id)
