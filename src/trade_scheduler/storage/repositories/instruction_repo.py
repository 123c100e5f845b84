"""
Scheduled instruction repository (table: scheduled_trades).

Every status-changing statement is guarded with ``WHERE status = 'pending'``
so a transition out of PENDING can only happen once, whoever asks first.
``last_checked_at`` only moves forward (GREATEST watermark).
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from trade_scheduler.storage.models import (
    DateTrigger,
    InstructionStatus,
    OrderTemplate,
    PricePercentageTrigger,
    PriceRangeTrigger,
    ScheduledInstruction,
    ScheduledInstructionUpdate,
    TriggerKind,
)
from trade_scheduler.storage.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class InstructionNotFoundError(LookupError):
    """No scheduled instruction with the given id."""

    def __init__(self, instruction_id: int):
        super().__init__(f"Scheduled instruction {instruction_id} not found")
        self.instruction_id = instruction_id


class InstructionNotPendingError(Exception):
    """A pending-only mutation hit an instruction that already left PENDING."""

    def __init__(self, instruction_id: int, status: Optional[str] = None):
        detail = f" (status={status})" if status else ""
        super().__init__(f"Scheduled instruction {instruction_id} is not pending{detail}")
        self.instruction_id = instruction_id
        self.status = status


_TEMPLATE_COLUMNS = (
    "trade_type",
    "side",
    "order_kind",
    "margin",
    "leverage",
    "quantity",
    "price",
    "take_profit",
    "stop_loss",
    "instrument_name",
    "settlement",
)


def trigger_columns(trigger) -> dict[str, Any]:
    """Flatten a trigger into its scheduled_trades columns."""
    columns: dict[str, Any] = {
        "trigger_type": TriggerKind(trigger.kind).value,
        "scheduled_time": None,
        "target_price_low": None,
        "target_price_high": None,
        "price_percentage": None,
        "base_price_snapshot": None,
    }
    if isinstance(trigger, DateTrigger):
        columns["scheduled_time"] = trigger.at
    elif isinstance(trigger, PriceRangeTrigger):
        columns["target_price_low"] = trigger.low
        columns["target_price_high"] = trigger.high
    elif isinstance(trigger, PricePercentageTrigger):
        columns["price_percentage"] = trigger.percent
        columns["base_price_snapshot"] = trigger.base_price
    return columns


def template_columns(template: OrderTemplate) -> dict[str, Any]:
    """Flatten an order template into its scheduled_trades columns."""
    columns = template.model_dump(include=set(_TEMPLATE_COLUMNS))
    for key in ("trade_type", "side", "order_kind"):
        columns[key] = columns[key].value
    return columns


def instruction_from_row(row: dict) -> ScheduledInstruction:
    """Rebuild a ScheduledInstruction from a flat scheduled_trades row."""
    kind = TriggerKind(row["trigger_type"])
    if kind is TriggerKind.DATE:
        trigger = DateTrigger(at=row["scheduled_time"])
    elif kind is TriggerKind.PRICE_RANGE:
        trigger = PriceRangeTrigger(low=row["target_price_low"], high=row["target_price_high"])
    else:
        trigger = PricePercentageTrigger(
            percent=row["price_percentage"], base_price=row["base_price_snapshot"]
        )

    return ScheduledInstruction(
        id=row["id"],
        user_id=row["user_id"],
        name=row.get("name"),
        description=row.get("description"),
        symbol=row["symbol"],
        trigger=trigger,
        template=OrderTemplate(**{k: row[k] for k in _TEMPLATE_COLUMNS}),
        status=row["status"],
        executed_trade_id=row.get("executed_trade_id"),
        error_message=row.get("error_message"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
        last_checked_at=row.get("last_checked_at"),
        executed_at=row.get("executed_at"),
    )


class InstructionRepository(BaseRepository[ScheduledInstruction]):
    """Repository for scheduled instructions."""

    table_name = "scheduled_trades"
    model_class = ScheduledInstruction

    def _record_to_model(self, record) -> Optional[ScheduledInstruction]:
        if record is None:
            return None
        return instruction_from_row(dict(record))

    async def create(self, instruction: ScheduledInstruction) -> ScheduledInstruction:
        """Insert a new PENDING instruction. Returns it with id and timestamps."""
        columns = {
            "user_id": instruction.user_id,
            "name": instruction.name,
            "description": instruction.description,
            "symbol": instruction.symbol,
            "status": InstructionStatus.PENDING.value,
            **trigger_columns(instruction.trigger),
            **template_columns(instruction.template),
        }
        names = ", ".join(columns)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        query = f"""
            INSERT INTO scheduled_trades ({names})
            VALUES ({placeholders})
            RETURNING *
        """
        record = await self.db.fetchrow(query, *columns.values())
        return self._record_to_model(record)

    async def get(self, instruction_id: int) -> Optional[ScheduledInstruction]:
        return await self.get_by_id(instruction_id)

    async def get_by_user(self, user_id: str) -> list[ScheduledInstruction]:
        query = """
            SELECT * FROM scheduled_trades
            WHERE user_id = $1
            ORDER BY created_at DESC, id DESC
        """
        records = await self.db.fetch(query, user_id)
        return self._records_to_models(records)

    async def get_pending(self) -> list[ScheduledInstruction]:
        """
        All PENDING instructions, oldest first.

        A row that no longer validates is logged and skipped so it cannot
        stall every other instruction's evaluation.
        """
        query = """
            SELECT * FROM scheduled_trades
            WHERE status = 'pending'
            ORDER BY id
        """
        records = await self.db.fetch(query)
        instructions = []
        for record in records:
            try:
                instructions.append(self._record_to_model(record))
            except (ValidationError, ValueError) as e:
                logger.error(f"Skipping unreadable scheduled trade {record['id']}: {e}")
        return instructions

    async def update_pending(
        self, instruction_id: int, changes: ScheduledInstructionUpdate
    ) -> ScheduledInstruction:
        """
        Apply user edits to a PENDING instruction.

        Raises:
            InstructionNotPendingError: if the instruction is missing or has
                already left PENDING.
        """
        columns: dict[str, Any] = {}
        if changes.name is not None:
            columns["name"] = changes.name
        if changes.description is not None:
            columns["description"] = changes.description
        if changes.trigger is not None:
            columns.update(trigger_columns(changes.trigger))
        if changes.template is not None:
            columns.update(template_columns(changes.template))

        if not columns:
            current = await self.get(instruction_id)
            if current is None or not current.is_pending:
                raise InstructionNotPendingError(
                    instruction_id, current.status.value if current else None
                )
            return current

        assignments = ", ".join(f"{name} = ${i}" for i, name in enumerate(columns, start=2))
        query = f"""
            UPDATE scheduled_trades
            SET {assignments}, updated_at = NOW()
            WHERE id = $1 AND status = 'pending'
            RETURNING *
        """
        record = await self.db.fetchrow(query, instruction_id, *columns.values())
        if record is None:
            raise InstructionNotPendingError(instruction_id)
        return self._record_to_model(record)

    async def mark_checked(self, instruction_id: int, checked_at: datetime) -> None:
        """Advance last_checked_at; an older timestamp never overwrites a newer one."""
        query = """
            UPDATE scheduled_trades
            SET last_checked_at = GREATEST(last_checked_at, $2)
            WHERE id = $1
        """
        await self.db.execute(query, instruction_id, checked_at)

    async def mark_failed(self, instruction_id: int, error_message: str) -> ScheduledInstruction:
        """PENDING -> FAILED with the captured error. Terminal."""
        query = """
            UPDATE scheduled_trades
            SET status = 'failed', error_message = $2, updated_at = NOW()
            WHERE id = $1 AND status = 'pending'
            RETURNING *
        """
        record = await self.db.fetchrow(query, instruction_id, error_message)
        if record is None:
            raise InstructionNotPendingError(instruction_id)
        return self._record_to_model(record)

    async def mark_cancelled(self, instruction_id: int, reason: str) -> ScheduledInstruction:
        """PENDING -> CANCELLED. The reason is kept in error_message."""
        query = """
            UPDATE scheduled_trades
            SET status = 'cancelled', error_message = $2, updated_at = NOW()
            WHERE id = $1 AND status = 'pending'
            RETURNING *
        """
        record = await self.db.fetchrow(query, instruction_id, reason)
        if record is None:
            raise InstructionNotPendingError(instruction_id)
        return self._record_to_model(record)

    async def delete_pending(self, instruction_id: int) -> bool:
        """Delete a PENDING instruction. Returns False if nothing was deleted."""
        query = "DELETE FROM scheduled_trades WHERE id = $1 AND status = 'pending'"
        result = await self.db.execute(query, instruction_id)
        return result != "DELETE 0"
