"""
Trade repository (table: trades).

Trades are never deleted; they leave the active set only through a status
change to 'closed' or 'cancelled'.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional

import asyncpg

from trade_scheduler.storage.models import (
    ACTIVE_TRADE_STATUSES,
    Trade,
    TradeStatus,
    TradeType,
)
from trade_scheduler.storage.repositories.base import BaseRepository
from trade_scheduler.storage.repositories.instruction_repo import (
    InstructionNotPendingError,
)


class DuplicateTradeError(Exception):
    """A trade with this (user, exchange id) is already stored."""

    def __init__(self, user_id: str, external_id: Optional[str]):
        super().__init__(f"Trade {external_id} already exists for user {user_id}")
        self.user_id = user_id
        self.external_id = external_id

# Columns the reconciler and close/cancel actions may change after creation
MUTABLE_TRADE_FIELDS = frozenset({
    "external_id",
    "status",
    "entry_price",
    "exit_price",
    "limit_price",
    "margin",
    "leverage",
    "quantity",
    "take_profit",
    "stop_loss",
    "pnl",
    "fee",
    "liquidation_price",
    "closed_at",
})

_INSERT_COLUMNS = (
    "user_id",
    "external_id",
    "scheduled_trade_id",
    "trade_type",
    "side",
    "order_kind",
    "status",
    "entry_price",
    "exit_price",
    "limit_price",
    "margin",
    "leverage",
    "quantity",
    "take_profit",
    "stop_loss",
    "pnl",
    "fee",
    "liquidation_price",
    "instrument_name",
    "settlement",
    "closed_at",
)


def _db_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _insert_values(trade: Trade) -> list[Any]:
    return [_db_value(getattr(trade, column)) for column in _INSERT_COLUMNS]


_INSERT_CLAUSE = f"""
    INSERT INTO trades ({", ".join(_INSERT_COLUMNS)})
    VALUES ({", ".join(f"${i}" for i in range(1, len(_INSERT_COLUMNS) + 1))})
"""

_INSERT_QUERY = _INSERT_CLAUSE + "RETURNING *"

# A reconcile sweep may import the order while it is being recorded; an
# unlinked row with the same exchange id is adopted instead of duplicated.
_ADOPT_QUERY = _INSERT_CLAUSE + """
    ON CONFLICT (user_id, external_id) WHERE external_id IS NOT NULL
    DO UPDATE SET scheduled_trade_id = EXCLUDED.scheduled_trade_id, updated_at = NOW()
    WHERE trades.scheduled_trade_id IS NULL
    RETURNING *
"""


class TradeRepository(BaseRepository[Trade]):
    """Repository for local trade records."""

    table_name = "trades"
    model_class = Trade

    async def create(self, trade: Trade) -> Trade:
        """
        Insert a trade (user-initiated or discovered by reconciliation).

        Raises:
            DuplicateTradeError: the user already has a trade with this exchange id
        """
        try:
            record = await self.db.fetchrow(_INSERT_QUERY, *_insert_values(trade))
        except asyncpg.UniqueViolationError as e:
            raise DuplicateTradeError(trade.user_id, trade.external_id) from e
        return self._record_to_model(record)

    async def create_for_instruction(
        self, trade: Trade, instruction_id: int, executed_at: datetime
    ) -> Trade:
        """
        Insert the trade an instruction produced and mark the instruction
        TRIGGERED, in one transaction.

        If reconciliation already imported the same exchange trade as an
        unlinked row, that row is linked to the instruction and returned.

        Raises:
            InstructionNotPendingError: the instruction left PENDING (or was
                deleted) meanwhile; nothing is written.
            DuplicateTradeError: the exchange id is already linked to
                another instruction.
        """
        async with self.db.transaction() as conn:
            record = await conn.fetchrow(_ADOPT_QUERY, *_insert_values(trade))
            if record is None:
                raise DuplicateTradeError(trade.user_id, trade.external_id)
            updated = await conn.fetchval(
                """
                UPDATE scheduled_trades
                SET status = 'triggered', executed_trade_id = $2,
                    executed_at = $3, error_message = NULL, updated_at = NOW()
                WHERE id = $1 AND status = 'pending'
                RETURNING id
                """,
                instruction_id,
                record["id"],
                executed_at,
            )
            if updated is None:
                # Raising inside the block rolls back the trade insert
                raise InstructionNotPendingError(instruction_id)
        return self._record_to_model(record)

    async def get(self, trade_id: int) -> Optional[Trade]:
        return await self.get_by_id(trade_id)

    async def get_by_user(
        self, user_id: str, status: Optional[TradeStatus] = None
    ) -> list[Trade]:
        if status is None:
            records = await self.db.fetch(
                "SELECT * FROM trades WHERE user_id = $1 ORDER BY created_at DESC, id DESC",
                user_id,
            )
        else:
            records = await self.db.fetch(
                """
                SELECT * FROM trades
                WHERE user_id = $1 AND status = $2
                ORDER BY created_at DESC, id DESC
                """,
                user_id,
                status.value,
            )
        return self._records_to_models(records)

    async def get_active_by_user(self, user_id: str) -> list[Trade]:
        """OPEN and RUNNING trades for a user."""
        query = """
            SELECT * FROM trades
            WHERE user_id = $1 AND status = ANY($2::text[])
            ORDER BY id
        """
        records = await self.db.fetch(query, user_id, [s.value for s in ACTIVE_TRADE_STATUSES])
        return self._records_to_models(records)

    async def get_by_external_ids(
        self, user_id: str, external_ids: Iterable[str]
    ) -> dict[str, Trade]:
        """Map external id -> local trade for the ids that exist locally."""
        ids = list(external_ids)
        if not ids:
            return {}
        query = """
            SELECT * FROM trades
            WHERE user_id = $1 AND external_id = ANY($2::text[])
        """
        records = await self.db.fetch(query, user_id, ids)
        return {r["external_id"]: self._record_to_model(r) for r in records}

    async def update_fields(self, trade_id: int, fields: dict[str, Any]) -> Trade:
        """
        Update mutable columns of one trade.

        Raises:
            ValueError: if a non-mutable column is requested.
            LookupError: if the trade does not exist.
        """
        unknown = set(fields) - MUTABLE_TRADE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update trade columns: {sorted(unknown)}")
        if not fields:
            trade = await self.get(trade_id)
            if trade is None:
                raise LookupError(f"Trade {trade_id} not found")
            return trade

        assignments = ", ".join(f"{name} = ${i}" for i, name in enumerate(fields, start=2))
        query = f"""
            UPDATE trades
            SET {assignments}, updated_at = NOW()
            WHERE id = $1
            RETURNING *
        """
        record = await self.db.fetchrow(query, trade_id, *[_db_value(v) for v in fields.values()])
        if record is None:
            raise LookupError(f"Trade {trade_id} not found")
        return self._record_to_model(record)

    async def sweep_status(
        self,
        user_id: str,
        from_statuses: Iterable[TradeStatus],
        to_status: TradeStatus,
        at: datetime,
        trade_type: Optional[TradeType] = None,
    ) -> int:
        """
        Move every trade of a user in ``from_statuses`` to ``to_status``,
        optionally only trades of one type. Returns count.
        """
        query = """
            UPDATE trades
            SET status = $3, closed_at = COALESCE(closed_at, $4), updated_at = NOW()
            WHERE user_id = $1 AND status = ANY($2::text[])
              AND ($5::text IS NULL OR trade_type = $5)
        """
        result = await self.db.execute(
            query,
            user_id,
            [s.value for s in from_statuses],
            to_status.value,
            at,
            trade_type.value if trade_type else None,
        )
        # asyncpg returns e.g. "UPDATE 2"
        return int(result.split()[-1])
