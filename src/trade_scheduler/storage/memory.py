"""
In-memory storage backend.

Drop-in replacements for the PostgreSQL repositories, sharing one
MemoryStore. Used with STORAGE_BACKEND=memory for local runs and by the
component tests. Nothing survives a restart.

Each method body runs without awaiting, so under asyncio every call is
atomic the same way a single guarded SQL statement is.
"""
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from trade_scheduler.storage.models import (
    ACTIVE_TRADE_STATUSES,
    InstructionStatus,
    MarketSnapshot,
    ScheduledInstruction,
    ScheduledInstructionUpdate,
    Trade,
    TradeStatus,
    TradeType,
    UserCredentials,
)
from trade_scheduler.storage.repositories.instruction_repo import (
    InstructionNotPendingError,
)
from trade_scheduler.storage.repositories.trade_repo import (
    MUTABLE_TRADE_FIELDS,
    DuplicateTradeError,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _UserRow:
    credentials: Optional[UserCredentials] = None
    balance: Optional[Decimal] = None
    balance_usd: Optional[Decimal] = None
    balance_updated_at: Optional[datetime] = None


@dataclass
class MemoryStore:
    """Shared tables for the in-memory repositories."""

    instructions: dict[int, ScheduledInstruction] = field(default_factory=dict)
    trades: dict[int, Trade] = field(default_factory=dict)
    market_data: dict[str, MarketSnapshot] = field(default_factory=dict)
    users: dict[str, _UserRow] = field(default_factory=dict)
    _instruction_ids: Any = field(default_factory=lambda: itertools.count(1))
    _trade_ids: Any = field(default_factory=lambda: itertools.count(1))

    def next_instruction_id(self) -> int:
        return next(self._instruction_ids)

    def next_trade_id(self) -> int:
        return next(self._trade_ids)


class MemoryInstructionRepository:
    """Same interface as InstructionRepository."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def create(self, instruction: ScheduledInstruction) -> ScheduledInstruction:
        now = _now()
        stored = instruction.model_copy(update={
            "id": self.store.next_instruction_id(),
            "status": InstructionStatus.PENDING,
            "executed_trade_id": None,
            "error_message": None,
            "created_at": now,
            "updated_at": now,
            "last_checked_at": None,
            "executed_at": None,
        })
        self.store.instructions[stored.id] = stored
        return stored.model_copy()

    async def get(self, instruction_id: int) -> Optional[ScheduledInstruction]:
        instruction = self.store.instructions.get(instruction_id)
        return instruction.model_copy() if instruction else None

    async def get_by_user(self, user_id: str) -> list[ScheduledInstruction]:
        rows = [i for i in self.store.instructions.values() if i.user_id == user_id]
        rows.sort(key=lambda i: (i.created_at, i.id), reverse=True)
        return [i.model_copy() for i in rows]

    async def get_pending(self) -> list[ScheduledInstruction]:
        return [
            i.model_copy()
            for _, i in sorted(self.store.instructions.items())
            if i.is_pending
        ]

    def _require_pending(self, instruction_id: int) -> ScheduledInstruction:
        current = self.store.instructions.get(instruction_id)
        if current is None or not current.is_pending:
            raise InstructionNotPendingError(
                instruction_id, current.status.value if current else None
            )
        return current

    async def update_pending(
        self, instruction_id: int, changes: ScheduledInstructionUpdate
    ) -> ScheduledInstruction:
        current = self._require_pending(instruction_id)
        update = changes.model_dump(exclude_none=True)
        # keep nested models as models rather than dicts
        for key in ("trigger", "template"):
            if key in update:
                update[key] = getattr(changes, key)
        update["updated_at"] = _now()
        stored = current.model_copy(update=update)
        self.store.instructions[instruction_id] = stored
        return stored.model_copy()

    async def mark_checked(self, instruction_id: int, checked_at: datetime) -> None:
        current = self.store.instructions.get(instruction_id)
        if current is None:
            return
        if current.last_checked_at is None or checked_at > current.last_checked_at:
            self.store.instructions[instruction_id] = current.model_copy(
                update={"last_checked_at": checked_at}
            )

    def _terminate(
        self, instruction_id: int, status: InstructionStatus, message: str
    ) -> ScheduledInstruction:
        current = self._require_pending(instruction_id)
        stored = current.model_copy(update={
            "status": status,
            "error_message": message,
            "updated_at": _now(),
        })
        self.store.instructions[instruction_id] = stored
        return stored.model_copy()

    async def mark_failed(self, instruction_id: int, error_message: str) -> ScheduledInstruction:
        return self._terminate(instruction_id, InstructionStatus.FAILED, error_message)

    async def mark_cancelled(self, instruction_id: int, reason: str) -> ScheduledInstruction:
        return self._terminate(instruction_id, InstructionStatus.CANCELLED, reason)

    async def delete_pending(self, instruction_id: int) -> bool:
        current = self.store.instructions.get(instruction_id)
        if current is None or not current.is_pending:
            return False
        del self.store.instructions[instruction_id]
        return True


class MemoryTradeRepository:
    """Same interface as TradeRepository."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def _find_external(self, user_id: str, external_id: Optional[str]) -> Optional[Trade]:
        if external_id is None:
            return None
        for trade in self.store.trades.values():
            if trade.user_id == user_id and trade.external_id == external_id:
                return trade
        return None

    def _insert(self, trade: Trade) -> Trade:
        if self._find_external(trade.user_id, trade.external_id) is not None:
            raise DuplicateTradeError(trade.user_id, trade.external_id)
        now = _now()
        stored = trade.model_copy(update={
            "id": self.store.next_trade_id(),
            "created_at": trade.created_at or now,
            "updated_at": now,
        })
        self.store.trades[stored.id] = stored
        return stored

    async def create(self, trade: Trade) -> Trade:
        return self._insert(trade).model_copy()

    async def create_for_instruction(
        self, trade: Trade, instruction_id: int, executed_at: datetime
    ) -> Trade:
        instruction = self.store.instructions.get(instruction_id)
        if instruction is None or not instruction.is_pending:
            raise InstructionNotPendingError(
                instruction_id, instruction.status.value if instruction else None
            )
        existing = self._find_external(trade.user_id, trade.external_id)
        if existing is None:
            stored = self._insert(trade)
        elif existing.scheduled_trade_id is None:
            stored = existing.model_copy(update={
                "scheduled_trade_id": trade.scheduled_trade_id,
                "updated_at": _now(),
            })
            self.store.trades[stored.id] = stored
        else:
            raise DuplicateTradeError(trade.user_id, trade.external_id)
        self.store.instructions[instruction_id] = instruction.model_copy(update={
            "status": InstructionStatus.TRIGGERED,
            "executed_trade_id": stored.id,
            "executed_at": executed_at,
            "error_message": None,
            "updated_at": _now(),
        })
        return stored.model_copy()

    async def get(self, trade_id: int) -> Optional[Trade]:
        trade = self.store.trades.get(trade_id)
        return trade.model_copy() if trade else None

    async def get_by_user(
        self, user_id: str, status: Optional[TradeStatus] = None
    ) -> list[Trade]:
        rows = [
            t for t in self.store.trades.values()
            if t.user_id == user_id and (status is None or t.status is status)
        ]
        rows.sort(key=lambda t: (t.created_at, t.id), reverse=True)
        return [t.model_copy() for t in rows]

    async def get_active_by_user(self, user_id: str) -> list[Trade]:
        return [
            t.model_copy()
            for _, t in sorted(self.store.trades.items())
            if t.user_id == user_id and t.status in ACTIVE_TRADE_STATUSES
        ]

    async def get_by_external_ids(
        self, user_id: str, external_ids: Iterable[str]
    ) -> dict[str, Trade]:
        wanted = set(external_ids)
        return {
            t.external_id: t.model_copy()
            for t in self.store.trades.values()
            if t.user_id == user_id and t.external_id in wanted
        }

    async def update_fields(self, trade_id: int, fields: dict[str, Any]) -> Trade:
        unknown = set(fields) - MUTABLE_TRADE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update trade columns: {sorted(unknown)}")
        current = self.store.trades.get(trade_id)
        if current is None:
            raise LookupError(f"Trade {trade_id} not found")
        if not fields:
            return current.model_copy()
        stored = current.model_copy(update={**fields, "updated_at": _now()})
        self.store.trades[trade_id] = stored
        return stored.model_copy()

    async def sweep_status(
        self,
        user_id: str,
        from_statuses: Iterable[TradeStatus],
        to_status: TradeStatus,
        at: datetime,
        trade_type: Optional[TradeType] = None,
    ) -> int:
        sources = set(from_statuses)
        count = 0
        for trade_id, trade in list(self.store.trades.items()):
            if trade_type is not None and trade.trade_type is not trade_type:
                continue
            if trade.user_id == user_id and trade.status in sources:
                self.store.trades[trade_id] = trade.model_copy(update={
                    "status": to_status,
                    "closed_at": trade.closed_at or at,
                    "updated_at": _now(),
                })
                count += 1
        return count

    async def count(self) -> int:
        return len(self.store.trades)


class MemoryMarketDataRepository:
    """Same interface as MarketDataRepository."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def get(self, symbol: str) -> Optional[MarketSnapshot]:
        snapshot = self.store.market_data.get(symbol)
        return snapshot.model_copy() if snapshot else None

    async def upsert(self, snapshot: MarketSnapshot) -> MarketSnapshot:
        stored = snapshot.model_copy(update={"updated_at": snapshot.updated_at or _now()})
        self.store.market_data[stored.symbol] = stored
        return stored.model_copy()


class MemoryUserRepository:
    """Same interface as UserRepository."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def get_credentials(self, user_id: str) -> Optional[UserCredentials]:
        row = self.store.users.get(user_id)
        return row.credentials if row else None

    async def get_users_with_credentials(self) -> list[str]:
        return sorted(uid for uid, row in self.store.users.items() if row.credentials)

    async def save_credentials(self, credentials: UserCredentials) -> None:
        row = self.store.users.setdefault(credentials.user_id, _UserRow())
        row.credentials = credentials

    async def update_balance(
        self, user_id: str, balance_sats: Decimal, balance_usd: Optional[Decimal]
    ) -> None:
        row = self.store.users.get(user_id)
        if row is None:
            return
        row.balance = balance_sats
        row.balance_usd = balance_usd
        row.balance_updated_at = _now()

    async def get_balance(self, user_id: str) -> Optional[tuple[Decimal, Optional[Decimal]]]:
        row = self.store.users.get(user_id)
        if row is None or row.balance is None:
            return None
        return row.balance, row.balance_usd
