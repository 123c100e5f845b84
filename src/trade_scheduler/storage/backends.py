"""
Storage backend selection.

Bundles the four repositories the rest of the package needs, backed
either by PostgreSQL (asyncpg) or by the in-memory store.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from trade_scheduler.storage.database import Database
from trade_scheduler.storage.memory import (
    MemoryInstructionRepository,
    MemoryMarketDataRepository,
    MemoryStore,
    MemoryTradeRepository,
    MemoryUserRepository,
)
from trade_scheduler.storage.repositories import (
    InstructionRepository,
    MarketDataRepository,
    TradeRepository,
    UserRepository,
)


@dataclass
class Repositories:
    instructions: Any
    trades: Any
    market_data: Any
    users: Any


def postgres_repositories(db: Database) -> Repositories:
    return Repositories(
        instructions=InstructionRepository(db),
        trades=TradeRepository(db),
        market_data=MarketDataRepository(db),
        users=UserRepository(db),
    )


def memory_repositories(store: Optional[MemoryStore] = None) -> Repositories:
    store = store or MemoryStore()
    return Repositories(
        instructions=MemoryInstructionRepository(store),
        trades=MemoryTradeRepository(store),
        market_data=MemoryMarketDataRepository(store),
        users=MemoryUserRepository(store),
    )
