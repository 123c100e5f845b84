"""Repositories for the trade scheduler tables."""
from trade_scheduler.storage.repositories.base import BaseRepository
from trade_scheduler.storage.repositories.instruction_repo import (
    InstructionNotFoundError,
    InstructionNotPendingError,
    InstructionRepository,
)
from trade_scheduler.storage.repositories.market_repo import MarketDataRepository
from trade_scheduler.storage.repositories.trade_repo import (
    MUTABLE_TRADE_FIELDS,
    DuplicateTradeError,
    TradeRepository,
)
from trade_scheduler.storage.repositories.user_repo import UserRepository

__all__ = [
    "BaseRepository",
    "DuplicateTradeError",
    "InstructionNotFoundError",
    "InstructionNotPendingError",
    "InstructionRepository",
    "MUTABLE_TRADE_FIELDS",
    "MarketDataRepository",
    "TradeRepository",
    "UserRepository",
]
