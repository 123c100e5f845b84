"""
Storage Layer - Async PostgreSQL database, repositories and models.

This is the foundation layer every other component depends on.
Built on asyncpg; an in-memory backend with the same interface is
available for local runs and tests.

Public API:
    Database, DatabaseConfig - Connection pool management

    Models:
        ScheduledInstruction, ScheduledInstructionCreate, ScheduledInstructionUpdate
        DateTrigger, PriceRangeTrigger, PricePercentageTrigger, OrderTemplate
        Trade, MarketSnapshot, UserCredentials
        InstructionStatus, TradeStatus, TradeType, TradeSide, OrderKind,
        TriggerKind, TradeScope

    Repositories:
        InstructionRepository, TradeRepository, MarketDataRepository, UserRepository
        (and Memory* equivalents)

    Backends:
        Repositories, postgres_repositories, memory_repositories
"""
from trade_scheduler.storage.backends import (
    Repositories,
    memory_repositories,
    postgres_repositories,
)
from trade_scheduler.storage.database import Database, DatabaseConfig
from trade_scheduler.storage.memory import (
    MemoryInstructionRepository,
    MemoryMarketDataRepository,
    MemoryStore,
    MemoryTradeRepository,
    MemoryUserRepository,
)
from trade_scheduler.storage.models import (
    ACTIVE_TRADE_STATUSES,
    DEFAULT_SYMBOL,
    DateTrigger,
    InstructionStatus,
    MarketSnapshot,
    OrderKind,
    OrderTemplate,
    PricePercentageRequest,
    PricePercentageTrigger,
    PriceRangeTrigger,
    ScheduledInstruction,
    ScheduledInstructionCreate,
    ScheduledInstructionUpdate,
    Trade,
    TradeScope,
    TradeSide,
    TradeStatus,
    TradeType,
    TriggerKind,
    UserCredentials,
)
from trade_scheduler.storage.repositories import (
    DuplicateTradeError,
    InstructionNotFoundError,
    InstructionNotPendingError,
    InstructionRepository,
    MarketDataRepository,
    TradeRepository,
    UserRepository,
)

__all__ = [
    # Database
    "Database",
    "DatabaseConfig",
    # Models
    "ACTIVE_TRADE_STATUSES",
    "DEFAULT_SYMBOL",
    "DateTrigger",
    "InstructionStatus",
    "MarketSnapshot",
    "OrderKind",
    "OrderTemplate",
    "PricePercentageRequest",
    "PricePercentageTrigger",
    "PriceRangeTrigger",
    "ScheduledInstruction",
    "ScheduledInstructionCreate",
    "ScheduledInstructionUpdate",
    "Trade",
    "TradeScope",
    "TradeSide",
    "TradeStatus",
    "TradeType",
    "TriggerKind",
    "UserCredentials",
    # Repositories
    "DuplicateTradeError",
    "InstructionNotFoundError",
    "InstructionNotPendingError",
    "InstructionRepository",
    "MarketDataRepository",
    "TradeRepository",
    "UserRepository",
    "MemoryInstructionRepository",
    "MemoryMarketDataRepository",
    "MemoryStore",
    "MemoryTradeRepository",
    "MemoryUserRepository",
    # Backends
    "Repositories",
    "memory_repositories",
    "postgres_repositories",
]
