"""
Execution Layer - order submission and exchange state reconciliation.

Public API:
    TradeExecutor, ExecutionError - fire an instruction as a real order
    StateReconciler, SyncResult, BulkActionResult, TradeActionError
    map_exchange_status, STATUS_PRECEDENCE
"""
from .executor import ExecutionError, TradeExecutor, initial_status
from .reconciler import (
    STATUS_PRECEDENCE,
    BulkActionResult,
    StateReconciler,
    SyncResult,
    TradeActionError,
    map_exchange_status,
)

__all__ = [
    "BulkActionResult",
    "ExecutionError",
    "STATUS_PRECEDENCE",
    "StateReconciler",
    "SyncResult",
    "TradeActionError",
    "TradeExecutor",
    "initial_status",
    "map_exchange_status",
]
