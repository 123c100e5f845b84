"""
Core Layer - Trigger evaluation and orchestration.

This module provides:
    - evaluate / TriggerVerdict: Pure trigger evaluation
    - TriggerScheduler: The polling loop (evaluate -> execute, at most once)
    - SchedulerConfig: Poll interval and concurrency cap
    - PassResult: Counts and errors of one scheduler pass
    - TradeSchedulerService: Operations exposed to the web layer
    - BackgroundTasksManager: Manages async background loops
    - BackgroundTaskConfig: Configuration for background tasks

Data Flow:
    1. MarketSnapshotProvider refreshes the cached ticker
    2. TriggerScheduler loads PENDING instructions
    3. evaluate() decides per instruction
    4. On match, TradeExecutor places the order and records the trade
    5. StateReconciler keeps trades in line with the exchange
"""

# Trigger evaluation
from .triggers import (
    TriggerVerdict,
    evaluate,
    evaluate_date,
    evaluate_price_percentage,
    evaluate_price_range,
)

# Scheduler loop
from .scheduler import PassResult, SchedulerConfig, TriggerScheduler

# Service facade
from .service import InstructionValidationError, TradeNotFoundError, TradeSchedulerService

# Background tasks
from .background_tasks import BackgroundTaskConfig, BackgroundTasksManager

__all__ = [
    # Trigger evaluation
    "TriggerVerdict",
    "evaluate",
    "evaluate_date",
    "evaluate_price_range",
    "evaluate_price_percentage",
    # Scheduler loop
    "TriggerScheduler",
    "SchedulerConfig",
    "PassResult",
    # Service facade
    "TradeSchedulerService",
    "InstructionValidationError",
    "TradeNotFoundError",
    # Background tasks
    "BackgroundTasksManager",
    "BackgroundTaskConfig",
]
