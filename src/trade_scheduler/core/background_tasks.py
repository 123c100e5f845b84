"""
BackgroundTasksManager - Manages async background tasks.

Handles periodic tasks like:
- Market snapshot refresh
- Trigger scheduler passes (the scheduler owns its own polling task)
- Reconciliation sweep across every user with API credentials
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from trade_scheduler.storage.models import TradeScope

if TYPE_CHECKING:
    from trade_scheduler.core.scheduler import TriggerScheduler
    from trade_scheduler.execution.reconciler import StateReconciler
    from trade_scheduler.ingestion.market_data import MarketSnapshotProvider

logger = logging.getLogger(__name__)


@dataclass
class BackgroundTaskConfig:
    """Configuration for background tasks."""

    # Market snapshot refresh
    market_refresh_interval_seconds: float = 15
    market_refresh_enabled: bool = True

    # Scheduler (interval lives in SchedulerConfig)
    scheduler_enabled: bool = True

    # Reconciliation with LN Markets
    reconcile_interval_seconds: float = 300  # 5 minutes
    reconcile_enabled: bool = True
    reconcile_scope: TradeScope = TradeScope.ALL

    def __post_init__(self) -> None:
        if self.market_refresh_interval_seconds <= 0:
            raise ValueError("market_refresh_interval_seconds must be positive")
        if self.reconcile_interval_seconds <= 0:
            raise ValueError("reconcile_interval_seconds must be positive")


class BackgroundTasksManager:
    """
    Manages background async tasks for the trade scheduler.

    Every loop runs its first iteration immediately, then waits for its
    interval or for stop. An exception in one iteration is logged and the
    loop continues.

    Usage:
        manager = BackgroundTasksManager(
            snapshot_provider=provider,
            scheduler=scheduler,
            reconciler=reconciler,
            config=BackgroundTaskConfig(),
        )
        await manager.start()
        # ... process runs ...
        await manager.stop()
    """

    def __init__(
        self,
        snapshot_provider: Optional["MarketSnapshotProvider"] = None,
        scheduler: Optional["TriggerScheduler"] = None,
        reconciler: Optional["StateReconciler"] = None,
        config: Optional[BackgroundTaskConfig] = None,
    ) -> None:
        self._snapshot_provider = snapshot_provider
        self._scheduler = scheduler
        self._reconciler = reconciler
        self._config = config or BackgroundTaskConfig()

        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        """Whether the manager is running."""
        return self._running

    @property
    def task_names(self) -> list[str]:
        return [task.get_name() for task in self._tasks]

    async def start(self) -> None:
        """Start all enabled background tasks."""
        if self._running:
            logger.warning("BackgroundTasksManager already running")
            return

        logger.info("Starting background tasks...")
        self._running = True
        self._stop_event.clear()

        if self._config.market_refresh_enabled and self._snapshot_provider:
            task = asyncio.create_task(
                self._market_refresh_loop(),
                name="market_refresh",
            )
            self._tasks.append(task)
            logger.info(
                f"Started market refresh task "
                f"(interval={self._config.market_refresh_interval_seconds}s)"
            )

        if self._config.scheduler_enabled and self._scheduler:
            await self._scheduler.start()

        if self._config.reconcile_enabled and self._reconciler:
            task = asyncio.create_task(
                self._reconcile_loop(),
                name="reconcile",
            )
            self._tasks.append(task)
            logger.info(
                f"Started reconcile task "
                f"(interval={self._config.reconcile_interval_seconds}s)"
            )

        logger.info(f"Background tasks started: {len(self._tasks)} tasks")

    async def stop(self) -> None:
        """Stop all background tasks gracefully."""
        if not self._running:
            return

        logger.info("Stopping background tasks...")
        self._running = False
        self._stop_event.set()

        if self._scheduler and self._scheduler.is_running:
            await self._scheduler.stop()

        # Cancel all tasks
        for task in self._tasks:
            if not task.done():
                task.cancel()

        # Wait for cancellation
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("Background tasks stopped")

    async def _wait_or_stop(self, interval: float) -> bool:
        """Sleep for ``interval``. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            return True
        except asyncio.TimeoutError:
            return False

    async def _market_refresh_loop(self) -> None:
        """Periodically refresh the cached market snapshot."""
        interval = self._config.market_refresh_interval_seconds

        while self._running:
            try:
                snapshot = await self._snapshot_provider.refresh()
                if snapshot is None:
                    logger.debug("Market refresh returned no usable price")

                if await self._wait_or_stop(interval):
                    break  # Stop requested

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in market refresh: {e}")
                if await self._wait_or_stop(5):
                    break

    async def _reconcile_loop(self) -> None:
        """
        Periodically reconcile every user's trades with LN Markets.

        Also refreshes balances. Discrepancies left behind by a failed
        bulk sweep or a lost order confirmation are healed here.
        """
        interval = self._config.reconcile_interval_seconds

        while self._running:
            try:
                results = await self._reconciler.reconcile_all_users(
                    self._config.reconcile_scope
                )
                created = sum(r.created for r in results)
                updated = sum(r.updated for r in results)
                failed = [r for r in results if not r.success]
                if created or updated:
                    logger.info(
                        f"Reconcile sweep: {len(results)} users, "
                        f"created={created} updated={updated}"
                    )
                if failed:
                    logger.warning(
                        f"Reconcile sweep: {len(failed)} users had errors "
                        f"({', '.join(r.user_id for r in failed)})"
                    )

                if await self._wait_or_stop(interval):
                    break  # Stop requested

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in reconcile sweep: {e}")
                if await self._wait_or_stop(10):
                    break
