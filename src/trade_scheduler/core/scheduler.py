"""
TriggerScheduler - the scheduler loop.

Periodically loads every PENDING instruction, evaluates its trigger
against the latest market snapshot and hands matches to the executor.

Concurrency discipline:
    - Instructions are processed in parallel up to max_concurrency, so a
      slow exchange call never stalls unrelated instructions.
    - Each instruction's evaluate+execute cycle, and every user edit,
      cancel or delete of it, runs under that instruction's own lock.
      The instruction is re-read inside the lock, so a deleted or
      already-fired instruction is never executed.
    - The move to TRIGGERED happens in the same transaction that records
      the trade and only from PENDING, so even overlapping passes can
      produce at most one trade per instruction.
    - An execution failure marks the instruction FAILED (terminal, never
      retried). If even that write fails, the instruction is quarantined
      in memory so this process does not fire it again.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional

from trade_scheduler.core.triggers import evaluate
from trade_scheduler.execution.executor import ExecutionError
from trade_scheduler.storage.models import (
    MarketSnapshot,
    ScheduledInstruction,
    ScheduledInstructionUpdate,
)
from trade_scheduler.storage.repositories.instruction_repo import (
    InstructionNotFoundError,
    InstructionNotPendingError,
)

logger = logging.getLogger(__name__)

RECOMMENDED_MIN_INTERVAL = 30.0
RECOMMENDED_MAX_INTERVAL = 120.0


@dataclass
class SchedulerConfig:
    """Configuration for the scheduler loop."""

    poll_interval_seconds: float = 30.0
    max_concurrency: int = 5
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if not RECOMMENDED_MIN_INTERVAL <= self.poll_interval_seconds <= RECOMMENDED_MAX_INTERVAL:
            logger.warning(
                f"Scheduler poll interval {self.poll_interval_seconds}s is outside the "
                f"recommended {RECOMMENDED_MIN_INTERVAL:.0f}-{RECOMMENDED_MAX_INTERVAL:.0f}s range"
            )


@dataclass
class PassResult:
    """Outcome of one scheduler pass."""

    run_id: str
    pending: int = 0
    evaluated: int = 0
    matched: int = 0
    triggered: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None


class TriggerScheduler:
    """
    Evaluates pending instructions and fires the ones whose trigger holds.

    Usage:
        scheduler = TriggerScheduler(instruction_repo, snapshot_provider, executor)
        await scheduler.start()         # poll every config.poll_interval_seconds
        ...
        await scheduler.delete_instruction(42)   # serialized with evaluation
        await scheduler.stop()

        result = await scheduler.run_pass()       # or drive passes manually
    """

    def __init__(
        self,
        instruction_repo,
        snapshot_provider,
        executor,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._instructions = instruction_repo
        self._snapshots = snapshot_provider
        self._executor = executor
        self._config = config or SchedulerConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._semaphore = asyncio.Semaphore(self._config.max_concurrency)
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_holders: dict[int, int] = {}
        self._quarantined: set[int] = set()

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._last_result: Optional[PassResult] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_result(self) -> Optional[PassResult]:
        return self._last_result

    @property
    def quarantined(self) -> frozenset[int]:
        return frozenset(self._quarantined)

    # =========================================================================
    # Per-instruction serialization
    # =========================================================================

    @asynccontextmanager
    async def instruction_guard(self, instruction_id: int) -> AsyncIterator[None]:
        """Hold the lock for one instruction. Locks are dropped once unused."""
        lock = self._locks.get(instruction_id)
        if lock is None:
            lock = self._locks[instruction_id] = asyncio.Lock()
        self._lock_holders[instruction_id] = self._lock_holders.get(instruction_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[instruction_id] -= 1
            if self._lock_holders[instruction_id] == 0:
                del self._lock_holders[instruction_id]
                del self._locks[instruction_id]

    # =========================================================================
    # Loop
    # =========================================================================

    async def start(self) -> None:
        """Start the polling task. The first pass runs immediately."""
        if self._running:
            logger.warning("TriggerScheduler already running")
            return

        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="trigger_scheduler")
        logger.info(
            f"Trigger scheduler started (interval={self._config.poll_interval_seconds}s, "
            f"concurrency={self._config.max_concurrency})"
        )

    async def stop(self) -> None:
        """Stop polling. An in-flight pass is cancelled (best effort)."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Trigger scheduler stopped")

    async def _run_loop(self) -> None:
        interval = self._config.poll_interval_seconds

        while self._running:
            try:
                await self.run_pass()

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                    break  # Stop requested
                except asyncio.TimeoutError:
                    pass

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")
                await asyncio.sleep(5)

    # =========================================================================
    # Passes
    # =========================================================================

    async def run_pass(self) -> PassResult:
        """
        Evaluate every pending instruction once.

        Never raises for a single instruction's failure; those are counted
        and recorded in the result.
        """
        result = PassResult(run_id=str(uuid.uuid4())[:8], started_at=self._clock())

        instructions = await self._instructions.get_pending()
        result.pending = len(instructions)
        if not instructions:
            logger.debug(f"[{result.run_id}] No pending instructions")
            return self._finish(result)

        snapshots: dict[str, Optional[MarketSnapshot]] = {}
        for symbol in sorted({i.symbol for i in instructions}):
            try:
                snapshots[symbol] = await self._snapshots.get_snapshot(symbol)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[{result.run_id}] No snapshot for {symbol}: {e}")
                snapshots[symbol] = None

        await asyncio.gather(*(
            self._process_bounded(instruction.id, snapshots.get(instruction.symbol), result)
            for instruction in instructions
        ))
        return self._finish(result)

    def _finish(self, result: PassResult) -> PassResult:
        result.completed_at = self._clock()
        self._last_result = result
        if result.matched or result.errors:
            logger.info(
                f"[{result.run_id}] Scheduler pass: pending={result.pending} "
                f"evaluated={result.evaluated} matched={result.matched} "
                f"triggered={result.triggered} failed={result.failed} "
                f"errors={len(result.errors)}"
            )
        return result

    async def _process_bounded(
        self, instruction_id: int, snapshot: Optional[MarketSnapshot], result: PassResult
    ) -> None:
        async with self._semaphore:
            try:
                await self._process(instruction_id, snapshot, result)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = f"Instruction {instruction_id}: {e}"
                result.errors.append(error)
                logger.error(f"[{result.run_id}] {error}")

    async def _process(
        self, instruction_id: int, snapshot: Optional[MarketSnapshot], result: PassResult
    ) -> None:
        if instruction_id in self._quarantined:
            result.skipped += 1
            return

        async with self.instruction_guard(instruction_id):
            # Re-read under the lock: a user edit/delete or another pass may have won
            instruction = await self._instructions.get(instruction_id)
            if instruction is None or not instruction.is_pending:
                result.skipped += 1
                return

            now = self._clock()
            verdict = evaluate(instruction, snapshot, now)
            result.evaluated += 1
            try:
                await self._instructions.mark_checked(instruction_id, now)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[{result.run_id}] Could not record check of {instruction_id}: {e}")

            if not verdict.matched:
                logger.debug(f"[{result.run_id}] Instruction {instruction_id}: {verdict.reason}")
                return

            result.matched += 1
            logger.info(f"[{result.run_id}] MATCH: instruction {instruction_id}: {verdict.reason}")

            try:
                trade = await self._executor.execute(instruction)
            except asyncio.CancelledError:
                raise
            except ExecutionError as e:
                await self._record_failure(instruction, e.message, result)
                return
            except Exception as e:
                await self._record_failure(instruction, f"Unexpected execution error: {e}", result)
                return

            result.triggered += 1
            logger.info(
                f"[{result.run_id}] TRIGGERED: instruction {instruction_id} -> trade {trade.id}"
            )

    async def _record_failure(
        self, instruction: ScheduledInstruction, message: str, result: PassResult
    ) -> None:
        result.failed += 1
        logger.warning(f"[{result.run_id}] FAILED: instruction {instruction.id}: {message}")
        try:
            await self._instructions.mark_failed(instruction.id, message)
        except InstructionNotPendingError:
            logger.warning(
                f"[{result.run_id}] Instruction {instruction.id} already left pending; "
                f"failure not recorded"
            )
        except asyncio.CancelledError:
            self._quarantined.add(instruction.id)
            raise
        except Exception as e:
            self._quarantined.add(instruction.id)
            error = f"Instruction {instruction.id}: could not record failure ({e}); quarantined"
            result.errors.append(error)
            logger.error(f"[{result.run_id}] {error}")

    # =========================================================================
    # User actions (serialized with evaluation)
    # =========================================================================

    async def delete_instruction(self, instruction_id: int) -> None:
        """
        Delete a PENDING instruction.

        Raises:
            InstructionNotFoundError: no such instruction
            InstructionNotPendingError: it already fired, failed or was cancelled
        """
        async with self.instruction_guard(instruction_id):
            if await self._instructions.delete_pending(instruction_id):
                logger.info(f"Deleted scheduled instruction {instruction_id}")
                return
            current = await self._instructions.get(instruction_id)
            if current is None:
                raise InstructionNotFoundError(instruction_id)
            raise InstructionNotPendingError(instruction_id, current.status.value)

    async def cancel_instruction(
        self, instruction_id: int, reason: str = "Cancelled by user"
    ) -> ScheduledInstruction:
        """PENDING -> CANCELLED, keeping the row for history."""
        async with self.instruction_guard(instruction_id):
            current = await self._instructions.get(instruction_id)
            if current is None:
                raise InstructionNotFoundError(instruction_id)
            cancelled = await self._instructions.mark_cancelled(instruction_id, reason)
            logger.info(f"Cancelled scheduled instruction {instruction_id}")
            return cancelled

    async def update_instruction(
        self, instruction_id: int, changes: ScheduledInstructionUpdate
    ) -> ScheduledInstruction:
        """Edit a PENDING instruction."""
        async with self.instruction_guard(instruction_id):
            current = await self._instructions.get(instruction_id)
            if current is None:
                raise InstructionNotFoundError(instruction_id)
            updated = await self._instructions.update_pending(instruction_id, changes)
            logger.info(f"Updated scheduled instruction {instruction_id}")
            return updated
