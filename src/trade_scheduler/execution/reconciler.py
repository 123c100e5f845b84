"""
State Reconciler - keeps local trades consistent with LN Markets.

The exchange reports trade state as independent boolean flags
(open / running / closed / canceled). This service maps them onto the
canonical lifecycle with a fixed precedence and merges the result into
the trades table, keyed by exchange trade id.

Key properties:
1. Idempotent - reconciling unchanged exchange state writes nothing
2. Per-trade isolation - one bad record lands in SyncResult.errors and
   the rest of the batch continues
3. Terminal is final - a locally closed/cancelled trade only accepts
   exit price, pnl and close time backfill
4. Bulk close-all / cancel-all = one futures-wide exchange call, then a
   local sweep of futures trades. The exchange has no options-wide close,
   so running options are closed one by one. The steps are not
   transactional; if the sweep fails, the next reconciliation re-derives
   status from the exchange and heals it
5. Logs every run with a short run id for the audit trail
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

from trade_scheduler.exchange.models import ExchangeTrade
from trade_scheduler.storage.models import (
    ACTIVE_TRADE_STATUSES,
    Trade,
    TradeScope,
    TradeStatus,
    TradeType,
)

logger = logging.getLogger(__name__)

SATS_PER_BTC = Decimal("100000000")

# Exchange flag -> canonical status, first set flag wins
STATUS_PRECEDENCE: tuple[tuple[str, TradeStatus], ...] = (
    ("closed", TradeStatus.CLOSED),
    ("running", TradeStatus.RUNNING),
    ("open", TradeStatus.OPEN),
    ("canceled", TradeStatus.CANCELLED),
)
DEFAULT_STATUS = TradeStatus.OPEN

# Fields refreshed from the exchange while a trade is still active
_ACTIVE_FIELDS = (
    "entry_price",
    "exit_price",
    "margin",
    "leverage",
    "quantity",
    "take_profit",
    "stop_loss",
    "pnl",
    "fee",
    "liquidation_price",
    "closed_at",
)
# Fields a terminal trade may still receive
_TERMINAL_BACKFILL_FIELDS = ("exit_price", "pnl", "closed_at")


def map_exchange_status(trade: ExchangeTrade) -> TradeStatus:
    """Canonical status for an exchange trade's flags."""
    for flag, status in STATUS_PRECEDENCE:
        if getattr(trade, flag):
            return status
    return DEFAULT_STATUS


class TradeActionError(Exception):
    """A per-trade close/cancel request is not valid for the trade's state."""
    pass


@dataclass
class SyncResult:
    """Result of one reconciliation run."""
    run_id: str
    user_id: str
    scope: TradeScope
    found: int = 0
    created: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


@dataclass
class BulkActionResult:
    """Result of a close-all / cancel-all."""
    user_id: str
    action: str  # 'close_all' or 'cancel_all'
    swept: int = 0
    sweep_error: Optional[str] = None
    errors: list[str] = field(default_factory=list)


def _diff(local: Trade, remote: ExchangeTrade, status: TradeStatus) -> dict[str, Any]:
    """Fields of ``local`` that differ from the exchange's view."""
    if local.status.is_terminal:
        candidates = {name: getattr(remote, name) for name in _TERMINAL_BACKFILL_FIELDS}
    else:
        candidates = {"status": status}
        candidates.update({name: getattr(remote, name) for name in _ACTIVE_FIELDS})

    changes: dict[str, Any] = {}
    for name, value in candidates.items():
        # The exchange omitting a field is not a reason to erase ours
        if value is None:
            continue
        if getattr(local, name) != value:
            changes[name] = value
    return changes


def _new_trade(user_id: str, remote: ExchangeTrade, status: TradeStatus) -> Trade:
    return Trade(
        user_id=user_id,
        external_id=remote.external_id,
        trade_type=remote.trade_type,
        side=remote.side,
        order_kind=remote.order_kind,
        status=status,
        entry_price=remote.entry_price,
        exit_price=remote.exit_price,
        limit_price=remote.limit_price,
        margin=remote.margin,
        leverage=remote.leverage,
        quantity=remote.quantity,
        take_profit=remote.take_profit,
        stop_loss=remote.stop_loss,
        pnl=remote.pnl,
        fee=remote.fee,
        liquidation_price=remote.liquidation_price,
        instrument_name=remote.instrument_name,
        settlement=remote.settlement,
        created_at=remote.created_at,
        closed_at=remote.closed_at,
    )


class StateReconciler:
    """
    Merges exchange-side trade state into local records.

    Usage:
        reconciler = StateReconciler(gateway, trade_repo, user_repo)
        result = await reconciler.reconcile(user_id, TradeScope.ALL)
        print(f"created={result.created} updated={result.updated}")

        await reconciler.cancel_all(user_id)
    """

    def __init__(
        self,
        exchange,
        trade_repo,
        user_repo=None,
        price_source: Optional[Callable[[], Awaitable[Optional[Decimal]]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._exchange = exchange
        self._trades = trade_repo
        self._users = user_repo
        self._price_source = price_source
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # =========================================================================
    # Reconciliation
    # =========================================================================

    async def reconcile(self, user_id: str, scope: TradeScope = TradeScope.ALL) -> SyncResult:
        """
        Pull exchange trades for ``scope`` and upsert them locally.

        Never raises for exchange or per-trade failures; they are recorded
        in the result's errors.
        """
        scope = TradeScope(scope)
        result = SyncResult(
            run_id=str(uuid.uuid4())[:8],
            user_id=user_id,
            scope=scope,
            started_at=self._clock(),
        )
        logger.info(f"[{result.run_id}] Reconciling {scope.value} trades for user {user_id}")

        try:
            remote_trades = await self._exchange.fetch_trades(
                user_id, scope, on_error=result.errors.append
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.errors.append(f"Failed to fetch exchange trades: {e}")
            return self._finish(result)

        result.found = len(remote_trades)
        try:
            local_by_id = await self._trades.get_by_external_ids(
                user_id, [t.external_id for t in remote_trades]
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.errors.append(f"Failed to load local trades: {e}")
            return self._finish(result)

        for remote in remote_trades:
            try:
                status = map_exchange_status(remote)
                local = local_by_id.get(remote.external_id)

                if local is None:
                    created = await self._trades.create(_new_trade(user_id, remote, status))
                    local_by_id[remote.external_id] = created
                    result.created += 1
                    logger.info(
                        f"[{result.run_id}] IMPORT: {remote.trade_type.value} "
                        f"{remote.external_id} as {status.value}"
                    )
                    continue

                changes = _diff(local, remote, status)
                if not changes:
                    continue

                if local.status.is_terminal and status != local.status:
                    logger.warning(
                        f"[{result.run_id}] Trade {local.id} is {local.status.value} locally "
                        f"but {status.value} on exchange; keeping local status"
                    )
                await self._trades.update_fields(local.id, changes)
                result.updated += 1
                logger.info(
                    f"[{result.run_id}] UPDATE: trade {local.id} ({remote.external_id}) "
                    f"{sorted(changes)}"
                )

            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = f"Trade {remote.external_id}: {e}"
                result.errors.append(error)
                logger.error(f"[{result.run_id}] {error}")

        return self._finish(result)

    def _finish(self, result: SyncResult) -> SyncResult:
        result.completed_at = self._clock()
        logger.info(
            f"[{result.run_id}] Reconcile complete for {result.user_id}: "
            f"found={result.found} created={result.created} "
            f"updated={result.updated} errors={len(result.errors)}"
        )
        for error in result.errors:
            logger.warning(f"[{result.run_id}] {error}")
        return result

    async def reconcile_all_users(self, scope: TradeScope = TradeScope.ALL) -> list[SyncResult]:
        """Reconcile (and refresh balances for) every user with credentials."""
        if self._users is None:
            raise RuntimeError("reconcile_all_users requires a user repository")

        user_ids = await self._users.get_users_with_credentials()
        results = []
        for user_id in user_ids:
            results.append(await self.reconcile(user_id, scope))
            try:
                await self.sync_balance(user_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Balance sync failed for user {user_id}: {e}")
        return results

    async def sync_balance(self, user_id: str) -> Optional[Decimal]:
        """
        Store the user's exchange balance (sats) and its USD value.

        balance_usd = sats / 1e8 * btc_price, or None if no price is known.
        Returns the balance in sats.
        """
        if self._users is None:
            return None

        balance = await self._exchange.get_balance(user_id)
        price = await self._price_source() if self._price_source else None
        balance_usd = balance / SATS_PER_BTC * price if price else None
        await self._users.update_balance(user_id, balance, balance_usd)
        logger.debug(f"Balance for user {user_id}: {balance} sats (${balance_usd})")
        return balance

    # =========================================================================
    # Bulk actions
    # =========================================================================

    async def close_all(self, user_id: str) -> BulkActionResult:
        """
        Close every position: futures with one exchange call and a local
        sweep of active futures, running options one at a time.

        An options position the exchange refuses to close stays RUNNING
        and is reported in the result's errors.
        """
        await self._exchange.close_all(user_id)
        result = await self._sweep(
            user_id, "close_all", ACTIVE_TRADE_STATUSES, TradeStatus.CLOSED
        )
        await self._close_running_options(user_id, result)
        return result

    async def cancel_all(self, user_id: str) -> BulkActionResult:
        """Cancel every resting futures order, then mark OPEN futures CANCELLED."""
        await self._exchange.cancel_all(user_id)
        return await self._sweep(user_id, "cancel_all", (TradeStatus.OPEN,), TradeStatus.CANCELLED)

    async def _close_running_options(self, user_id: str, result: BulkActionResult) -> None:
        try:
            running = await self._trades.get_by_user(user_id, TradeStatus.RUNNING)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result.errors.append(f"Failed to load running options: {e}")
            logger.error(f"close_all for user {user_id}: could not load running options: {e}")
            return

        for trade in running:
            if trade.trade_type is not TradeType.OPTIONS or not trade.external_id:
                continue
            try:
                await self._exchange.close_trade(user_id, trade.external_id, TradeType.OPTIONS)
                await self._trades.update_fields(
                    trade.id, {"status": TradeStatus.CLOSED, "closed_at": self._clock()}
                )
                result.swept += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = f"Options trade {trade.external_id}: {e}"
                result.errors.append(error)
                logger.error(f"close_all for user {user_id}: {error}")

    async def _sweep(
        self,
        user_id: str,
        action: str,
        from_statuses,
        to_status: TradeStatus,
    ) -> BulkActionResult:
        result = BulkActionResult(user_id=user_id, action=action)
        try:
            result.swept = await self._trades.sweep_status(
                user_id, from_statuses, to_status, self._clock(), trade_type=TradeType.FUTURES
            )
            logger.info(f"{action} for user {user_id}: {result.swept} trades -> {to_status.value}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Exchange already acted; next reconcile heals the local side
            result.sweep_error = str(e)
            logger.error(
                f"{action} succeeded on exchange for user {user_id} "
                f"but local sweep failed: {e}"
            )
        return result

    # =========================================================================
    # Single-trade actions
    # =========================================================================

    async def _load_active(self, trade_id: int) -> Trade:
        trade = await self._trades.get(trade_id)
        if trade is None:
            raise LookupError(f"Trade {trade_id} not found")
        if not trade.external_id:
            raise TradeActionError(f"Trade {trade_id} has no exchange id yet")
        return trade

    async def close_trade(self, trade_id: int) -> Trade:
        """Close one running position (futures or options)."""
        trade = await self._load_active(trade_id)
        if trade.status is not TradeStatus.RUNNING:
            raise TradeActionError(
                f"Trade {trade_id} is {trade.status.value}; only running trades can be closed"
            )
        await self._exchange.close_trade(trade.user_id, trade.external_id, trade.trade_type)
        return await self._trades.update_fields(
            trade.id, {"status": TradeStatus.CLOSED, "closed_at": self._clock()}
        )

    async def cancel_trade(self, trade_id: int) -> Trade:
        """Cancel one resting futures order."""
        trade = await self._load_active(trade_id)
        if trade.status is not TradeStatus.OPEN or trade.trade_type is not TradeType.FUTURES:
            raise TradeActionError(
                f"Trade {trade_id} is {trade.status.value} {trade.trade_type.value}; "
                f"only open futures orders can be cancelled"
            )
        await self._exchange.cancel_trade(trade.user_id, trade.external_id)
        return await self._trades.update_fields(
            trade.id, {"status": TradeStatus.CANCELLED, "closed_at": self._clock()}
        )
