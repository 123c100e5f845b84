"""
ExchangeGateway - per-user access to LN Markets.

The scheduler and reconciler work in terms of user ids; the gateway
resolves each user's API credentials from storage, keeps one client per
user (rebuilt when the credentials change), and speaks in storage enums
and exchange dataclasses rather than raw JSON.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable, Optional

from trade_scheduler.storage.models import TradeScope, TradeType, UserCredentials

from .client import CredentialsMissingError, ExchangeAPIError, LNMarketsClient
from .models import ExchangeTrade, OrderAck, OrderRequest

logger = logging.getLogger(__name__)

ClientFactory = Callable[[UserCredentials, str], LNMarketsClient]

_FUTURES_SCOPES = ("open", "running", "closed")


def _default_client_factory(credentials: UserCredentials, network: str) -> LNMarketsClient:
    return LNMarketsClient(credentials=credentials, network=network)


class ExchangeGateway:
    """
    Exchange client collaborator used by the executor and reconciler.

    Usage:
        gateway = ExchangeGateway(user_repo, network="testnet")
        ack = await gateway.submit_order(user_id, OrderRequest(...))
        trades = await gateway.fetch_trades(user_id, TradeScope.ALL)
        await gateway.close()
    """

    def __init__(
        self,
        users,
        network: str = "mainnet",
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._users = users
        self._network = network
        self._client_factory = client_factory or _default_client_factory
        self._clients: dict[str, LNMarketsClient] = {}

    async def _client(self, user_id: str) -> LNMarketsClient:
        credentials = await self._users.get_credentials(user_id)
        if credentials is None:
            raise CredentialsMissingError(
                f"No LN Markets API credentials configured for user {user_id}"
            )

        cached = self._clients.get(user_id)
        if cached is not None and cached.credentials == credentials:
            return cached
        if cached is not None:
            logger.info(f"Credentials changed for user {user_id}, rebuilding client")
            await cached.close()

        client = self._client_factory(credentials, self._network)
        self._clients[user_id] = client
        return client

    async def close(self) -> None:
        for client in self._clients.values():
            try:
                await client.close()
            except Exception as e:
                logger.warning(f"Error closing exchange client: {e}")
        self._clients.clear()

    # =========================================================================
    # Orders
    # =========================================================================

    async def submit_order(self, user_id: str, request: OrderRequest) -> OrderAck:
        """
        Submit a new futures or options trade. Sent exactly once.

        Raises:
            ExchangeAPIError: rejection, network failure, or a response
                without a trade id.
        """
        client = await self._client(user_id)
        payload = request.to_payload()
        if request.is_options:
            data = await client.new_options_trade(payload)
        else:
            data = await client.new_futures_trade(payload)

        ack = OrderAck.from_api(data or {})
        if ack is None:
            raise ExchangeAPIError("Exchange accepted the order but returned no trade id")
        return ack

    async def close_trade(self, user_id: str, external_id: str, trade_type: TradeType) -> None:
        client = await self._client(user_id)
        if trade_type is TradeType.OPTIONS:
            await client.close_options_trade(external_id)
        else:
            await client.close_futures_trade(external_id)

    async def cancel_trade(self, user_id: str, external_id: str) -> None:
        client = await self._client(user_id)
        await client.cancel_futures_trade(external_id)

    async def close_all(self, user_id: str) -> None:
        client = await self._client(user_id)
        await client.close_all_futures()

    async def cancel_all(self, user_id: str) -> None:
        client = await self._client(user_id)
        await client.cancel_all_futures()

    # =========================================================================
    # Reads
    # =========================================================================

    async def fetch_trades(
        self,
        user_id: str,
        scope: TradeScope,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> list[ExchangeTrade]:
        """
        Exchange-side trades for a user.

        scope ALL covers open, running and closed futures plus options.
        Unparseable entries are skipped and reported through ``on_error``
        so one bad record never hides the rest.
        """
        client = await self._client(user_id)
        scope = TradeScope(scope)

        raw_futures: list[dict] = []
        raw_options: list[dict] = []
        if scope is TradeScope.ALL:
            for trade_type in _FUTURES_SCOPES:
                raw_futures.extend(await client.get_futures_trades(trade_type))
            raw_options = await client.get_options_trades()
        else:
            raw_futures = await client.get_futures_trades(scope.value)

        trades: list[ExchangeTrade] = []
        seen: set[str] = set()
        for parser, items in (
            (ExchangeTrade.from_futures, raw_futures),
            (ExchangeTrade.from_options, raw_options),
        ):
            for item in items:
                try:
                    trade = parser(item)
                except (ValueError, TypeError, AttributeError) as e:
                    item_id = item.get("id", "?") if isinstance(item, dict) else "?"
                    message = f"Unparseable exchange trade {item_id}: {e}"
                    logger.warning(f"{message} (user {user_id})")
                    if on_error is not None:
                        on_error(message)
                    continue
                # A trade can move between lists while we page through them
                if trade.external_id in seen:
                    continue
                seen.add(trade.external_id)
                trades.append(trade)
        return trades

    async def get_balance(self, user_id: str) -> Decimal:
        """Account balance in sats."""
        client = await self._client(user_id)
        user = await client.get_user()
        balance = user.get("balance")
        if balance is None:
            raise ExchangeAPIError("User info response has no balance")
        return Decimal(str(balance))
