"""
Market snapshot repository (table: market_data).

One row per symbol, overwritten on every ticker refresh.
"""
from __future__ import annotations

from typing import Optional

from trade_scheduler.storage.models import MarketSnapshot
from trade_scheduler.storage.repositories.base import BaseRepository


class MarketDataRepository(BaseRepository[MarketSnapshot]):
    """Repository for the latest ticker per symbol."""

    table_name = "market_data"
    model_class = MarketSnapshot

    async def get(self, symbol: str) -> Optional[MarketSnapshot]:
        return await self.get_by_id(symbol, id_column="symbol")

    async def upsert(self, snapshot: MarketSnapshot) -> MarketSnapshot:
        query = """
            INSERT INTO market_data
            (symbol, last_price, index_price, bid_price, ask_price,
             funding_rate, next_funding_time, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, COALESCE($8, NOW()))
            ON CONFLICT (symbol) DO UPDATE SET
                last_price = EXCLUDED.last_price,
                index_price = EXCLUDED.index_price,
                bid_price = EXCLUDED.bid_price,
                ask_price = EXCLUDED.ask_price,
                funding_rate = EXCLUDED.funding_rate,
                next_funding_time = EXCLUDED.next_funding_time,
                updated_at = EXCLUDED.updated_at
            RETURNING *
        """
        record = await self.db.fetchrow(
            query,
            snapshot.symbol,
            snapshot.last_price,
            snapshot.index_price,
            snapshot.bid_price,
            snapshot.ask_price,
            snapshot.funding_rate,
            snapshot.next_funding_time,
            snapshot.updated_at,
        )
        return self._record_to_model(record)
