"""
User repository (table: users).

Only the pieces the scheduler needs: exchange credentials and the
cached account balance.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from trade_scheduler.storage.models import UserCredentials
from trade_scheduler.storage.repositories.base import BaseRepository


class UserRepository(BaseRepository[UserCredentials]):
    """Repository for LN Markets credentials and balances."""

    table_name = "users"
    model_class = UserCredentials

    async def get_credentials(self, user_id: str) -> Optional[UserCredentials]:
        """Credentials for a user, or None if any part is missing."""
        query = """
            SELECT id AS user_id, api_key, api_secret, api_passphrase
            FROM users
            WHERE id = $1
              AND api_key IS NOT NULL AND api_key <> ''
              AND api_secret IS NOT NULL AND api_secret <> ''
              AND api_passphrase IS NOT NULL AND api_passphrase <> ''
        """
        record = await self.db.fetchrow(query, user_id)
        return self._record_to_model(record)

    async def get_users_with_credentials(self) -> list[str]:
        query = """
            SELECT id FROM users
            WHERE api_key IS NOT NULL AND api_key <> ''
              AND api_secret IS NOT NULL AND api_secret <> ''
              AND api_passphrase IS NOT NULL AND api_passphrase <> ''
            ORDER BY id
        """
        records = await self.db.fetch(query)
        return [r["id"] for r in records]

    async def save_credentials(self, credentials: UserCredentials) -> None:
        query = """
            INSERT INTO users (id, api_key, api_secret, api_passphrase)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET
                api_key = EXCLUDED.api_key,
                api_secret = EXCLUDED.api_secret,
                api_passphrase = EXCLUDED.api_passphrase
        """
        await self.db.execute(
            query,
            credentials.user_id,
            credentials.api_key,
            credentials.api_secret,
            credentials.api_passphrase,
        )

    async def update_balance(
        self, user_id: str, balance_sats: Decimal, balance_usd: Optional[Decimal]
    ) -> None:
        query = """
            UPDATE users
            SET balance = $2, balance_usd = $3, balance_updated_at = NOW()
            WHERE id = $1
        """
        await self.db.execute(query, user_id, balance_sats, balance_usd)

    async def get_balance(self, user_id: str) -> Optional[tuple[Decimal, Optional[Decimal]]]:
        """(balance in sats, balance in USD) or None if never synced."""
        record = await self.db.fetchrow(
            "SELECT balance, balance_usd FROM users WHERE id = $1", user_id
        )
        if record is None or record["balance"] is None:
            return None
        return record["balance"], record["balance_usd"]
