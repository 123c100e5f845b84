"""
Exchange layer test fixtures.

IMPORTANT: All LN Markets API calls must be mocked.
Never hit the real exchange in tests.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from trade_scheduler.storage.memory import MemoryStore, MemoryUserRepository
from trade_scheduler.storage.models import UserCredentials


class FakeResponse:
    """Minimal stand-in for an aiohttp response used as ``async with``."""

    def __init__(self, status: int = 200, text: str = ""):
        self.status = status
        self._text = text

    async def text(self) -> str:
        return self._text

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


@pytest.fixture
def credentials() -> UserCredentials:
    return UserCredentials(
        user_id="user-1",
        api_key="test-key",
        api_secret="test-secret",
        api_passphrase="test-passphrase",
    )


@pytest.fixture
def fake_response():
    """The FakeResponse class, for queueing responses in a test."""
    return FakeResponse


@pytest.fixture
def mock_session():
    """aiohttp session whose request() returns queued FakeResponses."""
    session = MagicMock()
    session.request = MagicMock(return_value=FakeResponse(200, "{}"))
    session.close = AsyncMock()
    return session


# =============================================================================
# Sample API payloads
# =============================================================================


@pytest.fixture
def running_futures_payload() -> dict:
    return {
        "id": "f-running",
        "type": "m",
        "side": "b",
        "margin": 10000,
        "leverage": 10,
        "quantity": 41,
        "price": 41000.5,
        "entry_price": 41000.5,
        "liquidation": 37300,
        "takeprofit": 45000,
        "stoploss": 0,
        "pl": 120,
        "opening_fee": 8,
        "closing_fee": 0,
        "sum_carry_fees": 3,
        "open": False,
        "running": True,
        "canceled": False,
        "closed": False,
        "creation_ts": 1700000000000,
        "closed_ts": None,
    }


@pytest.fixture
def open_limit_payload() -> dict:
    return {
        "id": "f-open",
        "type": "l",
        "side": "s",
        "margin": 5000,
        "leverage": 5,
        "price": 45000,
        "takeprofit": 0,
        "stoploss": 0,
        "pl": 0,
        "opening_fee": 0,
        "closing_fee": 0,
        "sum_carry_fees": 0,
        "open": True,
        "running": False,
        "canceled": False,
        "closed": False,
        "creation_ts": 1700000100000,
    }


@pytest.fixture
def options_payload() -> dict:
    return {
        "id": "o-1",
        "side": "b",
        "quantity": 10,
        "margin": 2500,
        "strike": 45000,
        "settlement": "cash",
        "instrument_name": "BTC.2025-01-31.45000.C",
        "opening_fee": 5,
        "closed": False,
        "expired": False,
        "creation_ts": 1700000200000,
    }


@pytest.fixture
def fake_client(running_futures_payload, open_limit_payload, options_payload):
    """LNMarketsClient double with the gateway's methods as AsyncMocks."""
    client = MagicMock()
    client.credentials = None
    client.close = AsyncMock()
    client.new_futures_trade = AsyncMock(
        return_value={"id": "f-new", "type": "m", "price": 41000, "margin": 10000}
    )
    client.new_options_trade = AsyncMock(return_value={"id": "o-new", "quantity": 10})

    by_type = {
        "open": [open_limit_payload],
        "running": [running_futures_payload],
        "closed": [],
    }
    client.get_futures_trades = AsyncMock(side_effect=lambda t: list(by_type[t]))
    client.get_options_trades = AsyncMock(return_value=[options_payload])
    client.close_futures_trade = AsyncMock(return_value={})
    client.close_options_trade = AsyncMock(return_value={})
    client.cancel_futures_trade = AsyncMock(return_value={})
    client.close_all_futures = AsyncMock(return_value=[])
    client.cancel_all_futures = AsyncMock(return_value=[])
    client.get_user = AsyncMock(return_value={"uid": "abc", "balance": 150000})
    return client


@pytest_asyncio.fixture
async def users(credentials) -> MemoryUserRepository:
    """User repository holding credentials for user-1 only."""
    repo = MemoryUserRepository(MemoryStore())
    await repo.save_credentials(credentials)
    return repo
