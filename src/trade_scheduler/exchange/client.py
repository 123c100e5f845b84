"""
REST API client for LN Markets (v2).

Async access to the futures and options endpoints with HMAC request
signing, client-side rate limiting and retries.

Retry policy:
    - Reads (GET) retry 5xx, timeouts and transport errors with
      exponential backoff.
    - Anything that creates, closes or cancels a trade is sent exactly
      once. A lost response is recovered by the next reconciliation pass,
      never by resubmitting.
    - 4xx responses are never retried.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Optional
from urllib.parse import urlencode

import aiohttp

from trade_scheduler.storage.models import UserCredentials

logger = logging.getLogger(__name__)


class ExchangeAPIError(Exception):
    """Base exception for LN Markets API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(ExchangeAPIError):
    """Rate limit exceeded."""
    pass


class CredentialsMissingError(ExchangeAPIError):
    """The user has no LN Markets API credentials configured."""
    pass


def _error_text(text: str) -> str:
    """Pull the human-readable message out of an LN Markets error body."""
    try:
        body = json.loads(text)
    except (TypeError, ValueError):
        return text.strip()
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or text).strip()
    return text.strip()


class LNMarketsClient:
    """
    Async REST client for one LN Markets account.

    Usage:
        async with LNMarketsClient(credentials, network="testnet") as client:
            trade = await client.new_futures_trade({"type": "m", "side": "b", ...})
            running = await client.get_futures_trades("running")
    """

    MAINNET_URL = "https://api.lnmarkets.com"
    TESTNET_URL = "https://api.testnet.lnmarkets.com"
    API_PREFIX = "/v2"

    def __init__(
        self,
        credentials: Optional[UserCredentials] = None,
        network: str = "mainnet",
        session: Optional[aiohttp.ClientSession] = None,
        rate_limit: float = 5.0,  # requests per second
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """
        Initialize the REST client.

        Args:
            credentials: API key material; only public endpoints work without it
            network: "mainnet" or "testnet"
            session: Optional aiohttp session (created if not provided)
            rate_limit: Maximum requests per second
            timeout: Request timeout in seconds
            max_retries: Attempts for retryable (read) requests
            retry_delay: Base delay between retries (exponential backoff)
        """
        if network not in ("mainnet", "testnet"):
            raise ValueError(f"Unknown LN Markets network: {network}")

        self.credentials = credentials
        self.network = network
        self._base_url = self.TESTNET_URL if network == "testnet" else self.MAINNET_URL
        self._session = session
        self._owns_session = session is None
        self._rate_limit = rate_limit
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max_retries
        self._retry_delay = retry_delay

        self._request_times: list[float] = []
        self._rate_lock = asyncio.Lock()

    async def __aenter__(self) -> "LNMarketsClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def _rate_limit_wait(self) -> None:
        """Wait if necessary to respect rate limits."""
        async with self._rate_lock:
            now = time.monotonic()
            self._request_times = [t for t in self._request_times if now - t < 1.0]

            if len(self._request_times) >= self._rate_limit:
                wait_time = 1.0 - (now - self._request_times[0])
                if wait_time > 0:
                    await asyncio.sleep(wait_time)

            self._request_times.append(time.monotonic())

    def _sign(self, method: str, path: str, data: str) -> dict[str, str]:
        """
        Authentication headers for one request.

        signature = base64(HMAC_SHA256(secret, timestamp + METHOD + path + data))
        where data is the query string (GET/DELETE) or JSON body (POST/PUT).
        """
        if self.credentials is None:
            raise CredentialsMissingError("LN Markets credentials are not configured")

        timestamp = str(int(time.time() * 1000))
        payload = f"{timestamp}{method}{path}{data}"
        digest = hmac.new(
            self.credentials.api_secret.encode(), payload.encode(), hashlib.sha256
        ).digest()
        return {
            "LNM-ACCESS-KEY": self.credentials.api_key,
            "LNM-ACCESS-PASSPHRASE": self.credentials.api_passphrase,
            "LNM-ACCESS-TIMESTAMP": timestamp,
            "LNM-ACCESS-SIGNATURE": base64.b64encode(digest).decode(),
        }

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
        auth: bool = True,
        retry: bool = True,
    ) -> Any:
        """
        Make a (signed) HTTP request.

        Args:
            method: HTTP method
            path: Endpoint path below /v2, e.g. "/futures"
            params: Query parameters (GET/DELETE)
            body: JSON body (POST/PUT)
            auth: Sign the request with the account credentials
            retry: Allow retries; False for non-idempotent calls

        Returns:
            Parsed JSON response (None for an empty body)

        Raises:
            ExchangeAPIError: On API errors
            RateLimitError: When rate limited
            CredentialsMissingError: auth requested without credentials
            asyncio.CancelledError: When task is cancelled (re-raised)
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        full_path = f"{self.API_PREFIX}{path}"
        headers: dict[str, str] = {}
        if method in ("POST", "PUT"):
            data = json.dumps(body or {}, separators=(",", ":"))
            headers["Content-Type"] = "application/json"
            url = f"{self._base_url}{full_path}"
        else:
            data = urlencode(params or {})
            url = f"{self._base_url}{full_path}" + (f"?{data}" if data else "")

        if auth:
            headers.update(self._sign(method, full_path, data))

        attempts = self._max_retries if retry else 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                await self._rate_limit_wait()

                request_kwargs: dict[str, Any] = {"headers": headers}
                if method in ("POST", "PUT"):
                    request_kwargs["data"] = data

                async with self._session.request(method, url, **request_kwargs) as response:
                    text = await response.text()

                    if response.status == 429:
                        raise RateLimitError("Rate limit exceeded", status_code=429)

                    if 400 <= response.status < 500:
                        raise ExchangeAPIError(
                            _error_text(text) or f"API error: {response.status}",
                            status_code=response.status,
                        )

                    if response.status >= 500:
                        raise ExchangeAPIError(
                            f"Server error: {response.status} - {_error_text(text)}",
                            status_code=response.status,
                        )

                    return json.loads(text) if text else None

            except RateLimitError as e:
                last_error = e
                if attempt + 1 < attempts:
                    delay = self._retry_delay * (2 ** attempt) * 2
                    logger.warning(f"Rate limited, waiting {delay}s before retry")
                    await asyncio.sleep(delay)

            except ExchangeAPIError as e:
                if e.status_code and e.status_code >= 500:
                    last_error = e
                    if attempt + 1 < attempts:
                        logger.warning(
                            f"Server error {e.status_code} on {method} {path}, "
                            f"retry {attempt + 1}/{attempts}"
                        )
                        await asyncio.sleep(self._retry_delay * (2 ** attempt))
                else:
                    raise

            except asyncio.TimeoutError:
                last_error = ExchangeAPIError(f"Request timed out: {method} {path}")
                if attempt + 1 < attempts:
                    logger.warning(f"Request timeout, retry {attempt + 1}/{attempts}")
                    await asyncio.sleep(self._retry_delay * (2 ** attempt))

            except asyncio.CancelledError:
                logger.debug("Request cancelled")
                raise

            except aiohttp.ClientError as e:
                last_error = ExchangeAPIError(f"Network error: {e}")
                if attempt + 1 < attempts:
                    logger.warning(f"Request failed: {e}, retry {attempt + 1}/{attempts}")
                    await asyncio.sleep(self._retry_delay * (2 ** attempt))

            except ValueError as e:
                # JSON decode failure on a 2xx response
                raise ExchangeAPIError(f"Invalid response from {method} {path}: {e}")

        raise last_error or ExchangeAPIError("Request failed after retries")

    # =========================================================================
    # Futures
    # =========================================================================

    async def new_futures_trade(self, payload: dict[str, Any]) -> dict:
        return await self._request("POST", "/futures", body=payload, retry=False)

    async def get_futures_trades(self, trade_type: str) -> list[dict]:
        """List futures trades; trade_type is 'open', 'running' or 'closed'."""
        data = await self._request("GET", "/futures", params={"type": trade_type})
        return data if isinstance(data, list) else []

    async def close_futures_trade(self, trade_id: str) -> dict:
        return await self._request("DELETE", "/futures", params={"id": trade_id}, retry=False)

    async def cancel_futures_trade(self, trade_id: str) -> dict:
        return await self._request("POST", "/futures/cancel", body={"id": trade_id}, retry=False)

    async def close_all_futures(self) -> Any:
        return await self._request("DELETE", "/futures/all/close", retry=False)

    async def cancel_all_futures(self) -> Any:
        return await self._request("DELETE", "/futures/all/cancel", retry=False)

    # =========================================================================
    # Options
    # =========================================================================

    async def new_options_trade(self, payload: dict[str, Any]) -> dict:
        return await self._request("POST", "/options", body=payload, retry=False)

    async def get_options_trades(self) -> list[dict]:
        data = await self._request("GET", "/options")
        return data if isinstance(data, list) else []

    async def close_options_trade(self, trade_id: str) -> dict:
        return await self._request("DELETE", "/options", params={"id": trade_id}, retry=False)

    # =========================================================================
    # Account
    # =========================================================================

    async def get_user(self) -> dict:
        data = await self._request("GET", "/user")
        return data or {}
