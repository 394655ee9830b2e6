"""
REST API client for the monitor backend.

Provides async access to:
    - Dashboard snapshots (by account or share token)
    - Per-node health-check history
    - Share-link management (create, list, revoke)

Authentication is handled outside this client. Callers that need it pass the
session's headers (cookie or bearer token) at construction.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

from .errors import FetchError, ParseError
from .models import Dashboard, ExpireIn, HealthHistory, ShareRecord
from .wire import dashboard_from_wire, history_from_wire, share_from_wire

logger = logging.getLogger(__name__)


class MonitorApiClient:
    """
    Async REST client for the monitor backend.

    Features:
        - Automatic retries with exponential backoff (5xx, timeouts, transport)
        - 4xx responses fail immediately
        - Typed failures: FetchError for HTTP/transport, ParseError for bodies

    Usage:
        async with MonitorApiClient("https://proxy.example.com") as client:
            dashboard = await client.get_dashboard("acct_1")
            history = await client.get_health_history(node_id, start, end)
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """
        Initialize the REST client.

        Args:
            base_url: Backend origin, e.g. "https://proxy.example.com"
            session: Optional aiohttp session (created if not provided)
            headers: Extra headers sent with every request (auth)
            timeout: Request timeout in seconds
            max_retries: Number of attempts for retryable failures
            retry_delay: Base delay between retries (exponential backoff)
        """
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._headers = dict(headers or {})
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> "MonitorApiClient":
        """Async context manager entry."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs,
    ) -> Any:
        """
        Make an HTTP request with retries.

        Returns:
            Parsed JSON response (None for empty bodies)

        Raises:
            FetchError: On HTTP or transport errors
            ParseError: When the body is not valid JSON
            asyncio.CancelledError: When the task is cancelled (re-raised)
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        url = f"{self._base_url}{path}"
        last_error: Optional[FetchError] = None

        for attempt in range(self._max_retries):
            try:
                async with self._session.request(
                    method, url, headers=self._headers, **kwargs
                ) as response:
                    if 400 <= response.status < 500:
                        text = await response.text()
                        raise FetchError(
                            f"API error: {response.status} - {_error_text(text)}",
                            status_code=response.status,
                        )

                    if response.status >= 500:
                        text = await response.text()
                        raise FetchError(
                            f"Server error: {response.status} - {_error_text(text)}",
                            status_code=response.status,
                            retryable=True,
                        )

                    if response.status == 204:
                        return None
                    body = await response.text()
                    if not body.strip():
                        return None
                    try:
                        return json.loads(body)
                    except json.JSONDecodeError as e:
                        raise ParseError(f"Invalid JSON from {path}: {e}", raw=body) from e

            except FetchError as e:
                if not e.retryable:
                    raise
                last_error = e
                logger.warning(
                    f"Server error {e.status_code} on {path}, retry {attempt + 1}/{self._max_retries}"
                )

            except asyncio.TimeoutError:
                last_error = FetchError(f"Request to {path} timed out", retryable=True)
                logger.warning(f"Request timeout on {path}, retry {attempt + 1}/{self._max_retries}")

            except asyncio.CancelledError:
                logger.debug(f"Request to {path} cancelled")
                raise

            except aiohttp.ClientError as e:
                last_error = FetchError(f"Request to {path} failed: {e}", retryable=True)
                logger.warning(f"Request failed: {e}, retry {attempt + 1}/{self._max_retries}")

            if attempt + 1 < self._max_retries:
                await asyncio.sleep(self._retry_delay * (2 ** attempt))

        raise last_error or FetchError(f"Request to {path} failed after retries")

    # =========================================================================
    # Dashboard
    # =========================================================================

    async def get_dashboard(self, account_id: Optional[str] = None) -> Dashboard:
        """
        Fetch the dashboard snapshot for an account.

        Args:
            account_id: Account to view; None for the session's default account
        """
        params = {"account_id": account_id} if account_id else None
        data = await self._request("GET", "/api/monitor/dashboard", params=params)
        return dashboard_from_wire(data)

    async def get_shared_dashboard(self, token: str) -> Dashboard:
        """Fetch the dashboard snapshot behind a share token."""
        data = await self._request("GET", f"/api/monitor/share/{quote(token, safe='')}")
        return dashboard_from_wire(data)

    # =========================================================================
    # Health history
    # =========================================================================

    async def get_health_history(
        self,
        node_id: str,
        start: datetime,
        end: datetime,
        share_token: Optional[str] = None,
        source: Optional[str] = None,
    ) -> HealthHistory:
        """
        Fetch a node's health-check series for [start, end].

        Args:
            node_id: Node to query
            start: Window start (sent as ISO-8601 "from")
            end: Window end (sent as ISO-8601 "to")
            share_token: Share token for public views
            source: Optional source filter (scheduled / recovery / proxy_fail)
        """
        params = {"from": start.isoformat(), "to": end.isoformat()}
        if share_token:
            params["share_token"] = share_token
        if source:
            params["source"] = source

        data = await self._request(
            "GET",
            f"/api/nodes/{quote(node_id, safe='')}/health-history",
            params=params,
        )
        return history_from_wire(data, node_id=node_id, start=start, end=end)

    # =========================================================================
    # Share links
    # =========================================================================

    async def create_share(
        self,
        account_id: str,
        expire_in: ExpireIn = ExpireIn.ONE_DAY,
    ) -> ShareRecord:
        """Create a read-only share link for an account's dashboard."""
        payload = {"account_id": account_id, "expire_in": ExpireIn(expire_in).value}
        data = await self._request("POST", "/api/monitor/shares", json=payload)
        share = share_from_wire(data, base_url=self._base_url, account_id=account_id)
        logger.info(f"Created share {share.id} for account {account_id} ({payload['expire_in']})")
        return share

    async def list_shares(
        self,
        account_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ShareRecord]:
        """List share links, newest first as returned by the backend."""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if account_id:
            params["account_id"] = account_id

        data = await self._request("GET", "/api/monitor/shares", params=params)
        items = data.get("shares") if isinstance(data, dict) else None

        shares = []
        for item in items or []:
            try:
                shares.append(share_from_wire(item, base_url=self._base_url))
            except ParseError as e:
                logger.warning(f"Failed to parse share record: {e}")
        return shares

    async def revoke_share(self, share_id: str) -> None:
        """Revoke a share link."""
        await self._request("DELETE", f"/api/monitor/shares/{quote(share_id, safe='')}")
        logger.info(f"Revoked share {share_id}")


def _error_text(text: str) -> str:
    return text.strip()[:200]
