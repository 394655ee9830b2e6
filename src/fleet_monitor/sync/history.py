"""
History cache for per-node health-check series.

Many node widgets render at once and each asks for its own timeline; several
widgets often ask for the same node and window. The cache keeps each result for
a short TTL and coalesces concurrent identical requests onto one network call.

Lookup order for fetch():
    1. Fresh cache entry (age < ttl)   -> returned without any network call
    2. Request in flight for the key   -> awaited, no second call
    3. Otherwise                       -> new call, result cached on success

force=True skips steps 1 and 2. Failures and cancelled calls never write to
the cache.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from .metrics import MetricsCollector
from .models import HealthHistory, HistoryWindow

if TYPE_CHECKING:
    from .client import MonitorApiClient

logger = logging.getLogger(__name__)

DEFAULT_TTL = 60.0


@dataclass(frozen=True)
class HistoryKey:
    """Composite cache key; every parameter that changes the result is part of it."""
    node_id: str
    window: HistoryWindow = HistoryWindow.LAST_24_HOURS
    scope_token: Optional[str] = None
    source: Optional[str] = None

    def __str__(self) -> str:
        return "|".join((self.node_id, self.window.value, self.scope_token or "", self.source or ""))


HistoryFetcher = Callable[[HistoryKey, datetime, datetime], Awaitable[HealthHistory]]


def client_fetcher(client: "MonitorApiClient") -> HistoryFetcher:
    """Fetcher that loads history through the REST client."""

    async def fetch(key: HistoryKey, start: datetime, end: datetime) -> HealthHistory:
        return await client.get_health_history(
            key.node_id,
            start,
            end,
            share_token=key.scope_token,
            source=key.source,
        )

    return fetch


@dataclass
class _Entry:
    data: HealthHistory
    fetched_at: float
    started_at: float


@dataclass
class _InFlight:
    task: asyncio.Task
    started_at: float


def _consume_result(task: asyncio.Task) -> None:
    # Retrieve the outcome so a failure nobody awaited is not reported as lost
    if not task.cancelled():
        task.exception()


class HistoryCache:
    """
    TTL cache with request coalescing for health-history fetches.

    Usage:
        cache = HistoryCache(client_fetcher(client))

        history = await cache.fetch("node-1")
        history = await cache.fetch("node-1", force=True)

        cache.cancel(HistoryKey("node-1"))
    """

    def __init__(
        self,
        fetcher: HistoryFetcher,
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
        now: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Initialize the cache.

        Args:
            fetcher: Coroutine loading history for (key, start, end)
            ttl: Seconds an entry stays fresh
            clock: Monotonic clock used for entry age
            now: Wall clock used to compute the query window
            metrics: Optional collector for hit / miss / coalesced counters
        """
        self._fetcher = fetcher
        self._ttl = ttl
        self._clock = clock
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._metrics = metrics

        self._entries: dict[HistoryKey, _Entry] = {}
        self._in_flight: dict[HistoryKey, _InFlight] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, key: HistoryKey) -> Optional[HealthHistory]:
        """Fresh cached data for a key, or None. Never touches the network."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self._ttl:
            return None
        return entry.data

    def is_in_flight(self, key: HistoryKey) -> bool:
        flight = self._in_flight.get(key)
        return flight is not None and not flight.task.done()

    async def fetch(
        self,
        node_id: str,
        window: HistoryWindow = HistoryWindow.LAST_24_HOURS,
        scope_token: Optional[str] = None,
        source: Optional[str] = None,
        force: bool = False,
    ) -> HealthHistory:
        """
        Fetch a node's history for a window.

        Raises:
            FetchError / ParseError: The network call failed (nothing cached)
            asyncio.CancelledError: The shared call was cancelled
        """
        key = HistoryKey(
            node_id=node_id,
            window=HistoryWindow(window),
            scope_token=scope_token or None,
            source=source or None,
        )
        return await self.get(key, force=force)

    async def get(self, key: HistoryKey, force: bool = False) -> HealthHistory:
        """Fetch by composite key. See fetch()."""
        if not force:
            cached = self.peek(key)
            if cached is not None:
                if self._metrics:
                    self._metrics.record_cache_hit()
                return cached

            flight = self._in_flight.get(key)
            if flight is not None and not flight.task.done():
                if self._metrics:
                    self._metrics.record_cache_coalesced()
                logger.debug(f"Joining in-flight history request {key}")
                return await asyncio.shield(flight.task)

        if self._metrics:
            self._metrics.record_cache_miss()
        task = self._start(key)
        return await asyncio.shield(task)

    def _start(self, key: HistoryKey) -> asyncio.Task:
        started_at = self._clock()
        end = self._now()
        start = end - key.window.duration

        task = asyncio.create_task(self._run(key, start, end, started_at))
        task.add_done_callback(_consume_result)

        previous = self._in_flight.get(key)
        if previous is not None and not previous.task.done():
            logger.debug(f"Forced history request supersedes in-flight request {key}")
        self._in_flight[key] = _InFlight(task=task, started_at=started_at)
        return task

    async def _run(
        self,
        key: HistoryKey,
        start: datetime,
        end: datetime,
        started_at: float,
    ) -> HealthHistory:
        try:
            data = await self._fetcher(key, start, end)

            existing = self._entries.get(key)
            if existing is not None and existing.started_at > started_at:
                logger.debug(f"Discarding superseded history result {key}")
            else:
                self._entries[key] = _Entry(
                    data=data,
                    fetched_at=self._clock(),
                    started_at=started_at,
                )
            return data

        except asyncio.CancelledError:
            logger.debug(f"History request cancelled {key}")
            raise

        except Exception as e:
            logger.warning(f"History request failed {key}: {e}")
            if self._metrics:
                self._metrics.record_error(
                    error_type=type(e).__name__,
                    message=str(e),
                    component="history",
                    node_id=key.node_id,
                )
            raise

        finally:
            flight = self._in_flight.get(key)
            if flight is not None and flight.task is asyncio.current_task():
                del self._in_flight[key]

    def cancel(self, key: HistoryKey) -> bool:
        """
        Cancel the in-flight call for a key.

        Every waiter receives CancelledError and nothing is cached.

        Returns:
            True if a call was cancelled
        """
        flight = self._in_flight.pop(key, None)
        if flight is None or flight.task.done():
            return False
        flight.task.cancel()
        return True

    def invalidate(self, node_id: Optional[str] = None) -> int:
        """
        Drop cached entries (all, or those for one node).

        In-flight calls are left alone.

        Returns:
            Number of entries removed
        """
        if node_id is None:
            count = len(self._entries)
            self._entries.clear()
            return count

        stale = [k for k in self._entries if k.node_id == node_id]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        """Cancel every in-flight call and drop every entry."""
        for key in list(self._in_flight):
            self.cancel(key)
        self._entries.clear()
