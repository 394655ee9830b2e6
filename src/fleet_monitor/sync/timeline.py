"""
Per-node health timeline.

One NodeTimeline backs one rendered node widget: it loads the node's history
through the shared HistoryCache, folds live health-check events into the loaded
series, and reports the figures the widget shows (ok / fail counts, health rate,
online indicator).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import MonitorError
from .history import HistoryCache, HistoryKey
from .models import HealthCheckRecord, HealthHistory, HistoryWindow
from .reconciler import merge_history_record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimelineStats:
    ok: int = 0
    fail: int = 0
    health_rate: float = 0.0

    @property
    def total(self) -> int:
        return self.ok + self.fail


class NodeTimeline:
    """
    History consumer for a single node widget.

    Usage:
        timeline = NodeTimeline(cache, "node-1", scope_token=scope.history_token)
        await timeline.load()
        timeline.inject(record)        # live health_check event
        print(timeline.stats())
        timeline.close()               # widget unmount
    """

    def __init__(
        self,
        cache: HistoryCache,
        node_id: str,
        window: HistoryWindow = HistoryWindow.LAST_24_HOURS,
        scope_token: Optional[str] = None,
        source: Optional[str] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self._cache = cache
        self._node_id = node_id
        self._window = HistoryWindow(window)
        self._scope_token = scope_token or None
        self._source = source or None
        self._now = now or (lambda: datetime.now(timezone.utc))

        self.history: Optional[HealthHistory] = None
        self.error: Optional[str] = None
        self.loading = False

        # Key of the network call this timeline started (not merely joined)
        self._owned_key: Optional[HistoryKey] = None
        self._closed = False

    @property
    def node_id(self) -> str:
        return self._node_id

    @property
    def source(self) -> Optional[str]:
        return self._source

    @property
    def key(self) -> HistoryKey:
        return HistoryKey(
            node_id=self._node_id,
            window=self._window,
            scope_token=self._scope_token,
            source=self._source,
        )

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def load(self, force: bool = False) -> Optional[HealthHistory]:
        """
        Load history through the shared cache.

        Returns:
            The loaded history, or None if the shared call was cancelled or
            the timeline was closed or re-keyed while it ran

        Raises:
            MonitorError: The fetch failed (also recorded on `error`)
            asyncio.CancelledError: The calling task itself was cancelled
        """
        if self._closed:
            return None

        key = self.key
        starts_call = force or (self._cache.peek(key) is None and not self._cache.is_in_flight(key))
        if starts_call:
            if self._owned_key is not None and self._owned_key != key:
                self._cache.cancel(self._owned_key)
            self._owned_key = key
            self.error = None

        self.loading = True
        try:
            data = await self._cache.get(key, force=force)
        except asyncio.CancelledError:
            # Superseded or unmounted; leave state for whoever replaced us
            if self._closed or key != self.key:
                return None
            self.loading = False
            if self._cache.is_in_flight(key):
                # Only this caller was cancelled; the shared call is still running
                raise
            return None
        except MonitorError as e:
            if self._closed or key != self.key:
                return None
            self.error = str(e) or "load failed"
            self.loading = False
            raise
        finally:
            if self._owned_key == key and not self._cache.is_in_flight(key):
                self._owned_key = None

        if self._closed or key != self.key:
            return None

        self.history = data
        self.loading = False
        return data

    def set_source(self, source: Optional[str]) -> None:
        """Switch the source filter; the call for the old filter is cancelled."""
        source = source or None
        if source == self._source:
            return
        self._cancel_owned()
        self._source = source
        self.history = None
        self.error = None

    def inject(self, record: HealthCheckRecord) -> Optional[HealthHistory]:
        """
        Fold a live health-check record into the loaded series.

        Records for other nodes are ignored.
        """
        if record.node_id != self._node_id:
            return self.history
        earliest = self._now() - self._window.duration
        self.history = merge_history_record(self.history, record, earliest)
        return self.history

    def stats(self) -> TimelineStats:
        checks = self.history.checks if self.history else ()
        fail = sum(1 for c in checks if not c.success)
        ok = len(checks) - fail
        rate = round(ok / len(checks) * 100, 1) if checks else 0.0
        return TimelineStats(ok=ok, fail=fail, health_rate=rate)

    @property
    def latest(self) -> Optional[HealthCheckRecord]:
        if not self.history or not self.history.checks:
            return None
        return self.history.checks[-1]

    @property
    def is_online(self) -> bool:
        latest = self.latest
        return latest is not None and latest.success

    def close(self) -> None:
        """Unmount: cancel the call this timeline started, ignore later results."""
        if self._closed:
            return
        self._closed = True
        self._cancel_owned()
        self.loading = False

    def _cancel_owned(self) -> None:
        if self._owned_key is not None:
            if self._cache.cancel(self._owned_key):
                logger.debug(f"Cancelled history request {self._owned_key}")
            self._owned_key = None
