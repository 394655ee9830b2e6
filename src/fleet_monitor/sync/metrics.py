"""
Metrics collection for the monitoring sync layer.

Rolling time windows for event throughput, plus counters for the push channel,
snapshot refreshes and the history cache.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .models import ErrorRecord


@dataclass
class SyncMetrics:
    """
    Snapshot of sync health and throughput.

    This is an immutable snapshot - use MetricsCollector to track
    metrics over time.
    """
    # Channel
    channel_connected: bool = False
    channel_connected_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    reconnection_count: int = 0
    last_reconnect_delay: Optional[float] = None

    # Events (rolling window)
    events_applied: int = 0
    events_ignored: int = 0
    events_per_second: float = 0.0
    parse_errors: int = 0

    # Snapshot refreshes (rolling window)
    refreshes: int = 0
    refresh_failures: int = 0
    last_refresh_at: Optional[datetime] = None

    # History cache (lifetime totals)
    cache_hits: int = 0
    cache_misses: int = 0
    cache_coalesced: int = 0

    # Errors
    errors_last_hour: int = 0
    recent_errors: list[ErrorRecord] = field(default_factory=list)

    started_at: Optional[datetime] = None
    uptime_seconds: float = 0.0

    @property
    def last_event_age_seconds(self) -> Optional[float]:
        """Seconds since the last applied event."""
        if self.last_event_at is None:
            return None
        return (datetime.now(timezone.utc) - self.last_event_at).total_seconds()

    @property
    def cache_hit_ratio(self) -> float:
        lookups = self.cache_hits + self.cache_misses + self.cache_coalesced
        if lookups == 0:
            return 0.0
        return (self.cache_hits + self.cache_coalesced) / lookups

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "channel_connected": self.channel_connected,
            "channel_connected_at": self.channel_connected_at.isoformat() if self.channel_connected_at else None,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
            "last_event_age_seconds": self.last_event_age_seconds,
            "reconnection_count": self.reconnection_count,
            "last_reconnect_delay": self.last_reconnect_delay,
            "events_applied": self.events_applied,
            "events_ignored": self.events_ignored,
            "events_per_second": round(self.events_per_second, 2),
            "parse_errors": self.parse_errors,
            "refreshes": self.refreshes,
            "refresh_failures": self.refresh_failures,
            "last_refresh_at": self.last_refresh_at.isoformat() if self.last_refresh_at else None,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_coalesced": self.cache_coalesced,
            "cache_hit_ratio": round(self.cache_hit_ratio, 3),
            "errors_last_hour": self.errors_last_hour,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": round(self.uptime_seconds, 0),
        }


class MetricsCollector:
    """
    Metrics collection with rolling time windows.

    All mutation happens on the event loop thread, so no locking is needed.

    Usage:
        collector = MetricsCollector()
        collector.start()

        collector.record_event_applied()
        collector.record_cache_hit()

        metrics = collector.get_metrics()
        print(f"Events/sec: {metrics.events_per_second}")
    """

    def __init__(
        self,
        window_seconds: float = 300.0,
        max_errors: int = 100,
    ):
        self._window_seconds = window_seconds
        self._max_errors = max_errors

        self._channel_connected = False
        self._channel_connected_at: Optional[datetime] = None
        self._last_event_at: Optional[datetime] = None
        self._reconnection_count = 0
        self._last_reconnect_delay: Optional[float] = None

        # Rolling window data (timestamps)
        self._applied: deque[float] = deque()
        self._ignored: deque[float] = deque()
        self._parse_errors: deque[float] = deque()
        self._refreshes: deque[float] = deque()
        self._refresh_failures: deque[float] = deque()
        self._last_refresh_at: Optional[datetime] = None

        self._cache_hits = 0
        self._cache_misses = 0
        self._cache_coalesced = 0

        self._errors: deque[ErrorRecord] = deque(maxlen=max_errors)
        self._started_at: Optional[datetime] = None

    def start(self) -> None:
        """Mark the collector as started."""
        self._started_at = datetime.now(timezone.utc)

    def stop(self) -> None:
        """Mark the collector as stopped."""
        self._channel_connected = False

    def _now(self) -> float:
        return time.time()

    def _prune_all(self) -> None:
        cutoff = self._now() - self._window_seconds
        for dq in (
            self._applied,
            self._ignored,
            self._parse_errors,
            self._refreshes,
            self._refresh_failures,
        ):
            while dq and dq[0] < cutoff:
                dq.popleft()

    # Channel

    def set_channel_connected(self, connected: bool) -> None:
        if connected and not self._channel_connected:
            self._channel_connected_at = datetime.now(timezone.utc)
        self._channel_connected = connected

    def record_reconnect_scheduled(self, delay: float) -> None:
        self._reconnection_count += 1
        self._last_reconnect_delay = delay

    def record_parse_error(self) -> None:
        self._parse_errors.append(self._now())

    # Events

    def record_event_applied(self) -> None:
        self._applied.append(self._now())
        self._last_event_at = datetime.now(timezone.utc)

    def record_event_ignored(self) -> None:
        self._ignored.append(self._now())

    # Refreshes

    def record_refresh(self, success: bool) -> None:
        if success:
            self._refreshes.append(self._now())
            self._last_refresh_at = datetime.now(timezone.utc)
        else:
            self._refresh_failures.append(self._now())

    # History cache

    def record_cache_hit(self) -> None:
        self._cache_hits += 1

    def record_cache_miss(self) -> None:
        self._cache_misses += 1

    def record_cache_coalesced(self) -> None:
        self._cache_coalesced += 1

    def record_error(
        self,
        error_type: str,
        message: str,
        component: str,
        node_id: Optional[str] = None,
        recoverable: bool = True,
    ) -> None:
        """Record an error."""
        self._errors.append(ErrorRecord(
            timestamp=datetime.now(timezone.utc),
            error_type=error_type,
            message=message,
            component=component,
            node_id=node_id,
            recoverable=recoverable,
        ))

    def get_metrics(self) -> SyncMetrics:
        """Get current metrics snapshot."""
        self._prune_all()

        now = self._now()
        window = self._window_seconds
        applied = len(self._applied)

        hour_ago = now - 3600
        errors_last_hour = sum(1 for e in self._errors if e.timestamp.timestamp() > hour_ago)

        uptime = 0.0
        if self._started_at:
            uptime = (datetime.now(timezone.utc) - self._started_at).total_seconds()

        return SyncMetrics(
            channel_connected=self._channel_connected,
            channel_connected_at=self._channel_connected_at,
            last_event_at=self._last_event_at,
            reconnection_count=self._reconnection_count,
            last_reconnect_delay=self._last_reconnect_delay,
            events_applied=applied,
            events_ignored=len(self._ignored),
            events_per_second=applied / window if window > 0 else 0.0,
            parse_errors=len(self._parse_errors),
            refreshes=len(self._refreshes),
            refresh_failures=len(self._refresh_failures),
            last_refresh_at=self._last_refresh_at,
            cache_hits=self._cache_hits,
            cache_misses=self._cache_misses,
            cache_coalesced=self._cache_coalesced,
            errors_last_hour=errors_last_hour,
            recent_errors=list(self._errors)[-10:],
            started_at=self._started_at,
            uptime_seconds=uptime,
        )

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        for dq in (
            self._applied,
            self._ignored,
            self._parse_errors,
            self._refreshes,
            self._refresh_failures,
        ):
            dq.clear()
        self._errors.clear()
        self._cache_hits = 0
        self._cache_misses = 0
        self._cache_coalesced = 0
        self._reconnection_count = 0
        self._last_reconnect_delay = None
        self._channel_connected = False
        self._channel_connected_at = None
        self._last_event_at = None
        self._last_refresh_at = None
        self._started_at = None
