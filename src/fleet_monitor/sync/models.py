"""
Data models for the monitoring sync layer.

These models represent:
- The dashboard snapshot (nodes with traffic, health and trend)
- Per-node health-check history
- Canonical node patches decoded from push events
- Share-link records

All snapshot models are frozen. The reconciler produces new instances with
dataclasses.replace() instead of mutating the current snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional, Union


TREND_CAPACITY = 96


class NodeStatus(str, Enum):
    """Combined node status as computed by the backend."""
    ONLINE = "online"
    OFFLINE = "offline"
    DEGRADED = "degraded"
    DISABLED = "disabled"
    UNKNOWN = "unknown"


class HealthState(str, Enum):
    """Result of the most recent active health check."""
    UP = "up"
    DOWN = "down"
    STALE = "stale"


class CheckMethod(str, Enum):
    """How a health check was performed."""
    API = "api"
    HEAD = "head"
    CLI = "cli"


class EventType(str, Enum):
    """Push channel event tags."""
    NODE_STATUS = "node_status"
    NODE_METRICS = "node_metrics"
    HEALTH_CHECK = "health_check"


class HistoryWindow(str, Enum):
    """Time window for health history queries."""
    LAST_HOUR = "1h"
    LAST_6_HOURS = "6h"
    LAST_24_HOURS = "24h"
    LAST_7_DAYS = "7d"

    @property
    def duration(self) -> timedelta:
        return _WINDOW_DURATIONS[self]


_WINDOW_DURATIONS = {
    HistoryWindow.LAST_HOUR: timedelta(hours=1),
    HistoryWindow.LAST_6_HOURS: timedelta(hours=6),
    HistoryWindow.LAST_24_HOURS: timedelta(hours=24),
    HistoryWindow.LAST_7_DAYS: timedelta(days=7),
}


class ExpireIn(str, Enum):
    """Lifetime options for a share link."""
    ONE_HOUR = "1h"
    ONE_DAY = "24h"
    ONE_WEEK = "168h"
    PERMANENT = "permanent"


# =============================================================================
# Snapshot
# =============================================================================


@dataclass(frozen=True)
class TrafficSummary:
    """Proxy traffic counters for one node."""
    success_rate: float = 0.0  # 0-100
    avg_response_time: float = 0.0  # ms
    total_requests: int = 0
    failed_requests: int = 0


@dataclass(frozen=True)
class HealthSummary:
    """Latest active health-check outcome for one node."""
    status: HealthState = HealthState.UP
    last_check_at: Optional[datetime] = None
    last_ping_ms: int = 0
    last_ping_err: str = ""
    check_method: CheckMethod = CheckMethod.API


@dataclass(frozen=True)
class TrendPoint:
    """One (success_rate, avg_time) sample in a node's rolling trend."""
    timestamp: datetime
    success_rate: float
    avg_time: float


def sorted_trend(
    points: Iterable[TrendPoint],
    capacity: int = TREND_CAPACITY,
) -> tuple[TrendPoint, ...]:
    """
    Order trend points ascending by timestamp, unique by timestamp, newest kept.

    When two points share a timestamp the later one in the input wins.
    """
    by_ts: dict[datetime, TrendPoint] = {}
    for point in points:
        by_ts[point.timestamp] = point
    ordered = sorted(by_ts.values(), key=lambda p: p.timestamp)
    if capacity > 0:
        ordered = ordered[-capacity:]
    return tuple(ordered)


@dataclass(frozen=True)
class Node:
    """
    One managed upstream proxy target.

    Attributes:
        id: Unique within a dashboard
        name: Display name
        url: Upstream base URL
        status: Combined status
        weight: Routing weight
        traffic: Proxy traffic counters
        health: Active health-check summary
        trend: Ascending, unique-by-timestamp samples (at most 96)
        last_error: Most recent proxy error text
    """
    id: str
    name: str = ""
    url: str = ""
    status: NodeStatus = NodeStatus.UNKNOWN
    weight: int = 0
    traffic: TrafficSummary = field(default_factory=TrafficSummary)
    health: HealthSummary = field(default_factory=HealthSummary)
    trend: tuple[TrendPoint, ...] = ()
    last_error: str = ""
    is_active: bool = False
    circuit_open: bool = False
    disabled: bool = False


@dataclass(frozen=True)
class Dashboard:
    """Aggregate live view of one account's (or one share link's) node fleet."""
    account_id: str
    account_name: str = ""
    nodes: tuple[Node, ...] = ()
    updated_at: Optional[datetime] = None

    def node(self, node_id: str) -> Optional[Node]:
        """Find a node by id."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    @property
    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]


# =============================================================================
# History
# =============================================================================


@dataclass(frozen=True)
class HealthCheckRecord:
    """One active health-check result."""
    node_id: str
    check_time: datetime
    success: bool
    response_time_ms: int = 0
    error_message: str = ""
    check_method: CheckMethod = CheckMethod.API


@dataclass(frozen=True)
class HealthHistory:
    """Health-check series for one node over a time range."""
    node_id: str
    start: datetime
    end: datetime
    total: int = 0
    checks: tuple[HealthCheckRecord, ...] = ()


# =============================================================================
# Push events
# =============================================================================


@dataclass(frozen=True)
class TrafficPatch:
    """Traffic fields an event supplied. None means "not mentioned"."""
    success_rate: Optional[float] = None
    avg_response_time: Optional[float] = None
    total_requests: Optional[int] = None
    failed_requests: Optional[int] = None


@dataclass(frozen=True)
class HealthPatch:
    """Health fields an event supplied. None means "not mentioned"."""
    status: Optional[HealthState] = None
    last_check_at: Optional[datetime] = None
    last_ping_ms: Optional[int] = None
    last_ping_err: Optional[str] = None
    check_method: Optional[CheckMethod] = None


@dataclass(frozen=True)
class NodePatch:
    """
    Canonical partial node update.

    Every accepted wire shape (nested or legacy flat) is normalized into this
    type before it reaches the reconciler.
    """
    node_id: str
    status: Optional[NodeStatus] = None
    error: Optional[str] = None
    timestamp: Optional[datetime] = None
    traffic: TrafficPatch = field(default_factory=TrafficPatch)
    health: HealthPatch = field(default_factory=HealthPatch)

    @property
    def carries_traffic(self) -> bool:
        """Whether the event has a resolvable traffic update."""
        return self.traffic.success_rate is not None


@dataclass(frozen=True)
class NodeUpdateEvent:
    """node_status / node_metrics event."""
    kind: EventType
    patch: NodePatch


@dataclass(frozen=True)
class HealthCheckEvent:
    """health_check event."""
    record: HealthCheckRecord

    @property
    def kind(self) -> EventType:
        return EventType.HEALTH_CHECK


InboundEvent = Union[NodeUpdateEvent, HealthCheckEvent]


# =============================================================================
# Share links
# =============================================================================


@dataclass(frozen=True)
class ShareRecord:
    """A read-only share link for one account's dashboard."""
    id: str
    token: str
    account_id: str = ""
    share_url: str = ""
    expire_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    revoked: bool = False

    @property
    def is_expired(self) -> bool:
        if self.expire_at is None:
            return False
        return self.expire_at < datetime.now(timezone.utc)

    @property
    def is_valid(self) -> bool:
        return not self.revoked and not self.is_expired


@dataclass
class ErrorRecord:
    """Record of an error that occurred during sync."""
    timestamp: datetime
    error_type: str
    message: str
    component: str  # "channel", "rest", "history", "store"
    node_id: Optional[str] = None
    recoverable: bool = True

    @property
    def age_seconds(self) -> float:
        """Seconds since this error occurred."""
        now = datetime.now(timezone.utc)
        return (now - self.timestamp).total_seconds()
