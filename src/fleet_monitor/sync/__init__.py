"""
Sync Layer - keeps the live dashboard consistent with the backend.

This module provides:
    - REST client for dashboard snapshots, health history and share links
    - Reconnecting push channel for partial node deltas
    - Reconciler merging deltas into the snapshot without losing fields
    - Snapshot store with a single apply loop and a poll timer
    - History cache with TTL and request coalescing
    - Monitor session orchestrator

Usage:
    from fleet_monitor.sync import AccessScope, MonitorSession

    session = MonitorSession(AccessScope.account("acct_1"))
    await session.start()

    print(session.summary())
    timeline = session.timeline("node-1")
    await timeline.load()

    await session.stop()
"""

# Errors
from .errors import (
    FetchError,
    MonitorError,
    ParseError,
    TransportError,
)

# Models
from .models import (
    TREND_CAPACITY,
    CheckMethod,
    Dashboard,
    ErrorRecord,
    EventType,
    ExpireIn,
    HealthCheckEvent,
    HealthCheckRecord,
    HealthHistory,
    HealthPatch,
    HealthState,
    HealthSummary,
    HistoryWindow,
    InboundEvent,
    Node,
    NodePatch,
    NodeStatus,
    NodeUpdateEvent,
    ShareRecord,
    TrafficPatch,
    TrafficSummary,
    TrendPoint,
)

# Wire decoding
from .wire import (
    decode_event,
    load_frame,
    normalize_node_payload,
    parse_timestamp,
)

# Reconciler
from .reconciler import (
    FleetSummary,
    apply_event,
    apply_node_patch,
    merge_history_record,
    merge_trend,
    record_health_event,
    summarize,
)

# Metrics
from .metrics import (
    MetricsCollector,
    SyncMetrics,
)

# Scope and REST client
from .scope import AccessScope, ScopeKind
from .client import MonitorApiClient

# Push channel
from .channel import (
    BackoffPolicy,
    ChannelState,
    ReconnectingChannel,
)

# History
from .history import (
    HistoryCache,
    HistoryKey,
    client_fetcher,
)
from .timeline import NodeTimeline, TimelineStats

# Store
from .store import (
    EventReceived,
    SnapshotReplaced,
    SnapshotStore,
)

# Session
from .session import (
    MonitorSession,
    SessionHealth,
    SessionState,
    run_monitor,
    scope_from_settings,
)

__all__ = [
    # Errors
    "MonitorError",
    "TransportError",
    "FetchError",
    "ParseError",
    # Models
    "TREND_CAPACITY",
    "CheckMethod",
    "Dashboard",
    "ErrorRecord",
    "EventType",
    "ExpireIn",
    "HealthCheckEvent",
    "HealthCheckRecord",
    "HealthHistory",
    "HealthPatch",
    "HealthState",
    "HealthSummary",
    "HistoryWindow",
    "InboundEvent",
    "Node",
    "NodePatch",
    "NodeStatus",
    "NodeUpdateEvent",
    "ShareRecord",
    "TrafficPatch",
    "TrafficSummary",
    "TrendPoint",
    # Wire
    "decode_event",
    "load_frame",
    "normalize_node_payload",
    "parse_timestamp",
    # Reconciler
    "FleetSummary",
    "apply_event",
    "apply_node_patch",
    "merge_history_record",
    "merge_trend",
    "record_health_event",
    "summarize",
    # Metrics
    "MetricsCollector",
    "SyncMetrics",
    # Scope / client
    "AccessScope",
    "ScopeKind",
    "MonitorApiClient",
    # Channel
    "BackoffPolicy",
    "ChannelState",
    "ReconnectingChannel",
    # History
    "HistoryCache",
    "HistoryKey",
    "client_fetcher",
    "NodeTimeline",
    "TimelineStats",
    # Store
    "EventReceived",
    "SnapshotReplaced",
    "SnapshotStore",
    # Session
    "MonitorSession",
    "SessionHealth",
    "SessionState",
    "run_monitor",
    "scope_from_settings",
]
