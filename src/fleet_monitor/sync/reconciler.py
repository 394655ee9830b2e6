"""
Reconciler - merges push events into the dashboard snapshot.

All functions are pure: they take the current snapshot and return a new one.
Fields an event does not mention keep their previous value. A node the
snapshot does not know about is never created from an event; only a full
refresh introduces nodes.

Trend invariant:
    Within one node the trend is strictly ascending by timestamp, unique by
    timestamp, and holds at most TREND_CAPACITY points.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Mapping, Optional

from .models import (
    TREND_CAPACITY,
    Dashboard,
    HealthCheckEvent,
    HealthCheckRecord,
    HealthHistory,
    HealthPatch,
    HealthSummary,
    InboundEvent,
    NodePatch,
    NodeStatus,
    NodeUpdateEvent,
    TrafficPatch,
    TrafficSummary,
    TrendPoint,
    sorted_trend,
)

logger = logging.getLogger(__name__)


def merge_traffic(prev: TrafficSummary, patch: TrafficPatch) -> TrafficSummary:
    """Field-merge a traffic patch; omitted fields survive."""
    return TrafficSummary(
        success_rate=_pick(patch.success_rate, prev.success_rate),
        avg_response_time=_pick(patch.avg_response_time, prev.avg_response_time),
        total_requests=_pick(patch.total_requests, prev.total_requests),
        failed_requests=_pick(patch.failed_requests, prev.failed_requests),
    )


def merge_health(prev: HealthSummary, patch: HealthPatch) -> HealthSummary:
    """Field-merge a health patch; omitted fields survive."""
    return HealthSummary(
        status=_pick(patch.status, prev.status),
        last_check_at=_pick(patch.last_check_at, prev.last_check_at),
        last_ping_ms=_pick(patch.last_ping_ms, prev.last_ping_ms),
        last_ping_err=_pick(patch.last_ping_err, prev.last_ping_err),
        check_method=_pick(patch.check_method, prev.check_method),
    )


def merge_trend(
    trend: tuple[TrendPoint, ...],
    point: TrendPoint,
    capacity: int = TREND_CAPACITY,
) -> tuple[TrendPoint, ...]:
    """
    Insert a trend point.

    A point sharing the new point's timestamp is replaced. The result is
    re-sorted and truncated to the most recent `capacity` points.
    """
    return sorted_trend((*trend, point), capacity=capacity)


def apply_node_patch(patch: NodePatch, dashboard: Dashboard) -> Dashboard:
    """
    Apply a node_status / node_metrics patch.

    Returns:
        New dashboard, or the same instance if the node is unknown
    """
    index = _node_index(dashboard, patch.node_id)
    if index is None:
        logger.debug(f"Event for unknown node {patch.node_id!r} ignored")
        return dashboard

    prev = dashboard.nodes[index]
    traffic = merge_traffic(prev.traffic, patch.traffic)
    health = merge_health(prev.health, patch.health)

    node = replace(
        prev,
        status=patch.status or prev.status,
        last_error=_pick(patch.error, prev.last_error),
        traffic=traffic,
        health=health,
    )

    event_ts = patch.timestamp or health.last_check_at
    if patch.carries_traffic and event_ts is not None:
        node = replace(
            node,
            trend=merge_trend(
                prev.trend,
                TrendPoint(
                    timestamp=event_ts,
                    success_rate=traffic.success_rate,
                    avg_time=traffic.avg_response_time,
                ),
            ),
        )

    nodes = list(dashboard.nodes)
    nodes[index] = node

    updated_at = dashboard.updated_at
    if event_ts is not None and (updated_at is None or event_ts > updated_at):
        updated_at = event_ts

    return replace(dashboard, nodes=tuple(nodes), updated_at=updated_at)


def apply_event(event: InboundEvent, dashboard: Optional[Dashboard]) -> Optional[Dashboard]:
    """
    Apply one inbound event to the snapshot.

    health_check events do not touch the dashboard; see record_health_event().
    Before the first snapshot arrives every event is a no-op.
    """
    if dashboard is None or isinstance(event, HealthCheckEvent):
        return dashboard
    if isinstance(event, NodeUpdateEvent):
        return apply_node_patch(event.patch, dashboard)
    return dashboard


def record_health_event(
    live: Mapping[str, HealthCheckRecord],
    record: HealthCheckRecord,
) -> dict[str, HealthCheckRecord]:
    """Store a record as the most recent live health event for its node."""
    updated = dict(live)
    updated[record.node_id] = record
    return updated


def merge_history_record(
    history: Optional[HealthHistory],
    record: HealthCheckRecord,
    earliest: datetime,
) -> HealthHistory:
    """
    Inject a live health-check record into an already-fetched timeline.

    Deduplicated by check_time, re-sorted ascending, and filtered to checks at
    or after `earliest`. With no history loaded yet, a one-record history
    covering [earliest, check_time] is created.
    """
    if history is None:
        return HealthHistory(
            node_id=record.node_id,
            start=earliest,
            end=record.check_time,
            total=1,
            checks=(record,),
        )

    if any(c.check_time == record.check_time for c in history.checks):
        return history

    merged = sorted((*history.checks, record), key=lambda c: c.check_time)
    checks = tuple(c for c in merged if c.check_time >= earliest)
    return replace(
        history,
        end=max(history.end, record.check_time),
        total=history.total + 1,
        checks=checks,
    )


@dataclass(frozen=True)
class FleetSummary:
    """Fleet-wide aggregates for the header KPIs."""
    total_requests: int = 0
    failed_requests: int = 0
    success_rate: float = 100.0
    avg_response_time: float = 0.0
    online: int = 0
    offline: int = 0
    disabled: int = 0


def summarize(dashboard: Optional[Dashboard]) -> FleetSummary:
    """Aggregate traffic and status counts over all nodes."""
    nodes = dashboard.nodes if dashboard else ()
    if not nodes:
        return FleetSummary()

    total = sum(n.traffic.total_requests for n in nodes)
    failed = sum(n.traffic.failed_requests for n in nodes)
    return FleetSummary(
        total_requests=total,
        failed_requests=failed,
        success_rate=((total - failed) / total * 100) if total > 0 else 100.0,
        avg_response_time=sum(n.traffic.avg_response_time for n in nodes) / len(nodes),
        online=sum(1 for n in nodes if n.status == NodeStatus.ONLINE),
        offline=sum(1 for n in nodes if n.status in (NodeStatus.OFFLINE, NodeStatus.DEGRADED)),
        disabled=sum(1 for n in nodes if n.status == NodeStatus.DISABLED),
    )


def _pick(value, fallback):
    return fallback if value is None else value


def _node_index(dashboard: Dashboard, node_id: str) -> Optional[int]:
    for i, node in enumerate(dashboard.nodes):
        if node.id == node_id:
            return i
    return None
