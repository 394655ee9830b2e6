"""
Wire schemas and payload normalization.

Pydantic models mirror the backend's JSON bodies and push frames. They are the
only place raw dicts are inspected; everything past this module works with the
frozen domain models in models.py.

Two push payload shapes coexist on the channel:
    - Nested (current): {"traffic": {...}, "health": {...}, "timestamp": ...}
    - Flat (legacy):    {"success_rate": ..., "avg_response_time": ..., ...}

normalize_node_payload() resolves them into one NodePatch. The nested field
wins; the flat field fills the gap. Both paths are kept until the backend
confirms it no longer emits the flat shape.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Optional, TypeVar

from dateutil import parser as dateparser
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from .errors import ParseError
from .models import (
    CheckMethod,
    Dashboard,
    EventType,
    HealthCheckEvent,
    HealthCheckRecord,
    HealthHistory,
    HealthPatch,
    HealthState,
    HealthSummary,
    InboundEvent,
    Node,
    NodePatch,
    NodeStatus,
    NodeUpdateEvent,
    ShareRecord,
    TrafficPatch,
    TrafficSummary,
    TrendPoint,
    sorted_trend,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

BEIJING_TZ = timezone(timedelta(hours=8))

# Backend display format, e.g. "2025年01月02日 15时04分05秒" (Beijing time)
_BEIJING_FORMAT = re.compile(
    r"^\s*(\d{4})年(\d{1,2})月(\d{1,2})日\s*(\d{1,2})时(\d{1,2})分(\d{1,2})秒\s*$"
)

# Epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 1e11


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse any timestamp representation the backend emits.

    Accepts datetimes, epoch seconds/milliseconds, ISO-8601 strings and the
    Beijing display format. Naive results are taken as UTC.

    Returns:
        Timezone-aware datetime, or None if the value is empty or unparseable
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text or text == "--":
        return None

    match = _BEIJING_FORMAT.match(text)
    if match:
        try:
            year, month, day, hour, minute, second = (int(g) for g in match.groups())
            return datetime(year, month, day, hour, minute, second, tzinfo=BEIJING_TZ)
        except ValueError:
            return None

    try:
        parsed = dateparser.isoparse(text)
    except (ValueError, OverflowError):
        try:
            parsed = dateparser.parse(text)
        except (ValueError, OverflowError):
            logger.debug(f"Unparseable timestamp: {text!r}")
            return None

    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def coerce_node_status(value: Any) -> NodeStatus:
    try:
        return NodeStatus(str(value).strip().lower())
    except ValueError:
        return NodeStatus.UNKNOWN


def coerce_health_state(value: Any) -> HealthState:
    try:
        return HealthState(str(value).strip().lower())
    except ValueError:
        return HealthState.STALE


def coerce_check_method(value: Any) -> CheckMethod:
    try:
        return CheckMethod(str(value).strip().lower())
    except ValueError:
        return CheckMethod.API


def _first(*values: Optional[T]) -> Optional[T]:
    """First value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


# =============================================================================
# Schemas
# =============================================================================


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


def _timestamp_field(value: Any) -> Any:
    if value is None or isinstance(value, datetime):
        return value
    return parse_timestamp(value)


def _list_field(value: Any) -> Any:
    return [] if value is None else value


Timestamp = Annotated[Optional[datetime], BeforeValidator(_timestamp_field)]
RequiredTimestamp = Annotated[datetime, BeforeValidator(_timestamp_field)]


class TrafficWire(_WireModel):
    success_rate: Optional[float] = None
    avg_response_time: Optional[float] = None
    total_requests: Optional[int] = None
    failed_requests: Optional[int] = None


class HealthWire(_WireModel):
    status: Optional[str] = None
    last_check_at: Timestamp = None
    last_ping_ms: Optional[int] = None
    last_ping_err: Optional[str] = None
    check_method: Optional[str] = None


class TrendPointWire(_WireModel):
    timestamp: Timestamp = None
    success_rate: float = 0.0
    avg_time: float = 0.0


class NodeWire(_WireModel):
    id: str
    name: str = ""
    url: str = ""
    status: Optional[str] = None
    weight: int = 0
    is_active: bool = False
    circuit_open: bool = False
    disabled: bool = False
    last_error: Optional[str] = None
    traffic: Optional[TrafficWire] = None
    health: Optional[HealthWire] = None
    trend_24h: Annotated[list[TrendPointWire], BeforeValidator(_list_field)] = Field(default_factory=list)


class DashboardWire(_WireModel):
    account_id: str = ""
    account_name: str = ""
    nodes: Annotated[list[NodeWire], BeforeValidator(_list_field)] = Field(default_factory=list)
    updated_at: Timestamp = None


class HealthCheckWire(_WireModel):
    node_id: Optional[str] = None
    check_time: RequiredTimestamp
    success: bool
    response_time_ms: Optional[int] = None
    error_message: Optional[str] = None
    check_method: Optional[str] = None


class HealthHistoryWire(_WireModel):
    node_id: str = ""
    from_: Timestamp = Field(default=None, alias="from")
    to: Timestamp = None
    total: int = 0
    checks: Annotated[list[HealthCheckWire], BeforeValidator(_list_field)] = Field(default_factory=list)


class ShareWire(_WireModel):
    id: str
    token: str
    account_id: Optional[str] = None
    share_url: Optional[str] = None
    expire_at: Timestamp = None
    created_at: Timestamp = None
    revoked: bool = False


class NestedMetricsPayload(_WireModel):
    """Current push payload shape."""
    node_id: str
    node_name: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    timestamp: Timestamp = None
    traffic: Optional[TrafficWire] = None
    health: Optional[HealthWire] = None


class FlatMetricsPayload(_WireModel):
    """Legacy push payload shape with top-level traffic fields."""
    success_rate: Optional[float] = None
    avg_response_time: Optional[float] = None
    total_requests: Optional[int] = None
    failed_requests: Optional[int] = None
    last_ping_ms: Optional[int] = None


# =============================================================================
# Normalization
# =============================================================================


def _validate(model: type[BaseModel], data: Any, what: str) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Invalid {what}: {e.error_count()} validation error(s)", raw=str(data)) from e


def normalize_node_payload(raw: Any) -> NodePatch:
    """
    Map any accepted node_status / node_metrics payload to a NodePatch.

    Raises:
        ParseError: If the payload is not an object or lacks node_id
    """
    nested: NestedMetricsPayload = _validate(NestedMetricsPayload, raw, "node payload")
    flat: FlatMetricsPayload = _validate(FlatMetricsPayload, raw, "node payload")

    traffic = nested.traffic or TrafficWire()
    health = nested.health or HealthWire()

    return NodePatch(
        node_id=nested.node_id,
        status=coerce_node_status(nested.status) if nested.status else None,
        error=nested.error,
        timestamp=nested.timestamp,
        traffic=TrafficPatch(
            success_rate=_first(traffic.success_rate, flat.success_rate),
            avg_response_time=_first(traffic.avg_response_time, flat.avg_response_time),
            total_requests=_first(traffic.total_requests, flat.total_requests),
            failed_requests=_first(traffic.failed_requests, flat.failed_requests),
        ),
        health=HealthPatch(
            status=coerce_health_state(health.status) if health.status else None,
            last_check_at=_first(health.last_check_at, nested.timestamp),
            last_ping_ms=_first(health.last_ping_ms, flat.last_ping_ms),
            last_ping_err=health.last_ping_err,
            check_method=coerce_check_method(health.check_method) if health.check_method else None,
        ),
    )


def _record_from_wire(wire: HealthCheckWire, node_id: Optional[str] = None) -> HealthCheckRecord:
    return HealthCheckRecord(
        node_id=wire.node_id or node_id or "",
        check_time=wire.check_time,
        success=wire.success,
        response_time_ms=wire.response_time_ms or 0,
        error_message=wire.error_message or "",
        check_method=coerce_check_method(wire.check_method or CheckMethod.API.value),
    )


def decode_health_record(raw: Any, node_id: Optional[str] = None) -> HealthCheckRecord:
    """
    Decode a health_check payload.

    Missing response time becomes 0, missing error message "", missing check
    method "api", and a missing node_id falls back to the given node_id.
    """
    wire: HealthCheckWire = _validate(HealthCheckWire, raw, "health check record")
    record = _record_from_wire(wire, node_id)
    if not record.node_id:
        raise ParseError("Health check record missing node_id", raw=str(raw))
    return record


def decode_event(obj: Any) -> Optional[InboundEvent]:
    """
    Decode one tagged push event.

    Returns:
        The event, or None for tags this client does not handle

    Raises:
        ParseError: If the frame is not an object or its payload is invalid
    """
    if not isinstance(obj, dict):
        raise ParseError("Event is not an object", raw=str(obj))

    tag = obj.get("type")
    try:
        kind = EventType(tag)
    except ValueError:
        logger.debug(f"Ignoring event type {tag!r}")
        return None

    payload = obj.get("payload")
    if not isinstance(payload, dict):
        raise ParseError(f"{kind.value} event without object payload", raw=str(obj))

    if kind is EventType.HEALTH_CHECK:
        return HealthCheckEvent(record=decode_health_record(payload))

    return NodeUpdateEvent(kind=kind, patch=normalize_node_payload(payload))


def load_frame(raw: Any) -> list[Any]:
    """
    JSON-decode one inbound frame into a list of event objects.

    A JSON array is a batch, applied in order. Empty frames and empty arrays
    are heartbeats and yield nothing.

    Raises:
        ParseError: If the frame is not valid JSON
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Frame is not UTF-8: {e}") from e

    if not raw or not raw.strip():
        return []

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ParseError(f"Frame is not valid JSON: {e}", raw=raw) from e

    if isinstance(data, list):
        return data
    return [data]


# =============================================================================
# REST bodies
# =============================================================================


def _node_from_wire(wire: NodeWire) -> Node:
    traffic = wire.traffic or TrafficWire()
    health = wire.health or HealthWire()
    trend = sorted_trend(
        TrendPoint(
            timestamp=p.timestamp,
            success_rate=p.success_rate,
            avg_time=p.avg_time,
        )
        for p in wire.trend_24h
        if p.timestamp is not None
    )
    return Node(
        id=wire.id,
        name=wire.name,
        url=wire.url,
        status=coerce_node_status(wire.status) if wire.status else NodeStatus.UNKNOWN,
        weight=wire.weight,
        traffic=TrafficSummary(
            success_rate=traffic.success_rate or 0.0,
            avg_response_time=traffic.avg_response_time or 0.0,
            total_requests=traffic.total_requests or 0,
            failed_requests=traffic.failed_requests or 0,
        ),
        health=HealthSummary(
            status=coerce_health_state(health.status) if health.status else HealthState.UP,
            last_check_at=health.last_check_at,
            last_ping_ms=health.last_ping_ms or 0,
            last_ping_err=health.last_ping_err or "",
            check_method=coerce_check_method(health.check_method or CheckMethod.API.value),
        ),
        trend=trend,
        last_error=wire.last_error or "",
        is_active=wire.is_active,
        circuit_open=wire.circuit_open,
        disabled=wire.disabled,
    )


def dashboard_from_wire(data: Any) -> Dashboard:
    """
    Build a Dashboard from a snapshot body.

    Duplicate node ids keep the first occurrence.
    """
    wire: DashboardWire = _validate(DashboardWire, data, "dashboard")
    nodes: list[Node] = []
    seen: set[str] = set()
    for node_wire in wire.nodes:
        if node_wire.id in seen:
            logger.warning(f"Duplicate node id {node_wire.id!r} in dashboard, keeping first")
            continue
        seen.add(node_wire.id)
        nodes.append(_node_from_wire(node_wire))

    return Dashboard(
        account_id=wire.account_id,
        account_name=wire.account_name,
        nodes=tuple(nodes),
        updated_at=wire.updated_at,
    )


def history_from_wire(
    data: Any,
    node_id: str,
    start: datetime,
    end: datetime,
) -> HealthHistory:
    """Build a HealthHistory from a health-history body, ordered by check time."""
    wire: HealthHistoryWire = _validate(HealthHistoryWire, data, "health history")
    checks = sorted(
        (_record_from_wire(c, node_id) for c in wire.checks),
        key=lambda c: c.check_time,
    )
    return HealthHistory(
        node_id=wire.node_id or node_id,
        start=wire.from_ or start,
        end=wire.to or end,
        total=wire.total or len(checks),
        checks=tuple(checks),
    )


def share_from_wire(data: Any, base_url: str = "", account_id: str = "") -> ShareRecord:
    """Build a ShareRecord; a missing share_url is derived from the token."""
    wire: ShareWire = _validate(ShareWire, data, "share record")
    share_url = wire.share_url or f"{base_url.rstrip('/')}/monitor/share/{wire.token}"
    return ShareRecord(
        id=wire.id,
        token=wire.token,
        account_id=wire.account_id or account_id,
        share_url=share_url,
        expire_at=wire.expire_at,
        created_at=wire.created_at,
        revoked=wire.revoked,
    )
