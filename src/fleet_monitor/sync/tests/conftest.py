"""
Test fixtures for the sync layer.

IMPORTANT: All network access must be faked.
Never open real sockets or HTTP connections in tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from websockets.exceptions import ConnectionClosedOK

from fleet_monitor.sync.errors import FetchError
from fleet_monitor.sync.history import HistoryCache, HistoryKey
from fleet_monitor.sync.metrics import MetricsCollector
from fleet_monitor.sync.models import (
    Dashboard,
    HealthCheckRecord,
    HealthHistory,
    HealthSummary,
    Node,
    NodeStatus,
    TrafficSummary,
    TrendPoint,
)


# =============================================================================
# Time Fixtures
# =============================================================================


BASE_TIME = datetime(2025, 1, 2, 7, 0, 0, tzinfo=timezone.utc)


def offset_time(seconds: float) -> datetime:
    """BASE_TIME plus an offset in seconds."""
    return BASE_TIME + timedelta(seconds=seconds)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def base_time():
    """Fixed wall-clock time in UTC."""
    return BASE_TIME


@pytest.fixture
def at():
    """Factory: base_time plus an offset in seconds."""
    return offset_time


# =============================================================================
# Model Fixtures
# =============================================================================


def build_node(
    node_id: str = "node-1",
    status: NodeStatus = NodeStatus.ONLINE,
    success_rate: float = 99.0,
    avg_response_time: float = 120.0,
    total_requests: int = 100,
    failed_requests: int = 1,
    trend: tuple = (),
    **kwargs,
) -> Node:
    return Node(
        id=node_id,
        name=kwargs.pop("name", node_id.upper()),
        url=kwargs.pop("url", f"https://{node_id}.example.com"),
        status=status,
        weight=kwargs.pop("weight", 1),
        traffic=TrafficSummary(
            success_rate=success_rate,
            avg_response_time=avg_response_time,
            total_requests=total_requests,
            failed_requests=failed_requests,
        ),
        health=kwargs.pop("health", HealthSummary()),
        trend=trend,
        **kwargs,
    )


def build_dashboard(*nodes: Node, account_id: str = "acct_1", updated_at: Optional[datetime] = None) -> Dashboard:
    return Dashboard(
        account_id=account_id,
        account_name="Primary",
        nodes=tuple(nodes) if nodes else (build_node(),),
        updated_at=updated_at or BASE_TIME,
    )


def build_record(
    node_id: str = "node-1",
    seconds: float = 0,
    success: bool = True,
    response_time_ms: int = 80,
) -> HealthCheckRecord:
    return HealthCheckRecord(
        node_id=node_id,
        check_time=offset_time(seconds),
        success=success,
        response_time_ms=response_time_ms,
    )


def build_history(node_id: str = "node-1", *records: HealthCheckRecord) -> HealthHistory:
    return HealthHistory(
        node_id=node_id,
        start=BASE_TIME - timedelta(hours=24),
        end=BASE_TIME,
        total=len(records),
        checks=tuple(records),
    )


@pytest.fixture
def make_node():
    """Factory for nodes with traffic defaults."""
    return build_node


@pytest.fixture
def make_dashboard():
    return build_dashboard


@pytest.fixture
def make_record():
    """Factory: make_record(node_id, seconds, success, response_time_ms)."""
    return build_record


@pytest.fixture
def make_history():
    return build_history


@pytest.fixture
def node():
    return build_node()


@pytest.fixture
def dashboard():
    return build_dashboard(
        build_node("node-1", trend=(TrendPoint(offset_time(-60), 98.0, 110.0),)),
        build_node("node-2", status=NodeStatus.OFFLINE, success_rate=50.0),
    )


@pytest.fixture
def metrics():
    collector = MetricsCollector()
    collector.start()
    return collector


# =============================================================================
# Wire Fixtures
# =============================================================================


@pytest.fixture
def dashboard_body():
    """Snapshot body as returned by GET /api/monitor/dashboard."""
    return {
        "account_id": "acct_1",
        "account_name": "Primary",
        "updated_at": "2025-01-02T07:00:00Z",
        "nodes": [
            {
                "id": "node-1",
                "name": "Tokyo",
                "url": "https://tokyo.example.com",
                "status": "online",
                "weight": 2,
                "is_active": True,
                "traffic": {
                    "success_rate": 99.5,
                    "avg_response_time": 130,
                    "total_requests": 200,
                    "failed_requests": 1,
                },
                "health": {
                    "status": "up",
                    "last_check_at": "2025年01月02日 15时00分00秒",
                    "last_ping_ms": 85,
                    "check_method": "HEAD",
                },
                "trend_24h": [
                    {"timestamp": "2025-01-02T06:50:00Z", "success_rate": 99.0, "avg_time": 120},
                    {"timestamp": "2025-01-02T06:40:00Z", "success_rate": 98.0, "avg_time": 110},
                ],
            },
            {
                "id": "node-2",
                "name": "Frankfurt",
                "status": "offline",
                "last_error": "connection refused",
                "traffic": None,
                "health": None,
                "trend_24h": None,
            },
        ],
    }


# =============================================================================
# History Fakes
# =============================================================================


class FakeFetcher:
    """
    Scriptable history fetcher.

    Each call records its key and, unless `hold` is set, returns at once.
    With `hold` set, calls wait on `release` so tests can interleave them.
    """

    def __init__(self):
        self.calls: list[HistoryKey] = []
        self.windows: list[tuple[datetime, datetime]] = []
        self.fail_with: Optional[Exception] = None
        self.hold = False
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.results: list[HealthHistory] = []

    async def __call__(self, key: HistoryKey, start: datetime, end: datetime) -> HealthHistory:
        self.calls.append(key)
        self.windows.append((start, end))
        index = len(self.calls)
        self.started.set()
        if self.hold:
            await self.release.wait()
        if self.fail_with is not None:
            raise self.fail_with
        if self.results:
            return self.results.pop(0)
        return build_history(key.node_id, build_record(key.node_id, seconds=index))


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def cache(fetcher, clock, metrics):
    return HistoryCache(fetcher, ttl=60.0, clock=clock, now=lambda: BASE_TIME, metrics=metrics)


@pytest.fixture
def fetch_error():
    return FetchError("Server error: 502 - bad gateway", status_code=502, retryable=True)


# =============================================================================
# Async Helpers
# =============================================================================


async def poll_until(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def wait_until():
    """Factory: await wait_until(predicate, timeout=1.0)."""
    return poll_until


# =============================================================================
# Channel Fakes
# =============================================================================


class FakeSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, *frames):
        self.queue: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.queue.put_nowait(frame)
        self.closed = False

    async def recv(self):
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True

    def push(self, frame) -> None:
        self.queue.put_nowait(frame)

    def drop(self) -> None:
        self.queue.put_nowait(ConnectionClosedOK(None, None))


class FakeConnector:
    """Hands out scripted sockets (or raises scripted errors) per connect."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls: list[str] = []

    async def __call__(self, url: str):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else OSError("connection refused")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def make_socket():
    """Factory: make_socket(*frames) returns a FakeSocket."""
    return FakeSocket


@pytest.fixture
def make_connector():
    """Factory: make_connector(*outcomes) returns a FakeConnector."""
    return FakeConnector
