"""
Integration test fixtures.

These fixtures run a fake monitor backend on localhost: REST snapshot and
history endpoints plus the push channel, all served by one aiohttp app.
"""

import asyncio
from dataclasses import dataclass, field

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from fleet_monitor.config import MonitorSettings

# Mark all tests in this directory as integration tests
pytestmark = pytest.mark.integration


ACCOUNT_BODY = {
    "account_id": "acct_1",
    "account_name": "Primary",
    "updated_at": "2025-01-02T07:00:00Z",
    "nodes": [
        {
            "id": "node-1",
            "name": "Tokyo",
            "status": "online",
            "traffic": {"success_rate": 99.0, "avg_response_time": 120, "total_requests": 100, "failed_requests": 1},
        },
        {
            "id": "node-2",
            "name": "Frankfurt",
            "status": "offline",
            "traffic": {"success_rate": 50.0, "avg_response_time": 300, "total_requests": 10, "failed_requests": 5},
        },
    ],
}

SHARED_BODY = {
    "account_id": "acct_2",
    "account_name": "Partner",
    "updated_at": "2025-01-02T07:00:00Z",
    "nodes": [{"id": "shared-1", "name": "Seoul", "status": "online"}],
}


@dataclass
class Backend:
    """State of the fake backend, inspected and driven by tests."""
    url: str = ""
    dashboards: dict = field(default_factory=lambda: {"acct_1": ACCOUNT_BODY})
    shares: dict = field(default_factory=lambda: {"tok": SHARED_BODY})
    sockets: list = field(default_factory=list)
    history_requests: list = field(default_factory=list)
    fail_dashboard: bool = False

    @property
    def live(self) -> list:
        return [(query, ws) for query, ws in self.sockets if not ws.closed]

    async def push(self, frame: str) -> None:
        for _, ws in self.live:
            await ws.send_str(frame)

    async def drop_all(self) -> None:
        for _, ws in self.live:
            await ws.close()


def build_app(backend: Backend) -> web.Application:
    async def dashboard(request: web.Request) -> web.Response:
        if backend.fail_dashboard:
            return web.Response(status=503, text="maintenance")
        body = backend.dashboards.get(request.query.get("account_id", "acct_1"))
        if body is None:
            return web.Response(status=404, text="account not found")
        return web.json_response(body)

    async def shared(request: web.Request) -> web.Response:
        body = backend.shares.get(request.match_info["token"])
        if body is None:
            return web.Response(status=404, text="share not found")
        return web.json_response(body)

    async def history(request: web.Request) -> web.Response:
        node_id = request.match_info["node_id"]
        backend.history_requests.append((node_id, dict(request.query)))
        return web.json_response({
            "node_id": node_id,
            "from": request.query["from"],
            "to": request.query["to"],
            "total": 1,
            "checks": [{"check_time": request.query["to"], "success": True, "response_time_ms": 90}],
        })

    async def channel(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        backend.sockets.append((dict(request.query), ws))
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                break
        return ws

    app = web.Application()
    app.router.add_get("/api/monitor/dashboard", dashboard)
    app.router.add_get("/api/monitor/share/{token}", shared)
    app.router.add_get("/api/nodes/{node_id}/health-history", history)
    app.router.add_get("/api/monitor/ws", channel)
    return app


@pytest.fixture
async def backend():
    """Fake monitor backend listening on localhost."""
    state = Backend()
    server = TestServer(build_app(state))
    await server.start_server()
    state.url = str(server.make_url("")).rstrip("/")

    yield state

    for _, ws in state.live:
        await ws.close()
    await server.close()


@pytest.fixture
def settings(backend):
    return MonitorSettings(
        base_url=backend.url,
        account_id="acct_1",
        refresh_interval=3600,
        reconnect_base_delay=0.05,
        reconnect_max_delay=0.2,
        request_timeout=5,
        max_retries=1,
        _env_file=None,
    )


async def poll_until(predicate, timeout: float = 5.0) -> None:
    """Wait until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def eventually():
    """Factory: await eventually(predicate, timeout=5.0)."""
    return poll_until
