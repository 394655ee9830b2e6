"""
Tests for the snapshot store.

These tests verify:
- Snapshots replace the dashboard, events are merged
- Events for unknown nodes are ignored
- history_generation only moves when scope or node ids change
- reset() drops results of loads started before it
- A reset discarding a queued snapshot does not stop the poll timer
- Failed refreshes raise but keep the previous snapshot
- Updates from the queue are applied in arrival order
"""

import asyncio

import pytest

from fleet_monitor.sync.errors import FetchError
from fleet_monitor.sync.models import (
    EventType,
    HealthCheckEvent,
    NodePatch,
    NodeStatus,
    NodeUpdateEvent,
)
from fleet_monitor.sync.store import EventReceived, SnapshotReplaced, SnapshotStore


def status_event(node_id: str, status: NodeStatus) -> NodeUpdateEvent:
    return NodeUpdateEvent(kind=EventType.NODE_STATUS, patch=NodePatch(node_id=node_id, status=status))


class ScriptedLoader:
    """Loader returning queued dashboards, optionally gated."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0
        self.gate = None

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
async def running_store(dashboard, metrics):
    store = SnapshotStore(ScriptedLoader(dashboard), refresh_interval=3600, metrics=metrics, scope_key="acct_1")
    await store.start()
    yield store
    await store.stop()


class TestProcess:
    """Tests for synchronous update application."""

    def test_snapshot_replaces_dashboard(self, dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard))

        assert store.process(SnapshotReplaced(dashboard)) is True
        assert store.snapshot is dashboard

    def test_event_is_merged(self, dashboard, metrics):
        store = SnapshotStore(ScriptedLoader(dashboard), metrics=metrics)
        store.process(SnapshotReplaced(dashboard))

        changed = store.process(EventReceived(status_event("node-1", NodeStatus.OFFLINE)))

        assert changed is True
        assert store.snapshot.node("node-1").status == NodeStatus.OFFLINE
        assert metrics.get_metrics().events_applied == 1

    def test_unknown_node_is_ignored(self, dashboard, metrics):
        store = SnapshotStore(ScriptedLoader(dashboard), metrics=metrics)
        store.process(SnapshotReplaced(dashboard))

        changed = store.process(EventReceived(status_event("ghost", NodeStatus.ONLINE)))

        assert changed is False
        assert store.snapshot is dashboard
        assert store.snapshot.node("ghost") is None
        assert metrics.get_metrics().events_ignored == 1

    def test_event_before_first_snapshot_is_ignored(self, dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard))
        assert store.process(EventReceived(status_event("node-1", NodeStatus.ONLINE))) is False
        assert store.snapshot is None

    def test_health_check_event_updates_live_health(self, dashboard, make_record):
        store = SnapshotStore(ScriptedLoader(dashboard))
        store.process(SnapshotReplaced(dashboard))

        store.process(EventReceived(HealthCheckEvent(record=make_record("node-2", seconds=5))))

        assert store.live_health["node-2"].check_time == make_record("node-2", seconds=5).check_time
        assert store.snapshot is dashboard

    def test_listener_errors_are_contained(self, dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard))
        seen = []

        def broken(_):
            raise RuntimeError("listener exploded")

        store.add_listener(broken)
        store.add_listener(lambda s: seen.append(s.snapshot))

        store.process(SnapshotReplaced(dashboard))

        assert seen == [dashboard]

    def test_remove_listener(self, dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard))
        seen = []
        remove = store.add_listener(lambda s: seen.append(1))

        remove()
        store.process(SnapshotReplaced(dashboard))

        assert seen == []


class TestHistoryGeneration:
    """Tests for the node-set signature."""

    def test_first_snapshot_bumps(self, dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard), scope_key="acct_1")
        store.process(SnapshotReplaced(dashboard))
        assert store.history_generation == 1

    def test_same_node_set_does_not_bump(self, dashboard, make_node, make_dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard), scope_key="acct_1")
        store.process(SnapshotReplaced(dashboard))

        reordered = make_dashboard(make_node("node-2"), make_node("node-1", success_rate=10.0))
        store.process(SnapshotReplaced(reordered))

        assert store.history_generation == 1

    def test_event_does_not_bump(self, dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard), scope_key="acct_1")
        store.process(SnapshotReplaced(dashboard))
        store.process(EventReceived(status_event("node-1", NodeStatus.OFFLINE)))
        assert store.history_generation == 1

    def test_node_added_bumps(self, dashboard, make_node, make_dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard), scope_key="acct_1")
        store.process(SnapshotReplaced(dashboard))

        store.process(SnapshotReplaced(make_dashboard(make_node("node-1"), make_node("node-2"), make_node("node-3"))))

        assert store.history_generation == 2

    def test_scope_change_bumps_even_with_same_nodes(self, dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard), scope_key="acct_1")
        store.process(SnapshotReplaced(dashboard))

        store.reset("share:tok")
        store.process(SnapshotReplaced(dashboard))

        assert store.history_generation == 2
        assert store.scope_key == "share:tok"


class TestRefresh:
    """Tests for refresh() and the poll timer."""

    @pytest.mark.asyncio
    async def test_refresh_without_running_applies_directly(self, dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard))
        assert await store.refresh() is dashboard
        assert store.snapshot is dashboard

    @pytest.mark.asyncio
    async def test_refresh_through_apply_task(self, running_store, dashboard, metrics):
        result = await running_store.refresh()

        assert result is dashboard
        assert running_store.snapshot is dashboard
        assert metrics.get_metrics().refreshes == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_raises_and_keeps_snapshot(self, dashboard, metrics, fetch_error):
        loader = ScriptedLoader(dashboard, fetch_error)
        store = SnapshotStore(loader, metrics=metrics)
        await store.refresh()

        with pytest.raises(FetchError):
            await store.refresh()

        assert store.snapshot is dashboard
        snapshot = metrics.get_metrics()
        assert snapshot.refresh_failures == 1
        assert snapshot.errors_last_hour == 1

    @pytest.mark.asyncio
    async def test_reset_drops_load_started_before_it(self, dashboard, wait_until):
        loader = ScriptedLoader(dashboard)
        loader.gate = asyncio.Event()
        store = SnapshotStore(loader, refresh_interval=3600, scope_key="acct_1")
        await store.start()
        try:
            pending = asyncio.create_task(store.refresh())
            await wait_until(lambda: loader.calls == 1)

            store.reset("share:tok")
            loader.gate.set()

            assert await pending is None
            assert store.snapshot is None
        finally:
            await store.stop()

    @pytest.mark.asyncio
    async def test_refresh_returns_none_when_reset_discards_queued_snapshot(self, dashboard):
        calls = []

        async def loader():
            calls.append(1)
            if len(calls) == 1:
                # Lands after the snapshot is queued but before it is applied
                asyncio.get_running_loop().call_soon(store.reset)
            return dashboard

        store = SnapshotStore(loader, refresh_interval=3600)
        await store.start()
        try:
            await asyncio.sleep(0)
            assert await store.refresh() is None
            assert store.snapshot is None

            assert await store.refresh() is dashboard
            assert store.snapshot is dashboard
        finally:
            await store.stop()

    @pytest.mark.asyncio
    async def test_events_queued_before_reset_are_dropped(self, dashboard):
        store = SnapshotStore(ScriptedLoader(dashboard))
        store.process(SnapshotReplaced(dashboard))
        store.submit(status_event("node-1", NodeStatus.OFFLINE))
        assert store.pending == 1

        store.reset()

        assert store.pending == 0
        assert store.snapshot is None
        assert store.live_health == {}

    @pytest.mark.asyncio
    async def test_submitted_events_applied_in_order(self, running_store):
        await running_store.refresh()

        running_store.submit(status_event("node-1", NodeStatus.OFFLINE))
        running_store.submit(status_event("node-1", NodeStatus.DEGRADED))
        running_store.submit(status_event("node-1", NodeStatus.ONLINE))
        await running_store.join()

        assert running_store.snapshot.node("node-1").status == NodeStatus.ONLINE

    @pytest.mark.asyncio
    async def test_timer_refreshes(self, dashboard, wait_until):
        loader = ScriptedLoader(dashboard)
        store = SnapshotStore(loader, refresh_interval=0.01)
        await store.start()
        try:
            await wait_until(lambda: store.snapshot is not None)
            assert loader.calls >= 1
        finally:
            await store.stop()

    @pytest.mark.asyncio
    async def test_timer_failure_keeps_running(self, dashboard, fetch_error, wait_until):
        loader = ScriptedLoader(fetch_error, dashboard)
        store = SnapshotStore(loader, refresh_interval=0.01)
        await store.start()
        try:
            await wait_until(lambda: store.snapshot is dashboard)
            assert loader.calls >= 2
        finally:
            await store.stop()

    @pytest.mark.asyncio
    async def test_timer_survives_reset_while_snapshot_queued(self, dashboard, wait_until):
        calls = []

        async def loader():
            calls.append(1)
            if len(calls) == 1:
                asyncio.get_running_loop().call_soon(store.reset)
            return dashboard

        store = SnapshotStore(loader, refresh_interval=0.01)
        await store.start()
        try:
            await wait_until(lambda: len(calls) >= 3)
            assert store.snapshot is dashboard
        finally:
            await store.stop()

    @pytest.mark.asyncio
    async def test_auto_refresh_off_skips_timer(self, dashboard):
        loader = ScriptedLoader(dashboard)
        store = SnapshotStore(loader, refresh_interval=0.01, auto_refresh=False)
        await store.start()
        try:
            await asyncio.sleep(0.05)
            assert loader.calls == 0

            await store.refresh()
            assert store.snapshot is dashboard
        finally:
            await store.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, running_store):
        await running_store.stop()
        await running_store.stop()
        assert not running_store.is_running
