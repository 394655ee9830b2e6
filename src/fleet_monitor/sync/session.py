"""
Monitor session - one live dashboard view.

Wires the REST client, push channel, snapshot store and history cache for a
single access scope, and owns their lifecycle:

    start()         initial snapshot, poll timer, push channel
    switch_scope()  close channel, drop cached state, reopen for the new scope
    stop()          close everything; safe to call more than once

Failures never stop the session. A dead channel retries in the background, and
a failed refresh keeps the last snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from ..config import MonitorSettings
from .channel import BackoffPolicy, ChannelState, Connector, ReconnectingChannel
from .client import MonitorApiClient
from .errors import MonitorError
from .history import HistoryCache, client_fetcher
from .metrics import MetricsCollector
from .models import Dashboard, HealthCheckEvent, InboundEvent
from .reconciler import FleetSummary, summarize
from .scope import AccessScope
from .store import SnapshotStore
from .timeline import NodeTimeline

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Session lifecycle state."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class SessionHealth:
    """Overall session health status."""
    healthy: bool
    state: SessionState
    scope_key: str
    uptime_seconds: float
    channel_state: ChannelState
    channel_connected: bool
    last_message_age_seconds: Optional[float]
    reconnect_count: int
    node_count: int
    history_generation: int
    errors_last_hour: int
    events_per_second: float
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "healthy": self.healthy,
            "state": self.state.value,
            "scope": self.scope_key,
            "uptime_seconds": round(self.uptime_seconds, 0),
            "channel": {
                "state": self.channel_state.value,
                "connected": self.channel_connected,
                "last_message_age_seconds": (
                    round(self.last_message_age_seconds, 1)
                    if self.last_message_age_seconds is not None else None
                ),
                "reconnect_count": self.reconnect_count,
            },
            "node_count": self.node_count,
            "history_generation": self.history_generation,
            "errors_last_hour": self.errors_last_hour,
            "events_per_second": round(self.events_per_second, 2),
            "details": self.details,
        }


def scope_from_settings(settings: MonitorSettings) -> AccessScope:
    """Share token wins over account id."""
    if settings.share_token:
        return AccessScope.shared(settings.share_token)
    return AccessScope.account(settings.account_id)


def backoff_from_settings(settings: MonitorSettings) -> BackoffPolicy:
    return BackoffPolicy(
        base_delay=settings.reconnect_base_delay,
        max_delay=settings.reconnect_max_delay,
        jitter_ratio=settings.reconnect_jitter,
    )


class MonitorSession:
    """
    Live dashboard session for one access scope.

    Usage:
        session = MonitorSession(AccessScope.account("acct_1"), settings)
        await session.start()

        timeline = session.timeline("node-1")
        await timeline.load()

        await session.switch_scope(AccessScope.shared(token))
        await session.stop()
    """

    def __init__(
        self,
        scope: AccessScope,
        settings: Optional[MonitorSettings] = None,
        client: Optional[MonitorApiClient] = None,
        connector: Optional[Connector] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Initialize the session.

        Args:
            scope: Account or share-token scope to view
            settings: Settings (loaded from environment if not provided)
            client: REST client (created from settings if not provided)
            connector: Push channel connector (tests)
            metrics: Metrics collector (created if not provided)
        """
        self._scope = scope
        self._settings = settings or MonitorSettings()
        self._client = client
        self._owns_client = client is None
        self._connector = connector
        self._metrics = metrics or MetricsCollector()

        self._state = SessionState.STOPPED
        self._started_at: Optional[datetime] = None
        self._stop_event = asyncio.Event()

        self._store: Optional[SnapshotStore] = None
        self._channel: Optional[ReconnectingChannel] = None
        self._cache: Optional[HistoryCache] = None

        self._timelines: dict[tuple[str, Optional[str]], NodeTimeline] = {}
        self._history_generation = 0
        self._reload_tasks: set[asyncio.Task] = set()
        self._listeners: list[Callable[[SnapshotStore], None]] = []

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SessionState.RUNNING

    @property
    def scope(self) -> AccessScope:
        return self._scope

    @property
    def snapshot(self) -> Optional[Dashboard]:
        return self._store.snapshot if self._store else None

    @property
    def store(self) -> Optional[SnapshotStore]:
        return self._store

    @property
    def channel(self) -> Optional[ReconnectingChannel]:
        return self._channel

    @property
    def history_cache(self) -> Optional[HistoryCache]:
        return self._cache

    @property
    def client(self) -> Optional[MonitorApiClient]:
        return self._client

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def summary(self) -> FleetSummary:
        return summarize(self.snapshot)

    def add_listener(self, listener: Callable[[SnapshotStore], None]) -> None:
        """Register a store listener; it survives scope switches."""
        self._listeners.append(listener)
        if self._store:
            self._store.add_listener(listener)

    async def start(self) -> None:
        """
        Start the session.

        This will:
        1. Create the REST client, history cache and snapshot store
        2. Load the first snapshot (a failure is logged; the poll timer retries)
        3. Open the push channel for the scope
        """
        if self._state != SessionState.STOPPED:
            logger.warning(f"Cannot start: already in state {self._state.value}")
            return

        logger.info(f"Starting monitor session for {self._scope.key}...")
        self._state = SessionState.STARTING
        self._started_at = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._history_generation = 0

        try:
            self._metrics.start()

            if self._client is None:
                self._client = MonitorApiClient(
                    self._settings.base_url,
                    headers=self._settings.headers,
                    timeout=self._settings.request_timeout,
                    max_retries=self._settings.max_retries,
                )
                self._owns_client = True
                await self._client.__aenter__()

            self._cache = HistoryCache(
                client_fetcher(self._client),
                ttl=self._settings.history_ttl,
                metrics=self._metrics,
            )

            self._store = SnapshotStore(
                self._load_snapshot,
                refresh_interval=self._settings.refresh_interval,
                metrics=self._metrics,
                scope_key=self._scope.key,
                auto_refresh=self._settings.auto_refresh,
            )
            self._store.add_listener(self._handle_store_change)
            for listener in self._listeners:
                self._store.add_listener(listener)
            await self._store.start()

            self._channel = ReconnectingChannel(
                self._settings.channel_url,
                on_event=self._handle_event,
                on_state_change=self._handle_channel_state,
                on_error=self._handle_channel_error,
                backoff=backoff_from_settings(self._settings),
                max_attempts=self._settings.reconnect_max_attempts,
                metrics=self._metrics,
                connector=self._connector,
            )

            await self._initial_refresh()
            await self._channel.open(self._scope)

            self._state = SessionState.RUNNING
            logger.info("Monitor session started")

        except Exception as e:
            logger.error(f"Failed to start monitor session: {e}")
            self._state = SessionState.FAILED
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the session gracefully."""
        if self._state in (SessionState.STOPPED, SessionState.STOPPING):
            return

        logger.info("Stopping monitor session...")
        self._state = SessionState.STOPPING
        self._stop_event.set()

        await self._cleanup()
        self._metrics.stop()

        self._state = SessionState.STOPPED
        logger.info("Monitor session stopped")

    async def _cleanup(self) -> None:
        """Clean up resources."""
        self._close_timelines()

        for task in list(self._reload_tasks):
            task.cancel()
        if self._reload_tasks:
            await asyncio.gather(*self._reload_tasks, return_exceptions=True)
        self._reload_tasks.clear()

        if self._channel:
            try:
                await self._channel.close()
            except Exception as e:
                logger.warning(f"Error closing channel: {e}")
            self._channel = None

        if self._store:
            await self._store.stop()
            self._store = None

        if self._cache:
            self._cache.clear()
            self._cache = None

        if self._client and self._owns_client:
            try:
                await self._client.close()
            except Exception as e:
                logger.warning(f"Error closing REST client: {e}")
            self._client = None

    async def refresh(self) -> Optional[Dashboard]:
        """
        Manual refresh.

        Raises:
            FetchError / ParseError: The fetch failed; the snapshot is kept
        """
        if not self._store:
            raise RuntimeError("Session not started")
        return await self._store.refresh()

    async def switch_scope(self, scope: AccessScope) -> None:
        """
        Move the session to another account or share token.

        Nothing fetched for the old scope survives: timelines are closed,
        history requests cancelled, the snapshot dropped, and loads still
        running for the old scope are ignored when they finish.
        """
        if scope == self._scope:
            return
        if not self._store or not self._channel or not self._cache:
            self._scope = scope
            return

        logger.info(f"Switching scope {self._scope.key} -> {scope.key}")
        self._scope = scope

        self._close_timelines()
        self._cache.clear()
        self._store.reset(scope.key)

        await self._channel.open(scope)
        await self._initial_refresh()

    def timeline(self, node_id: str, source: Optional[str] = None) -> NodeTimeline:
        """
        Timeline for a node widget; one instance per (node, source) filter.

        Raises:
            RuntimeError: The session is not started
        """
        if not self._cache:
            raise RuntimeError("Session not started")

        source = source or self._settings.history_source or None
        key = (node_id, source)
        timeline = self._timelines.get(key)
        if timeline is None or timeline.is_closed:
            timeline = NodeTimeline(
                self._cache,
                node_id,
                scope_token=self._scope.history_token,
                source=source,
            )
            self._timelines[key] = timeline
        return timeline

    def release_timeline(self, node_id: str, source: Optional[str] = None) -> None:
        """Widget unmount: close its timeline and cancel what it started."""
        source = source or self._settings.history_source or None
        timeline = self._timelines.pop((node_id, source), None)
        if timeline:
            timeline.close()

    def health(self) -> SessionHealth:
        """
        Get current health status.

        Returns:
            SessionHealth indicating overall session health
        """
        metrics = self._metrics.get_metrics()

        uptime = 0.0
        if self._started_at:
            uptime = (datetime.now(timezone.utc) - self._started_at).total_seconds()

        channel_state = ChannelState.DISCONNECTED
        channel_connected = False
        last_msg_age = None
        reconnects = 0

        if self._channel:
            channel_state = self._channel.state
            channel_connected = self._channel.is_connected
            reconnects = self._channel.reconnect_count
            if self._channel.last_message_time is not None:
                last_msg_age = asyncio.get_running_loop().time() - self._channel.last_message_time

        snapshot = self.snapshot

        healthy = True
        details: dict[str, Any] = {}

        if self._state != SessionState.RUNNING:
            healthy = False
            details["reason"] = f"Session not running: {self._state.value}"

        elif snapshot is None:
            healthy = False
            details["reason"] = "No snapshot loaded"

        elif not channel_connected:
            healthy = False
            details["reason"] = "Push channel not connected"

        return SessionHealth(
            healthy=healthy,
            state=self._state,
            scope_key=self._scope.key,
            uptime_seconds=uptime,
            channel_state=channel_state,
            channel_connected=channel_connected,
            last_message_age_seconds=last_msg_age,
            reconnect_count=reconnects,
            node_count=len(snapshot.nodes) if snapshot else 0,
            history_generation=self._store.history_generation if self._store else 0,
            errors_last_hour=metrics.errors_last_hour,
            events_per_second=metrics.events_per_second,
            details=details,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    async def _load_snapshot(self) -> Dashboard:
        return await self._scope.load_dashboard(self._client)

    async def _initial_refresh(self) -> None:
        try:
            await self._store.refresh()
        except MonitorError as e:
            logger.warning(f"Initial snapshot for {self._scope.key} failed, poll timer will retry: {e}")

    async def _handle_event(self, event: InboundEvent) -> None:
        """Handle a decoded push event."""
        if self._store:
            self._store.submit(event)

        if isinstance(event, HealthCheckEvent):
            for (node_id, _), timeline in self._timelines.items():
                if node_id == event.record.node_id:
                    timeline.inject(event.record)

    async def _handle_channel_state(self, state: ChannelState) -> None:
        if state == ChannelState.CONNECTED:
            logger.info("Push channel connected")
        elif state == ChannelState.DISCONNECTED and self._state == SessionState.RUNNING:
            logger.warning("Push channel disconnected; showing last known snapshot")

    async def _handle_channel_error(self, error: Exception) -> None:
        logger.debug(f"Push channel error: {error}")
        self._metrics.record_error(
            error_type=type(error).__name__,
            message=str(error),
            component="channel",
        )

    def _handle_store_change(self, store: SnapshotStore) -> None:
        generation = store.history_generation
        if generation == self._history_generation:
            return
        self._history_generation = generation

        for timeline in list(self._timelines.values()):
            if timeline.is_closed:
                continue
            task = asyncio.create_task(self._reload_timeline(timeline))
            self._reload_tasks.add(task)
            task.add_done_callback(self._reload_tasks.discard)

    async def _reload_timeline(self, timeline: NodeTimeline) -> None:
        try:
            await timeline.load(force=True)
        except MonitorError as e:
            logger.warning(f"History reload for {timeline.node_id} failed: {e}")

    def _close_timelines(self) -> None:
        for timeline in self._timelines.values():
            timeline.close()
        self._timelines.clear()

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}, initiating shutdown...")
            asyncio.create_task(self.stop())

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    async def run_forever(self) -> None:
        """Run the session until stopped."""
        self._setup_signal_handlers()
        await self.start()

        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()


async def run_monitor(settings: Optional[MonitorSettings] = None) -> None:
    """
    Run a headless monitor session as a standalone process.

    Logs the fleet summary whenever it changes.
    """
    settings = settings or MonitorSettings()
    session = MonitorSession(scope_from_settings(settings), settings)
    last: list[Optional[FleetSummary]] = [None]

    def log_summary(store: SnapshotStore) -> None:
        current = summarize(store.snapshot)
        if current == last[0]:
            return
        last[0] = current
        logger.info(
            f"Fleet: {current.online} online, {current.offline} offline, "
            f"{current.disabled} disabled | success {current.success_rate:.1f}% "
            f"| avg {current.avg_response_time:.0f}ms | {current.total_requests} requests"
        )

    session.add_listener(log_summary)
    await session.run_forever()
