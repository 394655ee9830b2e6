"""
Snapshot store - the single owner of the live dashboard.

Three producers feed it: the poll timer, manual refresh() and the push channel.
None of them touches the snapshot directly. Each one puts an update on one
asyncio.Queue, and a single apply task drains it in arrival order. A full
snapshot replaces the dashboard wholesale; an event is merged by the reconciler.

History generation:
    Timelines reload when the scope or the set of node ids changes. The store
    tracks a signature "<scope_key>|<sorted node ids>" and bumps
    history_generation whenever a new snapshot changes it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from .metrics import MetricsCollector
from .models import Dashboard, HealthCheckEvent, HealthCheckRecord, InboundEvent
from .reconciler import apply_event, record_health_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SnapshotReplaced:
    """A full authoritative snapshot."""
    dashboard: Dashboard
    epoch: int = 0


@dataclass(frozen=True)
class EventReceived:
    """One push event."""
    event: InboundEvent
    epoch: int = 0


StoreUpdate = Union[SnapshotReplaced, EventReceived]
Loader = Callable[[], Awaitable[Dashboard]]
Listener = Callable[["SnapshotStore"], None]


class SnapshotStore:
    """
    Single-writer holder of the dashboard snapshot.

    Usage:
        store = SnapshotStore(lambda: scope.load_dashboard(client), scope_key=scope.key)
        await store.start()
        await store.refresh()           # raises FetchError on failure

        store.submit(event)             # from the push channel
        print(store.snapshot)

        await store.stop()
    """

    def __init__(
        self,
        loader: Loader,
        refresh_interval: float = 30.0,
        metrics: Optional[MetricsCollector] = None,
        scope_key: str = "",
        auto_refresh: bool = True,
    ):
        """
        Initialize the store.

        Args:
            loader: Coroutine fetching the authoritative snapshot
            refresh_interval: Seconds between timer refreshes
            metrics: Optional collector for event and refresh counters
            scope_key: Key of the scope the snapshots belong to
            auto_refresh: Whether the poll timer fetches snapshots
        """
        self._loader = loader
        self._refresh_interval = refresh_interval
        self._metrics = metrics
        self._scope_key = scope_key
        self._auto_refresh = auto_refresh

        self._snapshot: Optional[Dashboard] = None
        self._live_health: dict[str, HealthCheckRecord] = {}
        self._history_generation = 0
        self._signature: Optional[str] = None
        # Bumped by reset(); updates tagged with an older epoch are dropped
        self._epoch = 0

        self._queue: asyncio.Queue[tuple[StoreUpdate, Optional[asyncio.Future]]] = asyncio.Queue()
        self._listeners: list[Listener] = []

        self._running = False
        self._apply_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def snapshot(self) -> Optional[Dashboard]:
        return self._snapshot

    @property
    def live_health(self) -> dict[str, HealthCheckRecord]:
        """Most recent live health-check record per node id."""
        return dict(self._live_health)

    @property
    def history_generation(self) -> int:
        return self._history_generation

    @property
    def scope_key(self) -> str:
        return self._scope_key

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        """Updates queued but not yet applied."""
        return self._queue.qsize()

    @property
    def auto_refresh(self) -> bool:
        return self._auto_refresh

    @auto_refresh.setter
    def auto_refresh(self, enabled: bool) -> None:
        if enabled != self._auto_refresh:
            logger.info(f"Auto refresh {'enabled' if enabled else 'disabled'}")
        self._auto_refresh = enabled

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """
        Register a callback run after every applied change.

        Returns:
            Function removing the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the apply task and the poll timer."""
        if self._running:
            logger.warning("Snapshot store already running")
            return

        self._running = True
        self._apply_task = asyncio.create_task(self._apply_loop())
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(f"Snapshot store started (refresh every {self._refresh_interval}s)")

    async def stop(self) -> None:
        """Stop both tasks; queued updates are discarded."""
        if not self._running:
            return

        self._running = False
        for task in (self._timer_task, self._apply_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._timer_task = None
        self._apply_task = None
        self._discard_queue()
        logger.info("Snapshot store stopped")

    def reset(self, scope_key: Optional[str] = None) -> None:
        """
        Forget everything for a scope change.

        Snapshot, live health and queued updates are dropped, and results of
        loads started before the reset are ignored when they arrive.
        """
        self._epoch += 1
        if scope_key is not None:
            self._scope_key = scope_key
        self._snapshot = None
        self._live_health = {}
        self._signature = None
        self._discard_queue()
        self._notify()

    # =========================================================================
    # Producers
    # =========================================================================

    def submit(self, event: InboundEvent) -> None:
        """Queue a push event (from the channel)."""
        self._queue.put_nowait((EventReceived(event=event, epoch=self._epoch), None))

    async def refresh(self) -> Optional[Dashboard]:
        """
        Manual refresh: fetch a snapshot and wait until it is applied.

        Returns:
            The applied snapshot, or None if a reset superseded it

        Raises:
            FetchError / ParseError: The fetch failed; the snapshot is kept
        """
        epoch = self._epoch
        try:
            dashboard = await self._load()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Manual refresh failed: {e}")
            raise
        return await self._enqueue_snapshot(dashboard, epoch)

    async def _load(self) -> Dashboard:
        try:
            dashboard = await self._loader()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._metrics:
                self._metrics.record_refresh(success=False)
                self._metrics.record_error(
                    error_type=type(e).__name__,
                    message=str(e),
                    component="store",
                )
            raise
        if self._metrics:
            self._metrics.record_refresh(success=True)
        return dashboard

    async def _enqueue_snapshot(self, dashboard: Dashboard, epoch: int) -> Optional[Dashboard]:
        update = SnapshotReplaced(dashboard=dashboard, epoch=epoch)
        if not self._running:
            applied = self.process(update)
        else:
            done = asyncio.get_running_loop().create_future()
            self._queue.put_nowait((update, done))
            applied = await done
        return self._snapshot if applied else None

    async def _timer_loop(self) -> None:
        """Periodic refresh; failures keep the previous snapshot."""
        while self._running:
            try:
                await asyncio.sleep(self._refresh_interval)
                if not self._auto_refresh:
                    continue
                epoch = self._epoch
                dashboard = await self._loader_for_timer()
                if dashboard is not None:
                    await self._enqueue_snapshot(dashboard, epoch)

            except asyncio.CancelledError:
                break

            except Exception as e:
                logger.error(f"Error in refresh timer: {e}")

    async def _loader_for_timer(self) -> Optional[Dashboard]:
        try:
            return await self._load()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Scheduled refresh failed, keeping last snapshot: {e}")
            return None

    # =========================================================================
    # Apply
    # =========================================================================

    async def _apply_loop(self) -> None:
        while True:
            update, done = await self._queue.get()
            applied = False
            try:
                applied = self.process(update)
            except Exception as e:
                logger.error(f"Error applying update: {e}")
                if done is not None and not done.done():
                    done.set_exception(e)
                    done = None
            finally:
                if done is not None and not done.done():
                    done.set_result(applied)
                self._queue.task_done()

    def process(self, update: StoreUpdate) -> bool:
        """
        Apply one update synchronously.

        Returns:
            True if the store changed
        """
        if update.epoch != self._epoch:
            logger.debug(f"Dropping update from previous scope: {type(update).__name__}")
            return False

        if isinstance(update, SnapshotReplaced):
            self._replace(update.dashboard)
            self._notify()
            return True

        event = update.event
        if isinstance(event, HealthCheckEvent):
            self._live_health = record_health_event(self._live_health, event.record)
            if self._metrics:
                self._metrics.record_event_applied()
            self._notify()
            return True

        current = self._snapshot
        updated = apply_event(event, current)
        if updated is current:
            if self._metrics:
                self._metrics.record_event_ignored()
            return False

        self._snapshot = updated
        if self._metrics:
            self._metrics.record_event_applied()
        self._notify()
        return True

    def _replace(self, dashboard: Dashboard) -> None:
        self._snapshot = dashboard
        signature = f"{self._scope_key}|{'|'.join(sorted(dashboard.node_ids))}"
        if signature != self._signature:
            self._signature = signature
            self._history_generation += 1
            logger.debug(f"History generation -> {self._history_generation}")

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Error in store listener: {e}")

    def _discard_queue(self) -> None:
        while not self._queue.empty():
            _, done = self._queue.get_nowait()
            if done is not None and not done.done():
                done.set_result(False)
            self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued update has been applied."""
        await self._queue.join()
