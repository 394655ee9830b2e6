"""
Reconnecting push channel for live dashboard deltas.

Features:
    - One live connection per instance; opening a new scope closes the old one
    - Exponential backoff with jitter, unbounded retries by default
    - Malformed frames are dropped without ending the connection
    - Events delivered one at a time, in arrival order

Backoff:
    delay = min(max_delay, base_delay * 2**attempt) + uniform(0, 0.3 * backoff)

    attempt increments each time a reconnect fires and resets to 0 as soon as a
    connection reaches CONNECTED.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
)

from .errors import ParseError, TransportError
from .metrics import MetricsCollector
from .models import InboundEvent
from .scope import AccessScope
from .wire import decode_event, load_frame

logger = logging.getLogger(__name__)


class ChannelState(str, Enum):
    """Push channel connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


# Type aliases for callbacks
EventCallback = Callable[[InboundEvent], Awaitable[None]]
StateCallback = Callable[[ChannelState], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]
Connector = Callable[[str], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]

# Exponent cap; 2**30 seconds is far beyond any max_delay
_MAX_EXPONENT = 30


@dataclass(frozen=True)
class BackoffPolicy:
    """Reconnect delay schedule, in seconds."""
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_ratio: float = 0.3

    def backoff(self, attempt: int) -> float:
        """Delay before jitter for the given attempt number."""
        return min(self.max_delay, self.base_delay * 2 ** min(attempt, _MAX_EXPONENT))

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Backoff plus uniform jitter in [0, jitter_ratio * backoff)."""
        backoff = self.backoff(attempt)
        return backoff + backoff * self.jitter_ratio * rng()


async def _default_connector(url: str) -> Any:
    return await websockets.connect(
        url,
        ping_interval=20,
        ping_timeout=10,
        close_timeout=5,
    )


class ReconnectingChannel:
    """
    Self-healing push channel for one dashboard scope.

    Usage:
        async def handle(event: InboundEvent):
            store.submit(event)

        channel = ReconnectingChannel("wss://proxy.example.com", on_event=handle)
        await channel.open(AccessScope.account("acct_1"))

        # ... later (view unmount)
        await channel.close()
    """

    PATH = "/api/monitor/ws"

    def __init__(
        self,
        ws_base_url: str,
        on_event: EventCallback,
        on_state_change: Optional[StateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_attempts: Optional[int] = None,
        metrics: Optional[MetricsCollector] = None,
        connector: Optional[Connector] = None,
        sleep: Optional[Sleeper] = None,
        rng: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the channel.

        Args:
            ws_base_url: ws:// or wss:// origin of the backend
            on_event: Callback for each decoded event (required)
            on_state_change: Optional callback for connection state changes
            on_error: Optional callback for transport and parse errors
            backoff: Reconnect delay schedule
            max_attempts: Stop retrying after this many reconnects (None = never)
            metrics: Optional collector for connection and parse counters
            connector: Coroutine returning a connection for a URL (tests)
            sleep: Coroutine used to wait out reconnect delays (tests)
            rng: Source of uniform [0, 1) jitter (tests)
        """
        self._ws_base_url = ws_base_url.rstrip("/")
        self._on_event = on_event
        self._on_state_change = on_state_change
        self._on_error = on_error
        self._backoff = backoff or BackoffPolicy()
        self._max_attempts = max_attempts
        self._metrics = metrics
        self._connector = connector or _default_connector
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.random

        self._state = ChannelState.DISCONNECTED
        self._scope: Optional[AccessScope] = None
        self._ws: Optional[Any] = None
        self._should_reconnect = False
        # Bumped on every teardown; a handshake from an older generation is discarded
        self._generation = 0

        # Reconnection state
        self._attempt = 0
        self._reconnect_count = 0
        self._last_reconnect_delay: Optional[float] = None

        # Tasks
        self._connect_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

        self._parse_errors = 0
        self._last_message_time: Optional[float] = None

    @property
    def state(self) -> ChannelState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ChannelState.CONNECTED

    @property
    def scope(self) -> Optional[AccessScope]:
        """Scope of the current (or last) subscription."""
        return self._scope

    @property
    def attempt(self) -> int:
        """Consecutive failed cycles since the last successful connect."""
        return self._attempt

    @property
    def reconnect_count(self) -> int:
        """Reconnects fired since the instance was created."""
        return self._reconnect_count

    @property
    def last_reconnect_delay(self) -> Optional[float]:
        """Delay (seconds) chosen for the most recently scheduled reconnect."""
        return self._last_reconnect_delay

    @property
    def parse_errors(self) -> int:
        """Frames dropped because they could not be decoded."""
        return self._parse_errors

    @property
    def last_message_time(self) -> Optional[float]:
        """Event loop time of the last received frame."""
        return self._last_message_time

    def url_for(self, scope: AccessScope) -> str:
        params = scope.channel_params()
        query = f"?{urlencode(params)}" if params else ""
        return f"{self._ws_base_url}{self.PATH}{query}"

    async def _set_state(self, state: ChannelState) -> None:
        """Update state and notify callback."""
        if self._state != state:
            old_state = self._state
            self._state = state
            logger.info(f"Channel state: {old_state.value} -> {state.value}")
            if self._metrics:
                self._metrics.set_channel_connected(state == ChannelState.CONNECTED)

            if self._on_state_change:
                try:
                    await self._on_state_change(state)
                except Exception as e:
                    logger.error(f"Error in state change callback: {e}")

    async def _report_error(self, error: Exception) -> None:
        if self._on_error:
            try:
                await self._on_error(error)
            except Exception as e:
                logger.error(f"Error in error callback: {e}")

    async def open(self, scope: AccessScope) -> None:
        """
        Open the channel for a scope.

        A connection for a different scope (or a stale one) is closed first.
        Opening the scope that is already live is a no-op.
        """
        if (
            self._scope == scope
            and self._should_reconnect
            and self._state != ChannelState.DISCONNECTED
        ):
            return

        await self._teardown()

        self._scope = scope
        self._should_reconnect = True
        self._attempt = 0

        task = asyncio.create_task(self._connect())
        self._connect_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if self._connect_task is task:
                self._connect_task = None

        # A cancelled handshake was superseded by a later open() or close()
        if not task.cancelled():
            task.result()

    async def close(self) -> None:
        """
        Close the channel and stop reconnecting.

        Idempotent; safe to call multiple times and from inside callbacks.
        """
        if not self._should_reconnect and self._state == ChannelState.DISCONNECTED and self._ws is None:
            return

        logger.info("Closing channel...")
        await self._teardown()
        await self._set_state(ChannelState.DISCONNECTED)

    async def _teardown(self) -> None:
        """Cancel pending reconnect, stop receiving, close the socket."""
        self._should_reconnect = False
        self._generation += 1
        current = asyncio.current_task()

        for task in (self._connect_task, self._reconnect_task, self._receive_task):
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._connect_task = None
        self._reconnect_task = None
        self._receive_task = None

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"Error closing channel socket: {e}")

    async def _connect(self) -> None:
        """Establish the connection or schedule a retry."""
        if self._scope is None:
            return

        generation = self._generation
        url = self.url_for(self._scope)
        await self._set_state(ChannelState.CONNECTING)

        try:
            ws = await self._connector(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation != self._generation:
                logger.debug(f"Discarding failed handshake for a closed scope: {e}")
                return
            logger.warning(f"Failed to connect to {url}: {e}")
            await self._report_error(TransportError(f"Connect failed: {e}", url=url))
            await self._set_state(ChannelState.DISCONNECTED)
            self._schedule_reconnect()
            return

        if not self._should_reconnect or generation != self._generation:
            # Closed or reopened while the handshake was in flight
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing late socket: {e}")
            return

        self._ws = ws
        self._attempt = 0
        self._last_message_time = asyncio.get_running_loop().time()
        await self._set_state(ChannelState.CONNECTED)
        logger.info(f"Connected to {url}")

        self._receive_task = asyncio.create_task(self._receive_loop(ws))

    async def _receive_loop(self, ws: Any) -> None:
        """Receive frames until the socket closes, then schedule a reconnect."""
        try:
            while True:
                try:
                    message = await ws.recv()
                except ConnectionClosedOK:
                    logger.info("Channel closed normally")
                    break
                except ConnectionClosedError as e:
                    logger.warning(f"Channel closed with error: {e}")
                    break
                except ConnectionClosed as e:
                    logger.warning(f"Channel connection closed: {e}")
                    break

                self._last_message_time = asyncio.get_running_loop().time()
                await self._handle_frame(message)

        except asyncio.CancelledError:
            logger.debug("Receive loop cancelled")
            raise

        except Exception as e:
            logger.error(f"Error in receive loop: {e}")
            await self._report_error(TransportError(f"Receive failed: {e}"))

        if self._ws is ws:
            self._ws = None
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing dropped socket: {e}")

        if self._should_reconnect:
            await self._set_state(ChannelState.DISCONNECTED)
            await self._report_error(TransportError("Channel dropped"))
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """Schedule a reconnection attempt with exponential backoff."""
        if not self._should_reconnect:
            return

        if self._max_attempts is not None and self._attempt >= self._max_attempts:
            logger.error(f"Giving up after {self._attempt} reconnect attempts")
            self._should_reconnect = False
            asyncio.get_running_loop().create_task(
                self._report_error(TransportError("Reconnect attempts exhausted"))
            )
            return

        current = asyncio.current_task()
        if self._reconnect_task and self._reconnect_task is not current and not self._reconnect_task.done():
            self._reconnect_task.cancel()

        delay = self._backoff.delay(self._attempt, self._rng)
        self._last_reconnect_delay = delay
        if self._metrics:
            self._metrics.record_reconnect_scheduled(delay)
        logger.info(f"Reconnecting in {delay:.1f}s (attempt #{self._attempt + 1})...")

        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        if not self._should_reconnect:
            return
        self._attempt += 1
        self._reconnect_count += 1
        await self._connect()

    async def _handle_frame(self, raw: Any) -> None:
        """Decode a frame and deliver its events in order."""
        try:
            items = load_frame(raw)
        except ParseError as e:
            self._parse_errors += 1
            if self._metrics:
                self._metrics.record_parse_error()
            logger.warning(f"Dropping malformed frame: {e}")
            await self._report_error(e)
            return

        if not items:
            logger.debug("Received empty frame (heartbeat)")
            return

        for item in items:
            try:
                event = decode_event(item)
            except ParseError as e:
                self._parse_errors += 1
                if self._metrics:
                    self._metrics.record_parse_error()
                logger.warning(f"Dropping malformed event: {e}")
                await self._report_error(e)
                continue

            if event is None:
                continue

            try:
                await self._on_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in event callback: {e}")
