"""
Error taxonomy for the monitoring sync layer.

Transport and cache-internal failures are recovered locally (retry/backoff or
"no data yet"). Only fetch failures that block a user-initiated action are
surfaced. Cancellation uses asyncio.CancelledError and is never reported.
"""

from __future__ import annotations

from typing import Optional


class MonitorError(Exception):
    """Base exception for the monitoring sync layer."""


class TransportError(MonitorError):
    """Push channel failed to open or was dropped."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class FetchError(MonitorError):
    """REST or history request failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ParseError(MonitorError):
    """Malformed inbound frame or response body."""

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw[:200] if raw else raw
