"""
Error taxonomy for the Belt UserOp Monitor.
"""
from __future__ import annotations


class MonitorError(Exception):
    """Base class for all monitor errors."""


class UpstreamUnavailable(MonitorError):
    """The indexer query failed (network, timeout, HTTP error or malformed response)."""


class SinkRateLimited(MonitorError):
    """The webhook answered 429; *retry_after* is the wait it asked for, in seconds."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"rate limited, retry after {retry_after:.2f}s")
        self.retry_after = retry_after


class SinkDeliveryFailed(MonitorError):
    """The webhook rejected or never received the message."""


class StateStoreUnavailable(MonitorError):
    """The durable key-value store could not be opened or queried."""
