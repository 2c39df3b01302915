"""Exception taxonomy for the traffic monitor pipeline."""

from typing import Optional


class TrafficMonitorError(Exception):
    """Base class for all traffic monitor errors."""


class TransientFetchError(TrafficMonitorError):
    """
    The stats endpoint could not deliver a usable snapshot.

    Covers network failures, timeouts, non-2xx statuses and bodies that are
    not a JSON object. The poller reports it to the error sinks and backs off.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class StatsNotReadyError(TransientFetchError):
    """The stats endpoint answered 404: the proxy is not producing data yet."""

    def __init__(self, message: str = "Statistics are not available yet", status: int = 404):
        super().__init__(message, status=status)


class GeoLookupError(TrafficMonitorError):
    """A single IP could not be geolocated. Always recovered inside the cache."""


class InvalidTransitionError(TrafficMonitorError):
    """The poller state machine was asked to make a transition it does not allow."""
