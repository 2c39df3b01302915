"""
Stats Poller

Runs the fetch -> aggregate -> render cycle as an explicit state machine:

    IDLE -> FETCHING -> SUCCEEDED -> IDLE   (next fetch after the normal interval)
                     -> FAILED    -> IDLE   (next fetch after the backoff interval)

Exactly one fetch is in flight at a time; the next cycle is only scheduled
once the current one has fully resolved. Sleeping goes through an injected
callable so the loop can be driven without real timers.
"""

import asyncio
import datetime
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .aggregator import aggregate
from .config import POLL_INTERVAL_SECONDS, BACKOFF_INTERVAL_SECONDS, COUNTRY_COORDINATES
from .errors import InvalidTransitionError, StatsNotReadyError, TransientFetchError
from .state import AggregateResult

log = logging.getLogger("TrafficMonitor.Poller")


class PollerState(enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TRANSITIONS = {
    PollerState.IDLE: {PollerState.FETCHING},
    PollerState.FETCHING: {PollerState.SUCCEEDED, PollerState.FAILED},
    PollerState.SUCCEEDED: {PollerState.IDLE},
    PollerState.FAILED: {PollerState.IDLE},
}


@dataclass
class ErrorNotice:
    """What the error sinks show while the last cycle failed."""
    level: str  # 'error' or 'info'
    message: str
    status: Optional[int] = None
    consecutive_failures: int = 0
    retry_in: float = 0.0

    def to_payload(self) -> Dict[str, Any]:
        return {"type": "stats_error", "level": self.level, "message": self.message,
                "status": self.status, "consecutive_failures": self.consecutive_failures,
                "retry_in": self.retry_in}


class RenderSink:
    """Consumer of finished cycle results. Subclasses override what they need."""

    async def render(self, result: AggregateResult):
        pass

    async def render_error(self, notice: ErrorNotice):
        pass


class Poller:

    def __init__(self, client, cache=None, sinks: Iterable[RenderSink] = (),
                 interval: float = POLL_INTERVAL_SECONDS,
                 backoff_interval: float = BACKOFF_INTERVAL_SECONDS,
                 sleep=asyncio.sleep,
                 country_coordinates: Optional[Dict[str, Dict[str, Any]]] = COUNTRY_COORDINATES):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if backoff_interval < interval:
            raise ValueError(f"backoff interval ({backoff_interval}s) must not be shorter "
                             f"than the poll interval ({interval}s)")
        self.client = client
        self.cache = cache
        self.sinks: List[RenderSink] = list(sinks)
        self.interval = interval
        self.backoff_interval = backoff_interval
        self._sleep = sleep
        self.country_coordinates = country_coordinates
        self._state = PollerState.IDLE
        self.cycles = 0
        self.consecutive_failures = 0
        self.last_success_iso: Optional[str] = None
        self.last_error: Optional[ErrorNotice] = None

    @property
    def state(self) -> PollerState:
        return self._state

    def _transition(self, new_state: PollerState):
        if new_state not in TRANSITIONS[self._state]:
            raise InvalidTransitionError(f"{self._state.value} -> {new_state.value}")
        log.debug(f"Poller state {self._state.value} -> {new_state.value}")
        self._state = new_state

    def add_sink(self, sink: RenderSink):
        self.sinks.append(sink)

    async def run_cycle(self) -> float:
        """Run one fetch cycle and return the delay before the next one."""
        self._transition(PollerState.FETCHING)
        self.cycles += 1
        try:
            return await self._complete_cycle()
        except asyncio.CancelledError:
            # Cancelled mid-cycle: leave the machine ready for the next one
            log.debug(f"Cycle cancelled in state {self._state.value}, resetting to idle")
            self._state = PollerState.IDLE
            raise

    async def _complete_cycle(self) -> float:
        try:
            payload = await self.client.fetch_stats()
            result = await aggregate(payload, self.cache, self.country_coordinates)
        except StatsNotReadyError as e:
            notice = ErrorNotice(level="info", message=f"Waiting for statistics: {e}", status=e.status)
        except TransientFetchError as e:
            notice = ErrorNotice(level="error", message=str(e), status=e.status)
        except Exception as e:
            log.error("Unexpected error during stats cycle:", exc_info=True)
            notice = ErrorNotice(level="error", message=f"Unexpected error: {e}")
        else:
            self._transition(PollerState.SUCCEEDED)
            self.consecutive_failures = 0
            self.last_error = None
            self.last_success_iso = datetime.datetime.now(datetime.timezone.utc).isoformat()
            await self._dispatch('render', result)
            self._transition(PollerState.IDLE)
            return self.interval

        self._transition(PollerState.FAILED)
        self.consecutive_failures += 1
        notice.consecutive_failures = self.consecutive_failures
        notice.retry_in = self.backoff_interval
        self.last_error = notice
        if notice.level == "info":
            log.info(f"{notice.message}. Retrying in {self.backoff_interval}s")
        else:
            log.warning(f"Stats fetch failed ({self.consecutive_failures} in a row): {notice.message}. "
                        f"Retrying in {self.backoff_interval}s")
        await self._dispatch('render_error', notice)
        self._transition(PollerState.IDLE)
        return self.backoff_interval

    async def _dispatch(self, method: str, arg):
        for sink in self.sinks:
            try:
                await getattr(sink, method)(arg)
            except Exception:
                log.error(f"Render sink {type(sink).__name__}.{method} failed:", exc_info=True)

    async def run(self):
        log.info(f"Stats poller started (interval {self.interval}s, backoff {self.backoff_interval}s).")
        try:
            while True:
                delay = await self.run_cycle()
                await self._sleep(delay)
        except asyncio.CancelledError:
            log.info("Stats poller cancelled")
            raise

    def status(self) -> Dict[str, Any]:
        return {
            'state': self._state.value,
            'cycles': self.cycles,
            'consecutive_failures': self.consecutive_failures,
            'last_success_iso': self.last_success_iso,
            'last_error': self.last_error.to_payload() if self.last_error else None,
            'interval': self.interval,
            'backoff_interval': self.backoff_interval,
        }
