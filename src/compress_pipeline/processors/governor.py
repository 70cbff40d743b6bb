"""Bounded, gated slot pool for remote transform calls."""

import asyncio
import os
import sys
import time
from collections import deque
from typing import Callable, Deque, List, Optional

from ..core import get_logger
from ..core.protocols import BackpressureProbe
from .circuit_breaker import CircuitBreaker, CircuitState
from .rate_observer import RateObserver

if sys.platform != "win32":
    import resource

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 20


def current_rss_mb() -> float:
    """Resident set size of this process in MiB."""
    statm = "/proc/self/statm"
    if os.path.exists(statm):
        with open(statm, "r") as handle:
            resident_pages = int(handle.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)

    if sys.platform == "win32":
        return 0.0

    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, KiB elsewhere
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return peak / divisor


class MemoryPressureProbe:
    """
    Back-pressure signal raised while process memory exceeds ``limit_mb``.

    Memory is sampled at most once per ``check_interval_s``; between samples
    the last verdict is returned.
    """

    def __init__(
        self,
        limit_mb: float,
        check_interval_s: float = 1.0,
        usage_fn: Callable[[], float] = current_rss_mb,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.limit_mb = limit_mb
        self.check_interval_s = check_interval_s
        self._usage = usage_fn
        self._time = time_fn
        self._last_check: Optional[float] = None
        self._under_pressure = False
        self._logger = get_logger("memory-probe")

    def __call__(self) -> bool:
        now = self._time()
        if self._last_check is not None and now - self._last_check < self.check_interval_s:
            return self._under_pressure

        self._last_check = now
        usage = self._usage()
        pressure = usage > self.limit_mb
        if pressure and not self._under_pressure:
            self._logger.warning(
                f"Memory pressure: {usage:.0f}MB in use (limit {self.limit_mb:.0f}MB), pausing new requests"
            )
        elif self._under_pressure and not pressure:
            self._logger.info(f"Memory pressure relieved: {usage:.0f}MB in use")
        self._under_pressure = pressure
        return pressure


class Slot:
    """A held permission to have one transform call in flight."""

    __slots__ = ("trial",)

    def __init__(self, trial: bool = False):
        self.trial = trial


class ConcurrencyGovernor:
    """
    Counting semaphore with FIFO hand-off, gated on the circuit breaker and
    an optional back-pressure probe.

    ``acquire()`` never fails, it only delays. A slot is granted when one is
    free, nobody is queued ahead, the circuit admits a request and no
    back-pressure is signalled. Back-pressure is ignored while nothing is in
    flight so a stuck probe cannot stall the pool forever.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        circuit_breaker: Optional[CircuitBreaker] = None,
        rate_observer: Optional[RateObserver] = None,
        backpressure: Optional[BackpressureProbe] = None,
        adaptive_throttling: bool = True,
        base_delay_ms: float = 100.0,
        poll_interval_s: float = 0.5,
        on_change: Optional[Callable[[int], None]] = None,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self._validate_limit(max_concurrent)
        self._limit = max_concurrent
        self._breaker = circuit_breaker
        self._observer = rate_observer
        self._backpressure = backpressure
        self._adaptive = adaptive_throttling
        self._base_delay_ms = base_delay_ms
        self._poll_interval_s = poll_interval_s
        self._on_change = on_change
        self._sleep = sleep

        self._active = 0
        self._peak = 0
        self._samples: List[int] = []
        self._waiters: Deque[asyncio.Future] = deque()
        self._wakeup: Optional[asyncio.TimerHandle] = None
        self._logger = get_logger("governor")

    @staticmethod
    def _validate_limit(limit: int) -> None:
        if not MIN_CONCURRENCY <= limit <= MAX_CONCURRENCY:
            raise ValueError(
                f"max_concurrent must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}, got {limit}"
            )

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    @property
    def peak(self) -> int:
        return self._peak

    @property
    def circuit_breaker(self) -> Optional[CircuitBreaker]:
        return self._breaker

    @property
    def average_concurrency(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    def resize(self, new_limit: int) -> None:
        """Change capacity at runtime; growing wakes queued waiters immediately."""
        self._validate_limit(new_limit)
        old_limit = self._limit
        self._limit = new_limit
        if new_limit != old_limit:
            self._logger.info(f"Concurrency limit changed {old_limit} -> {new_limit}")
        self._dispatch()

    def _gate_closed_reason(self) -> Optional[str]:
        if self._backpressure is not None and self._active > 0 and self._backpressure():
            return "backpressure"
        if self._breaker is not None and self._breaker.should_block():
            return "circuit"
        return None

    def _try_grant(self) -> Optional[Slot]:
        if self._active >= self._limit or self._gate_closed_reason() is not None:
            return None

        trial = False
        if self._breaker is not None:
            trial = self._breaker.state != CircuitState.CLOSED
            if not self._breaker.allow_request():
                return None

        self._active += 1
        self._peak = max(self._peak, self._active)
        self._samples.append(self._active)
        self._notify()
        return Slot(trial=trial)

    def _dispatch(self) -> None:
        while self._waiters:
            if self._waiters[0].done():
                self._waiters.popleft()
                continue
            slot = self._try_grant()
            if slot is None:
                break
            self._waiters.popleft().set_result(slot)

        if self._waiters and self._active < self._limit:
            self._schedule_wakeup()

    def _schedule_wakeup(self) -> None:
        if self._wakeup is not None:
            return
        delay = self._poll_interval_s
        if self._breaker is not None and self._breaker.should_block():
            delay = max(self._breaker.remaining_cooldown(), 0.01)
        loop = asyncio.get_running_loop()
        self._wakeup = loop.call_later(delay, self._on_wakeup)

    def _on_wakeup(self) -> None:
        self._wakeup = None
        self._dispatch()

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self._active)

    async def acquire(self) -> Slot:
        if not self.waiting:
            slot = self._try_grant()
            if slot is not None:
                return slot

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        self._dispatch()
        try:
            return await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                self.release(fut.result())
            raise

    def release(self, slot: Optional[Slot] = None) -> None:
        if self._active <= 0:
            raise RuntimeError("release() called without a held slot")
        self._active -= 1
        if slot is not None and slot.trial and self._breaker is not None:
            self._breaker.release_trial()
        self._notify()
        self._dispatch()

    def pre_request_delay(self) -> float:
        """Seconds to wait before the next remote call."""
        if self._adaptive and self._observer is not None:
            return self._observer.optimal_delay() / 1000.0
        return self._base_delay_ms / 1000.0

    async def throttle(self) -> None:
        delay = self.pre_request_delay()
        if delay > 0:
            await self._sleep(delay)

    def close(self) -> None:
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None
