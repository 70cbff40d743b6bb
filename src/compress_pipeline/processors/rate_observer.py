"""Adaptive pre-request delay inferred from observed latency and failures."""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from ..core import get_logger

FAILURE_WINDOW_S = 30.0
LATENCY_WINDOW_S = 10.0
SLOW_LATENCY_MS = 1500.0
VERY_SLOW_LATENCY_MS = 3000.0


@dataclass(frozen=True)
class RateSample:
    """One observed remote call."""

    timestamp: float
    latency_ms: float
    success: bool


class RateObserver:
    """
    Tracks a bounded window of recent calls and derives the delay to wait
    before the next one.

    The delay is the largest of three terms, capped at ``max_delay_ms``:

    - failure pressure: ``base * (1 + failures in the last 30s)``
    - latency pressure: ``3 * base`` when the recent average exceeds 3000ms,
      ``2 * base`` above 1500ms
    - backoff memory: ``base * multiplier``, where each failure multiplies by
      ``escalation`` (capped) and each success decays it by ``decay`` back
      toward 1

    With no adverse signal the delay settles at ``base_delay_ms``.
    """

    def __init__(
        self,
        base_delay_ms: float = 100.0,
        max_delay_ms: float = 2000.0,
        max_samples: int = 100,
        max_failures: int = 50,
        decay: float = 0.8,
        escalation: float = 1.5,
        max_multiplier: float = 8.0,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        if not 0 < decay < 1:
            raise ValueError("decay must be between 0 and 1")
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._decay = decay
        self._escalation = escalation
        self._max_multiplier = max_multiplier
        self._time = time_fn
        self._samples: Deque[RateSample] = deque(maxlen=max_samples)
        self._failures: Deque[float] = deque(maxlen=max_failures)
        self._multiplier = 1.0
        self._total_requests = 0
        self._lock = threading.Lock()
        self._logger = get_logger("rate-observer")

    @property
    def multiplier(self) -> float:
        return self._multiplier

    @property
    def total_requests(self) -> int:
        return self._total_requests

    def record_success(self, latency_ms: float) -> None:
        with self._lock:
            self._samples.append(RateSample(self._time(), latency_ms, True))
            self._total_requests += 1
            self._multiplier = max(1.0, self._multiplier * self._decay)

    def record_failure(self, latency_ms: float = 0.0) -> None:
        with self._lock:
            now = self._time()
            self._samples.append(RateSample(now, latency_ms, False))
            self._failures.append(now)
            self._total_requests += 1
            self._multiplier = min(
                self._max_multiplier, self._multiplier * self._escalation
            )

    def recent_failures(self, window_s: float = FAILURE_WINDOW_S) -> int:
        now = self._time()
        with self._lock:
            return sum(1 for ts in self._failures if now - ts < window_s)

    def average_latency_ms(self, window_s: Optional[float] = LATENCY_WINDOW_S) -> float:
        """Average latency of successful calls, within ``window_s`` when given."""
        now = self._time()
        with self._lock:
            latencies = [
                s.latency_ms
                for s in self._samples
                if s.success and (window_s is None or now - s.timestamp < window_s)
            ]
        if not latencies:
            return 0.0
        return sum(latencies) / len(latencies)

    def optimal_delay(self) -> float:
        """Milliseconds to wait before issuing the next remote call."""
        base = self.base_delay_ms
        failures = self.recent_failures()
        failure_delay = base * (1 + failures)

        average = self.average_latency_ms()
        if average > VERY_SLOW_LATENCY_MS:
            latency_delay = base * 3
        elif average > SLOW_LATENCY_MS:
            latency_delay = base * 2
        else:
            latency_delay = base

        backoff_delay = base * self._multiplier
        delay = min(self.max_delay_ms, max(failure_delay, latency_delay, backoff_delay))
        if delay > base:
            self._logger.debug(
                f"Throttling: delay={delay:.0f}ms (failures={failures}, "
                f"avg_latency={average:.0f}ms, multiplier={self._multiplier:.2f})"
            )
        return delay
