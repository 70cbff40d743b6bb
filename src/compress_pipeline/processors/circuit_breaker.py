"""Circuit breaker guarding the remote transform service."""

import threading
import time
from enum import Enum
from typing import Callable, Optional

from ..core import get_logger


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops new remote calls after a run of consecutive failures.

    CLOSED -> OPEN once ``failure_threshold`` consecutive failures are
    recorded. OPEN -> HALF_OPEN when ``cooldown_s`` has elapsed; exactly one
    trial call is admitted there. A successful trial closes the circuit and
    resets the failure count, a failed trial re-opens it with a fresh
    cooldown. Results of calls dispatched before the circuit opened do not
    close it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_s: float = 30.0,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self._time = time_fn
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()
        self._logger = get_logger("circuit-breaker")

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def opened_at(self) -> Optional[float]:
        return self._opened_at

    def _cooldown_elapsed(self) -> bool:
        return self._opened_at is not None and self._time() - self._opened_at >= self.cooldown_s

    def remaining_cooldown(self) -> float:
        """Seconds until an open circuit admits its trial call (0 when not open)."""
        with self._lock:
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return 0.0
            return max(0.0, self.cooldown_s - (self._time() - self._opened_at))

    def should_block(self) -> bool:
        """True while the circuit is open and its cooldown has not elapsed."""
        with self._lock:
            return self._state == CircuitState.OPEN and not self._cooldown_elapsed()

    def allow_request(self) -> bool:
        """
        Admit one call if the circuit permits it.

        Moves OPEN to HALF_OPEN once the cooldown has elapsed and claims the
        single trial slot; further callers are refused until the trial
        reports back.
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.OPEN:
                if not self._cooldown_elapsed():
                    return False
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                self._logger.info("Circuit half-open: admitting one trial request")
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self, trial: bool = False) -> None:
        """
        Record a successful call. ``trial`` marks the call admitted through
        the half-open slot; any other success leaves an open or half-open
        circuit untouched.
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                return
            if self._state == CircuitState.HALF_OPEN:
                if not trial:
                    return
                self._logger.info("Circuit closed after successful trial request")
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._open("trial request failed")
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                self._open(f"{self._consecutive_failures} consecutive failures")

    def release_trial(self) -> None:
        """Give back an unused trial slot (the admitted call never reached the service)."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def _open(self, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._time()
        self._trial_in_flight = False
        self._logger.warning(
            f"Circuit opened ({reason}); blocking new requests for {self.cooldown_s:.1f}s"
        )
