"""Concurrency machinery: throttling, failure isolation and the slot pool."""

from .circuit_breaker import CircuitBreaker, CircuitState
from .governor import ConcurrencyGovernor, MemoryPressureProbe, Slot
from .rate_observer import RateObserver, RateSample

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "ConcurrencyGovernor",
    "MemoryPressureProbe",
    "Slot",
    "RateObserver",
    "RateSample",
]
