"""Observability utilities for logging, metrics, and progress reporting."""

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Optional
from dataclasses import dataclass, field
from enum import Enum


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class LogContext:
    """Context information for structured logging."""

    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    operation: str = ""
    component: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    def with_operation(self, operation: str) -> "LogContext":
        """Create new context with operation set."""
        return LogContext(
            correlation_id=self.correlation_id,
            operation=operation,
            component=self.component,
            metadata=self.metadata.copy(),
        )

    def with_metadata(self, **kwargs) -> "LogContext":
        """Create new context with additional metadata."""
        new_metadata = self.metadata.copy()
        new_metadata.update(kwargs)
        return LogContext(
            correlation_id=self.correlation_id,
            operation=self.operation,
            component=self.component,
            metadata=new_metadata,
        )


class StructuredLogger:
    """Structured logger with context support."""

    def __init__(self, name: str, level: int = logging.INFO):
        self._logger = logging.getLogger(name)
        self._logger.setLevel(level)

        if not self._logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
            handler.setFormatter(formatter)
            self._logger.addHandler(handler)

    def _log(
        self,
        level: LogLevel,
        message: str,
        context: Optional[LogContext] = None,
        **kwargs,
    ):
        """Internal logging method with context support."""
        if context:
            formatted_message = f"[{context.correlation_id}] {message}"
            if context.operation:
                formatted_message = f"[{context.operation}] {formatted_message}"

            if context.metadata or kwargs:
                metadata_str = ", ".join(
                    f"{k}={v}" for k, v in {**context.metadata, **kwargs}.items()
                )
                formatted_message = f"{formatted_message} ({metadata_str})"
        elif kwargs:
            metadata_str = ", ".join(f"{k}={v}" for k, v in kwargs.items())
            formatted_message = f"{message} ({metadata_str})"
        else:
            formatted_message = message

        getattr(self._logger, level.value.lower())(formatted_message)

    def debug(self, message: str, context: Optional[LogContext] = None, **kwargs):
        """Log debug message."""
        self._log(LogLevel.DEBUG, message, context, **kwargs)

    def info(self, message: str, context: Optional[LogContext] = None, **kwargs):
        """Log info message."""
        self._log(LogLevel.INFO, message, context, **kwargs)

    def warning(self, message: str, context: Optional[LogContext] = None, **kwargs):
        """Log warning message."""
        self._log(LogLevel.WARNING, message, context, **kwargs)

    def error(self, message: str, context: Optional[LogContext] = None, **kwargs):
        """Log error message."""
        self._log(LogLevel.ERROR, message, context, **kwargs)


@dataclass
class PerformanceMetrics:
    """Performance metrics for one remote call."""

    operation: str
    start_time: float
    end_time: float
    success: bool
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> float:
        """Calculate operation duration in seconds."""
        return self.end_time - self.start_time

    @property
    def duration_ms(self) -> float:
        """Calculate operation duration in milliseconds."""
        return self.duration * 1000


class MetricsCollector:
    """Collector for performance metrics."""

    def __init__(self, max_entries: int = 1000):
        self._metrics: list[PerformanceMetrics] = []
        self._max_entries = max_entries

    def record_metric(self, metric: PerformanceMetrics):
        """Record a performance metric, dropping the oldest past the cap."""
        self._metrics.append(metric)
        if len(self._metrics) > self._max_entries:
            del self._metrics[0]

    def get_metrics(self, operation: Optional[str] = None) -> list[PerformanceMetrics]:
        """Get recorded metrics, optionally filtered by operation."""
        if operation:
            return [m for m in self._metrics if m.operation == operation]
        return self._metrics.copy()

    def get_summary(self, operation: Optional[str] = None) -> Dict[str, Any]:
        """Get summary statistics for metrics."""
        metrics = self.get_metrics(operation)

        if not metrics:
            return {}

        durations = [m.duration for m in metrics]
        successful = [m for m in metrics if m.success]
        failed = [m for m in metrics if not m.success]

        return {
            "total_operations": len(metrics),
            "successful_operations": len(successful),
            "failed_operations": len(failed),
            "success_rate": len(successful) / len(metrics),
            "avg_duration": sum(durations) / len(durations),
            "min_duration": min(durations),
            "max_duration": max(durations),
            "total_duration": sum(durations),
        }

    def clear_metrics(self):
        """Clear all recorded metrics."""
        self._metrics.clear()


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of a running batch for the reporting layer."""

    total: int
    processed: int
    successful: int
    failed: int
    skipped: int
    savings_bytes: int
    current_concurrency: int
    throughput: float
    eta_seconds: Optional[float]

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return round((self.processed + self.skipped) / self.total * 100, 1)


ProgressCallback = Callable[[ProgressSnapshot], None]


class ProgressTracker:
    """Observable counter set updated by the orchestrator.

    Readers poll :meth:`snapshot`; an optional callback receives every new
    snapshot as it is produced.
    """

    def __init__(
        self,
        on_progress: Optional[ProgressCallback] = None,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self._on_progress = on_progress
        self._time = time_fn
        self._lock = threading.Lock()
        self._total = 0
        self._processed = 0
        self._successful = 0
        self._failed = 0
        self._skipped = 0
        self._savings = 0
        self._concurrency = 0
        self._started_at: Optional[float] = None

    def start(self, total: int) -> None:
        with self._lock:
            self._total = total
            self._processed = self._successful = self._failed = self._skipped = 0
            self._savings = 0
            self._started_at = self._time()
        self._publish()

    def record_success(self, savings: int) -> None:
        with self._lock:
            self._processed += 1
            self._successful += 1
            self._savings += savings
        self._publish()

    def record_failure(self) -> None:
        with self._lock:
            self._processed += 1
            self._failed += 1
        self._publish()

    def record_skipped(self, count: int = 1) -> None:
        with self._lock:
            self._skipped += count
        self._publish()

    def set_concurrency(self, current: int) -> None:
        with self._lock:
            self._concurrency = current

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            elapsed = self._time() - self._started_at if self._started_at is not None else 0.0
            throughput = self._processed / elapsed if elapsed > 0 else 0.0
            remaining = self._total - self._processed - self._skipped
            eta = remaining / throughput if throughput > 0 else None
            return ProgressSnapshot(
                total=self._total,
                processed=self._processed,
                successful=self._successful,
                failed=self._failed,
                skipped=self._skipped,
                savings_bytes=self._savings,
                current_concurrency=self._concurrency,
                throughput=throughput,
                eta_seconds=eta,
            )

    def _publish(self) -> None:
        if self._on_progress is not None:
            self._on_progress(self.snapshot())
