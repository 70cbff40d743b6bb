"""Protocol definitions for dependency injection and testability."""

from typing import Any, Dict, Optional, Protocol

from .models import TransformOptions, TransformResult


class TransformClientProtocol(Protocol):
    """Protocol for the remote transform service."""

    async def transform(
        self,
        data: bytes,
        options: TransformOptions,
        token: str,
        timeout: Optional[float] = None,
        resize: Optional[Dict[str, Any]] = None,
    ) -> TransformResult:
        """Send image bytes, receive transformed bytes and the usage counter."""
        ...

    async def validate(self, token: str) -> int:
        """Check a token and return its current usage counter."""
        ...


class BackpressureProbe(Protocol):
    """Out-of-band signal that new remote calls should wait."""

    def __call__(self) -> bool:
        ...


class LoggerProtocol(Protocol):
    """Protocol for logging operations."""

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log debug message."""
        ...

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log info message."""
        ...

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log warning message."""
        ...

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        """Log error message."""
        ...
