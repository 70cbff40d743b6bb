"""Custom exceptions and error classification for the compress pipeline."""

from __future__ import annotations

import asyncio
import errno
from contextlib import contextmanager
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from .logging_config import get_logger
from .models import ErrorKind


class CompressPipelineError(Exception):
    """Base exception for all compress pipeline errors."""


class ConfigurationError(CompressPipelineError):
    """Error raised for invalid configuration or credential store contents."""


class ItemValidationError(CompressPipelineError):
    """Error raised when a source file is not fit for processing."""

    def __init__(self, path: Any, problems: list[str]):
        self.path = path
        self.problems = problems
        super().__init__("; ".join(problems) or f"Invalid file: {path}")


class FileSystemError(CompressPipelineError):
    """Error raised when a local file operation fails."""


class TransientServiceError(CompressPipelineError):
    """Error raised when a retryable remote failure exhausted its attempts."""


# Remote service boundary. Raised by transform clients, classified below.


class ServiceError(CompressPipelineError):
    """Base class for errors reported by the remote transform service."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class AccountError(ServiceError):
    """The credential is invalid or its quota is used up."""


class QuotaExceededError(AccountError):
    """The credential has no remaining monthly capacity (HTTP 429)."""


class InvalidCredentialError(AccountError):
    """The service rejected the credential (HTTP 401)."""


class ClientError(ServiceError):
    """The service rejected the input."""


class ServerError(ServiceError):
    """The service failed internally."""


class ServiceConnectionError(ServiceError):
    """The service could not be reached or did not answer in time."""


@dataclass(frozen=True)
class ErrorInfo:
    """Classified error with enough context for a reporting layer."""

    kind: ErrorKind
    message: str
    suggestion: str

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.TRANSIENT, ErrorKind.UNKNOWN)


_FILE_SYSTEM_SUGGESTIONS = {
    errno.ENOENT: "Check that the file path is correct and the file exists.",
    errno.EACCES: "Check file permissions or run with appropriate privileges.",
    errno.EPERM: "Check file permissions or run with appropriate privileges.",
    errno.ENOSPC: "Free up disk space and try again.",
    errno.EMFILE: "Close other applications and try again.",
    errno.ENFILE: "Close other applications and try again.",
}


def _is_quota_error(exc: AccountError) -> bool:
    message = str(exc).lower()
    return exc.status == 429 or "limit" in message or "exceed" in message


def classify_error(exc: BaseException) -> ErrorInfo:
    """Map an exception onto the closed :class:`ErrorKind` taxonomy."""
    if isinstance(exc, ItemValidationError):
        return ErrorInfo(
            ErrorKind.VALIDATION,
            str(exc),
            "Ensure the file is a readable PNG, JPEG, WebP or AVIF image.",
        )
    if isinstance(exc, QuotaExceededError):
        return ErrorInfo(
            ErrorKind.QUOTA_EXCEEDED,
            f"Monthly limit reached: {exc}",
            "Use a different credential or wait until the next billing month.",
        )
    if isinstance(exc, InvalidCredentialError):
        return ErrorInfo(
            ErrorKind.INVALID_CREDENTIAL,
            f"Credential is invalid or expired: {exc}",
            "Check the credential configuration with the 'check' command.",
        )
    if isinstance(exc, AccountError):
        if _is_quota_error(exc):
            return ErrorInfo(
                ErrorKind.QUOTA_EXCEEDED,
                f"Monthly limit reached: {exc}",
                "Use a different credential or wait until the next billing month.",
            )
        message = str(exc).lower()
        if exc.status == 401 or "credentials" in message or "key" in message:
            return ErrorInfo(
                ErrorKind.INVALID_CREDENTIAL,
                f"Credential is invalid or expired: {exc}",
                "Check the credential configuration with the 'check' command.",
            )
        return ErrorInfo(
            ErrorKind.INVALID_CREDENTIAL,
            f"Account error: {exc}",
            "Contact the service provider or check your account status.",
        )
    if isinstance(exc, ClientError):
        return ErrorInfo(
            ErrorKind.INVALID_INPUT,
            f"File format error: {exc}",
            "Ensure the file is a valid image in a supported format.",
        )
    if isinstance(exc, ServerError):
        return ErrorInfo(
            ErrorKind.TRANSIENT,
            f"Server error: {exc}",
            "This is a temporary issue. Please try again in a few minutes.",
        )
    if isinstance(exc, (ServiceConnectionError, asyncio.TimeoutError)):
        return ErrorInfo(
            ErrorKind.TRANSIENT,
            f"Network error: {exc or 'request timed out'}",
            "Check your internet connection and try again.",
        )
    if isinstance(exc, TransientServiceError):
        return ErrorInfo(
            ErrorKind.TRANSIENT,
            str(exc),
            "This is a temporary issue. Please try again in a few minutes.",
        )
    if isinstance(exc, FileSystemError):
        cause = exc.__cause__
        if isinstance(cause, OSError):
            return ErrorInfo(
                ErrorKind.FILE_SYSTEM,
                str(exc),
                _FILE_SYSTEM_SUGGESTIONS.get(
                    cause.errno or 0, "Check file paths and permissions."
                ),
            )
        return ErrorInfo(
            ErrorKind.FILE_SYSTEM, str(exc), "Check file paths and permissions."
        )
    if isinstance(exc, OSError):
        return ErrorInfo(
            ErrorKind.FILE_SYSTEM,
            f"File system error: {exc}",
            _FILE_SYSTEM_SUGGESTIONS.get(
                exc.errno or 0, "Check file paths and permissions."
            ),
        )
    return ErrorInfo(
        ErrorKind.UNKNOWN,
        str(exc) or type(exc).__name__,
        "If this issue persists, please check the documentation or file an issue.",
    )


F = TypeVar("F", bound=Callable[..., Any])


def with_error_handling(func: F) -> F:
    """Wrap a function with standardized error handling."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:  # type: ignore[override]
        logger = get_logger("processor")
        try:
            return func(*args, **kwargs)
        except CompressPipelineError:
            logger.error("Pipeline error", exc_info=True)
            raise
        except OSError as exc:
            logger.error(f"File system error in {func.__name__}: {exc}", exc_info=True)
            raise FileSystemError(f"{func.__name__} failed: {exc}") from exc

    return wrapper  # type: ignore[return-value]


@contextmanager
def file_system_errors(operation: str) -> Any:
    """Context manager translating ``OSError`` into :class:`FileSystemError`."""
    try:
        yield
    except CompressPipelineError:
        raise
    except OSError as exc:
        raise FileSystemError(f"{operation} failed: {exc}") from exc
