"""Core utilities and shared components for the compress pipeline."""

from .logging_config import (
    get_logger,
    set_debug_logging,
    setup_logger,
)
from .exceptions import (
    CompressPipelineError,
    ConfigurationError,
    ErrorInfo,
    FileSystemError,
    InvalidCredentialError,
    ItemValidationError,
    QuotaExceededError,
    TransientServiceError,
    classify_error,
    with_error_handling,
)
from .models import (
    BatchLimits,
    BatchResult,
    BestSelector,
    ConvertFormat,
    Credential,
    CredentialStatus,
    ErrorKind,
    FailureOutcome,
    ItemStage,
    KeepFormat,
    NamedSelector,
    ProcessingConfig,
    ResizeSpec,
    SkippedOutcome,
    SkipReason,
    SuccessOutcome,
    TransformOptions,
    WorkItem,
)
from .registry import CredentialRegistry, parse_selector

__all__ = [
    "ProcessingConfig",
    "WorkItem",
    "TransformOptions",
    "KeepFormat",
    "ConvertFormat",
    "ResizeSpec",
    "Credential",
    "CredentialStatus",
    "NamedSelector",
    "BestSelector",
    "ErrorKind",
    "ItemStage",
    "SkipReason",
    "SuccessOutcome",
    "FailureOutcome",
    "SkippedOutcome",
    "BatchLimits",
    "BatchResult",
    "CredentialRegistry",
    "parse_selector",
    "setup_logger",
    "get_logger",
    "set_debug_logging",
    "CompressPipelineError",
    "ConfigurationError",
    "ItemValidationError",
    "FileSystemError",
    "QuotaExceededError",
    "InvalidCredentialError",
    "TransientServiceError",
    "ErrorInfo",
    "classify_error",
    "with_error_handling",
]
