"""Shared data models for the compress pipeline."""

from datetime import date
from enum import Enum
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

SUPPORTED_FORMATS = ("png", "jpg", "jpeg", "webp", "avif")
SUPPORTED_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".avif")
FORMAT_EXTENSIONS = {
    "png": ".png",
    "jpg": ".jpg",
    "jpeg": ".jpg",
    "webp": ".webp",
    "avif": ".avif",
}
FORMAT_MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "avif": "image/avif",
}
DEFAULT_MONTHLY_LIMIT = 500


class ProcessingConfig(BaseModel):
    """Tunables for a batch run, passed explicitly to every component."""

    max_concurrent: int = Field(default=3, ge=1, le=20)
    base_delay_ms: float = Field(default=100.0, ge=0)
    max_delay_ms: float = Field(default=2000.0, ge=0)
    adaptive_throttling: bool = True
    retry_attempts: int = Field(default=3, ge=1)
    retry_initial_delay_s: float = Field(default=1.0, ge=0)
    retry_backoff_factor: float = Field(default=2.0, ge=1)
    request_timeout_s: float = Field(default=60.0, gt=0)
    failure_threshold: int = Field(default=5, ge=1)
    circuit_cooldown_s: float = Field(default=30.0, ge=0)
    chunk_multiplier: int = Field(default=10, ge=1)
    max_file_size_bytes: int = Field(default=500 * 1024 * 1024, gt=0)
    backup_directory_name: str = "original"
    memory_limit_mb: Optional[int] = Field(default=None, gt=0)
    credential_failover: bool = False
    debug: bool = False

    @property
    def chunk_size(self) -> int:
        return self.max_concurrent * self.chunk_multiplier


# --- Transform options -----------------------------------------------------


class KeepFormat(BaseModel):
    """Keep the source file's format."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["keep"] = "keep"


class ConvertFormat(BaseModel):
    """Convert the source file to another format."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["convert"] = "convert"
    format: str

    @field_validator("format")
    @classmethod
    def _check_format(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in SUPPORTED_FORMATS:
            raise ValueError(
                f"Unsupported format: {value}. "
                f"Supported formats: {', '.join(SUPPORTED_FORMATS)}"
            )
        return normalized

    @property
    def extension(self) -> str:
        return FORMAT_EXTENSIONS[self.format]

    @property
    def mime_type(self) -> str:
        return FORMAT_MIME_TYPES[self.format]


FormatTarget = Annotated[Union[KeepFormat, ConvertFormat], Field(discriminator="kind")]


class ResizeSpec(BaseModel):
    """Downscale so the chosen side does not exceed ``max_size`` pixels."""

    model_config = ConfigDict(frozen=True)

    max_size: int = Field(gt=0)
    side: Literal["auto", "width", "height"] = "auto"


class ResizeDimensions(BaseModel):
    """Target dimensions computed from a :class:`ResizeSpec` and a source size."""

    model_config = ConfigDict(frozen=True)

    width: int
    height: int
    scale_factor: float
    primary_dimension: Literal["width", "height"]


class TransformOptions(BaseModel):
    """Options sent to the remote service, applied convert -> resize -> preserve."""

    model_config = ConfigDict(frozen=True)

    format_target: FormatTarget = Field(default_factory=KeepFormat)
    resize: Optional[ResizeSpec] = None
    preserve_metadata: bool = False
    background: Optional[str] = None


class WorkItem(BaseModel):
    """One source file plus the transform requested for it."""

    model_config = ConfigDict(frozen=True)

    source_path: Path
    size: int = 0
    options: TransformOptions = Field(default_factory=TransformOptions)


# --- Credentials -------------------------------------------------------------


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    INVALID = "invalid"


class Credential(BaseModel):
    """A named API token metered against a monthly quota.

    Instances are immutable snapshots; the credential registry replaces them
    whenever usage or status changes.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(pattern=r"^[a-zA-Z0-9_-]{1,50}$")
    token: str = Field(repr=False)
    email: Optional[str] = None
    used_count: int = Field(default=0, ge=0)
    limit: int = Field(default=DEFAULT_MONTHLY_LIMIT, gt=0)
    status: CredentialStatus = CredentialStatus.ACTIVE
    last_reset: date = Field(default_factory=date.today)

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used_count)

    @property
    def is_usable(self) -> bool:
        return self.status == CredentialStatus.ACTIVE and self.remaining > 0


class NamedSelector(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["named"] = "named"
    name: str


class BestSelector(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["best"] = "best"


CredentialSelector = Annotated[
    Union[NamedSelector, BestSelector], Field(discriminator="kind")
]


class CapacityRow(BaseModel):
    """Remaining capacity of one credential, for reporting."""

    name: str
    used: int
    limit: int
    remaining: int
    status: CredentialStatus


class NotAvailable(BaseModel):
    """No credential can satisfy the requested number of units."""

    required_units: int
    capacities: List[CapacityRow] = Field(default_factory=list)

    @property
    def total_remaining(self) -> int:
        return sum(row.remaining for row in self.capacities)


class NotFound(BaseModel):
    """No credential is registered under the requested name."""

    name: str
    known_names: List[str] = Field(default_factory=list)


class InsufficientCapacity(BaseModel):
    """The named credential exists but cannot cover the requested units."""

    name: str
    required_units: int
    remaining: int


# --- Outcomes ------------------------------------------------------------------


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    INVALID_INPUT = "invalid_input"
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_CREDENTIAL = "invalid_credential"
    TRANSIENT = "transient"
    FILE_SYSTEM = "file_system"
    UNKNOWN = "unknown"


class ItemStage(str, Enum):
    """Last stage an item reached before it failed."""

    VALIDATED = "validated"
    BACKED_UP = "backed_up"
    TRANSFORMED = "transformed"
    INSTALLED = "installed"


class SkipReason(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    INVALID_CREDENTIAL = "invalid_credential"
    LIMIT_REACHED = "limit_reached"


class BackupAction(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    VERSIONED = "versioned"


class BackupResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: Path
    action: BackupAction


class SuccessOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    index: int
    source_path: Path
    result_path: Path
    original_size: int
    result_size: int
    elapsed: float
    usage_count: int
    credential_name: str
    backup: Optional[BackupResult] = None
    attempts: int = 1

    @property
    def savings(self) -> int:
        return self.original_size - self.result_size

    @property
    def compression_ratio(self) -> float:
        if self.original_size == 0:
            return 0.0
        return round(self.savings / self.original_size * 100, 2)


class FailureOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["failure"] = "failure"
    index: int
    source_path: Path
    error_kind: ErrorKind
    message: str
    suggestion: str = ""
    stage: ItemStage = ItemStage.VALIDATED
    credential_name: Optional[str] = None
    backup: Optional[BackupResult] = None
    attempts: int = 0


class SkippedOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["skipped"] = "skipped"
    index: int
    source_path: Path
    reason: SkipReason


ProcessingOutcome = Annotated[
    Union[SuccessOutcome, FailureOutcome, SkippedOutcome],
    Field(discriminator="status"),
]


class BatchLimits(BaseModel):
    """Operator caps that stop new dispatch once reached."""

    max_items: Optional[int] = Field(default=None, ge=0)
    max_failures: Optional[int] = Field(default=None, ge=1)


class BatchResult(BaseModel):
    """Aggregate of every outcome of one batch run.

    ``outcomes`` is kept in completion order; skipped items are appended in
    dispatch order once dispatch stops.
    """

    outcomes: List[ProcessingOutcome] = Field(default_factory=list)
    total_items: int = 0
    total_original_size: int = 0
    total_result_size: int = 0
    duration: float = 0.0
    peak_concurrency: int = 0
    average_concurrency: float = 0.0
    average_response_ms: float = 0.0
    total_requests: int = 0
    max_concurrent: int = 0
    final_usage: Dict[str, int] = Field(default_factory=dict)
    backups: Dict[str, int] = Field(default_factory=dict)
    aborted: bool = False
    stop_reason: Optional[SkipReason] = None

    @property
    def successful(self) -> List[SuccessOutcome]:
        return [o for o in self.outcomes if isinstance(o, SuccessOutcome)]

    @property
    def failed(self) -> List[FailureOutcome]:
        return [o for o in self.outcomes if isinstance(o, FailureOutcome)]

    @property
    def skipped(self) -> List[SkippedOutcome]:
        return [o for o in self.outcomes if isinstance(o, SkippedOutcome)]

    @property
    def total_savings(self) -> int:
        return self.total_original_size - self.total_result_size


class TransformResult(BaseModel):
    """Bytes returned by the remote service plus its usage counter."""

    data: bytes
    usage_count: int
