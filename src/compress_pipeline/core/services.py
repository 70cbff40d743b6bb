"""Item processing and batch orchestration services."""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Union

from .error_handling import BatchOperationContextManager, retry_transient
from .exceptions import (
    CompressPipelineError,
    ConfigurationError,
    FileSystemError,
    ItemValidationError,
    classify_error,
    file_system_errors,
)
from .fileops import (
    atomic_install,
    backup_file,
    create_backup_directory,
    discard,
    validate_file_for_processing,
    write_temp_file,
)
from .image_utils import (
    calculate_resize_dimensions,
    generate_output_path,
    get_image_dimensions,
    resize_request,
)
from .models import (
    BackupResult,
    BatchLimits,
    BatchResult,
    Credential,
    CredentialSelector,
    CredentialStatus,
    ErrorKind,
    FailureOutcome,
    ItemStage,
    NotFound,
    ProcessingConfig,
    SkippedOutcome,
    SkipReason,
    SuccessOutcome,
    TransformResult,
    WorkItem,
)
from .observability import LogContext, MetricsCollector, PerformanceMetrics, ProgressTracker
from .protocols import LoggerProtocol, TransformClientProtocol
from .registry import CredentialRegistry, parse_selector

if TYPE_CHECKING:
    from ..processors.circuit_breaker import CircuitBreaker
    from ..processors.governor import ConcurrencyGovernor, Slot
    from ..processors.rate_observer import RateObserver

ItemOutcome = Union[SuccessOutcome, FailureOutcome]

# Kinds that say something about the health of the remote service.
SERVICE_HEALTH_KINDS = (ErrorKind.TRANSIENT, ErrorKind.UNKNOWN)
TRANSFORM_OPERATION = "transform"


@dataclass
class ProcessingContext:
    """Context for one item's trip through the safety protocol."""

    correlation_id: str
    start_time: float = field(default_factory=time.time)
    log_context: LogContext = field(default_factory=LogContext)
    backup: Optional[BackupResult] = None
    attempts: int = 0
    trial: bool = False


class ItemProcessingService:
    """
    Runs one item through validate -> back up -> transform -> install.

    Never raises for item-level problems: every exit is a
    :class:`SuccessOutcome` or a :class:`FailureOutcome` naming the stage
    reached. The source file is only removed after its backup exists and the
    result has been installed at a different path.
    """

    def __init__(
        self,
        client: TransformClientProtocol,
        config: ProcessingConfig,
        logger: LoggerProtocol,
        rate_observer: Optional["RateObserver"] = None,
        circuit_breaker: Optional["CircuitBreaker"] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        sleep=asyncio.sleep,
    ):
        self._client = client
        self._config = config
        self._logger = logger
        self._observer = rate_observer
        self._breaker = circuit_breaker
        self._metrics = metrics_collector
        self._sleep = sleep
        self._backup_dirs: Dict[Path, Path] = {}

    @property
    def metrics(self) -> Optional[MetricsCollector]:
        return self._metrics

    async def process_item(
        self, index: int, item: WorkItem, credential: Credential, trial: bool = False
    ) -> ItemOutcome:
        """Run one item; ``trial`` is set when its slot holds the half-open circuit trial."""
        path = Path(item.source_path)
        correlation_id = f"item_{index}_{int(time.time() * 1000)}"
        context = ProcessingContext(
            correlation_id=correlation_id,
            trial=trial,
            log_context=LogContext(
                correlation_id=correlation_id,
                operation="process_item",
                component="item_processing_service",
            ).with_metadata(source=str(path), credential=credential.name),
        )

        # Validate
        problems = validate_file_for_processing(path, self._config.max_file_size_bytes)
        if problems:
            return self._failure(
                index, path, ItemValidationError(path, problems), ItemStage.VALIDATED, credential, context
            )

        destination = generate_output_path(path, item.options.format_target)
        conflict = self._destination_conflict(path, destination)
        if conflict is not None:
            return self._failure(index, path, conflict, ItemStage.VALIDATED, credential, context)

        # Back up
        try:
            context.backup = self._back_up(path)
        except CompressPipelineError as exc:
            return self._failure(index, path, exc, ItemStage.VALIDATED, credential, context)
        self._logger.debug(
            "Backup ready",
            context.log_context.with_operation("backup"),
            backup=str(context.backup.path),
            action=context.backup.action.value,
        )

        # Transform
        try:
            with file_system_errors("reading source"):
                data = path.read_bytes()
            resize = self._resize_payload(path, item, context)
            result = await self._transform(data, item, credential, resize, context)
        except Exception as exc:
            return self._failure(index, path, exc, ItemStage.BACKED_UP, credential, context)

        # Install
        temp_path: Optional[Path] = None
        try:
            conflict = self._destination_conflict(path, destination)
            if conflict is not None:
                raise conflict
            temp_path = write_temp_file(path, result.data)
            atomic_install(temp_path, destination)
        except CompressPipelineError as exc:
            if temp_path is not None:
                discard(temp_path)
            return self._failure(index, path, exc, ItemStage.TRANSFORMED, credential, context)

        if destination != path:
            try:
                path.unlink()
            except OSError as exc:
                self._logger.warning(
                    f"Installed {destination.name} but could not remove the original: {exc}",
                    context.log_context.with_operation("install"),
                )

        elapsed = time.time() - context.start_time
        self._logger.debug(
            "Item installed",
            context.log_context.with_operation("install"),
            destination=str(destination),
            original_size=len(data),
            result_size=len(result.data),
            elapsed_ms=round(elapsed * 1000),
        )
        return SuccessOutcome(
            index=index,
            source_path=path,
            result_path=destination,
            original_size=len(data),
            result_size=len(result.data),
            elapsed=elapsed,
            usage_count=result.usage_count,
            credential_name=credential.name,
            backup=context.backup,
            attempts=context.attempts,
        )

    @staticmethod
    def _destination_conflict(path: Path, destination: Path) -> Optional[FileSystemError]:
        if destination != path and destination.exists():
            return FileSystemError(
                f"Converting {path.name} would overwrite existing file {destination.name}"
            )
        return None

    def _back_up(self, path: Path) -> BackupResult:
        parent = path.parent
        backup_dir = self._backup_dirs.get(parent)
        if backup_dir is None:
            backup_dir = create_backup_directory(parent, self._config.backup_directory_name)
            self._backup_dirs[parent] = backup_dir
        return backup_file(path, backup_dir)

    def _resize_payload(
        self, path: Path, item: WorkItem, context: ProcessingContext
    ) -> Optional[Dict[str, Any]]:
        resize_spec = item.options.resize
        if resize_spec is None:
            return None
        dimensions = get_image_dimensions(path)
        if dimensions is None:
            self._logger.warning(
                "Could not read image dimensions, skipping resize",
                context.log_context.with_operation("resize"),
            )
            return None
        return resize_request(calculate_resize_dimensions(dimensions[0], dimensions[1], resize_spec))

    def _allow_retry(self, attempt: int, delay: float, error: BaseException) -> bool:
        return self._breaker is None or not self._breaker.should_block()

    async def _transform(
        self,
        data: bytes,
        item: WorkItem,
        credential: Credential,
        resize: Optional[Dict[str, Any]],
        context: ProcessingContext,
    ) -> TransformResult:
        config = self._config
        log_context = context.log_context.with_operation(TRANSFORM_OPERATION)

        @retry_transient(
            max_attempts=config.retry_attempts,
            initial_delay=config.retry_initial_delay_s,
            backoff_factor=config.retry_backoff_factor,
            sleep=self._sleep,
            before_retry=self._allow_retry,
        )
        async def call() -> TransformResult:
            context.attempts += 1
            started = time.time()
            try:
                result = await asyncio.wait_for(
                    self._client.transform(
                        data,
                        item.options,
                        credential.token,
                        timeout=config.request_timeout_s,
                        resize=resize,
                    ),
                    timeout=config.request_timeout_s,
                )
            except Exception as exc:
                self._observe(started, exc, context.trial)
                raise
            self._observe(started, None, context.trial)
            return result

        self._logger.debug("Sending to remote service", log_context, size=len(data), resize=resize)
        return await call()

    def _observe(self, started: float, error: Optional[BaseException], trial: bool = False) -> None:
        ended = time.time()
        latency_ms = (ended - started) * 1000

        if error is None:
            if self._observer is not None:
                self._observer.record_success(latency_ms)
            if self._breaker is not None:
                self._breaker.record_success(trial=trial)
        elif classify_error(error).kind in SERVICE_HEALTH_KINDS:
            if self._observer is not None:
                self._observer.record_failure(latency_ms)
            if self._breaker is not None:
                self._breaker.record_failure()

        if self._metrics is not None:
            self._metrics.record_metric(
                PerformanceMetrics(
                    operation=TRANSFORM_OPERATION,
                    start_time=started,
                    end_time=ended,
                    success=error is None,
                    error_message=str(error) if error is not None else None,
                )
            )

    def _failure(
        self,
        index: int,
        path: Path,
        error: BaseException,
        stage: ItemStage,
        credential: Credential,
        context: ProcessingContext,
    ) -> FailureOutcome:
        info = classify_error(error)
        self._logger.error(
            f"Item failed after {stage.value}: {info.message}",
            context.log_context.with_metadata(kind=info.kind.value),
        )
        return FailureOutcome(
            index=index,
            source_path=path,
            error_kind=info.kind,
            message=info.message,
            suggestion=info.suggestion,
            stage=stage,
            credential_name=credential.name,
            backup=context.backup,
            attempts=context.attempts,
        )


@dataclass
class _RunState:
    """Mutable dispatch state of one :meth:`BatchOrchestrator.run` call."""

    credential_name: str
    selector: CredentialSelector
    limits: BatchLimits
    outcomes: List[Any] = field(default_factory=list)
    reserved: int = 0
    dispatched: int = 0
    failures: int = 0
    stop_reason: Optional[SkipReason] = None


class BatchOrchestrator:
    """
    Drives a list of work items through the item processor.

    Items are dispatched in order, in chunks of ``max_concurrent *
    chunk_multiplier``; each chunk drains before the next starts. Every
    dispatch reserves one unit of the active credential's remaining quota,
    so dispatch stops exactly when the reserved plus confirmed usage would
    exceed the limit. Items never dispatched are reported as skipped with
    the reason dispatch stopped. In-flight items always finish.
    """

    def __init__(
        self,
        registry: CredentialRegistry,
        item_service: ItemProcessingService,
        governor: "ConcurrencyGovernor",
        config: ProcessingConfig,
        logger: LoggerProtocol,
        progress: Optional[ProgressTracker] = None,
        rate_observer: Optional["RateObserver"] = None,
    ):
        self._registry = registry
        self._item_service = item_service
        self._governor = governor
        self._config = config
        self._logger = logger
        self._progress = progress or ProgressTracker()
        self._observer = rate_observer

    @property
    def registry(self) -> CredentialRegistry:
        return self._registry

    @property
    def governor(self) -> "ConcurrencyGovernor":
        return self._governor

    @property
    def progress(self) -> ProgressTracker:
        return self._progress

    async def run(
        self,
        items: Sequence[WorkItem],
        credential: Union[str, CredentialSelector, None] = None,
        limits: Optional[BatchLimits] = None,
        now: Optional[date] = None,
    ) -> BatchResult:
        """Process ``items`` with the selected credential and return the aggregate."""
        start_time = time.time()
        selector = parse_selector(credential)
        limits = limits or BatchLimits()
        self._registry.reset_all_if_new_period(now)
        self._progress.start(len(items))

        if not items:
            self._logger.info("No items to process")
            return self._build_result([], 0, start_time, None)

        selection = self._registry.select(selector, required_units=1, now=now)
        if isinstance(selection, NotFound):
            raise ConfigurationError(
                f"Credential '{selection.name}' not found. "
                f"Available: {', '.join(selection.known_names) or 'none'}"
            )
        if not isinstance(selection, Credential):
            reason = self._unavailable_reason(selector)
            self._logger.warning(
                f"No credential can process items ({reason.value}); skipping {len(items)} items"
            )
            skipped = self._skip_from(items, 0, reason)
            return self._build_result(skipped, len(items), start_time, reason)

        state = _RunState(credential_name=selection.name, selector=selector, limits=limits)
        condition = asyncio.Condition()
        chunk_size = self._config.chunk_size
        self._logger.info(
            f"Processing {len(items)} items with credential '{selection.name}' "
            f"({self._registry.remaining(selection.name)} remaining, "
            f"max {self._governor.limit} concurrent, chunks of {chunk_size})"
        )

        with BatchOperationContextManager("batch compression", logger=self._logger) as batch_ops:
            for chunk_start in range(0, len(items), chunk_size):
                chunk = items[chunk_start : chunk_start + chunk_size]
                tasks: List[asyncio.Task] = []
                try:
                    for offset, item in enumerate(chunk):
                        index = chunk_start + offset
                        slot = await self._governor.acquire()
                        active = await self._reserve(state, condition)
                        if active is None:
                            self._governor.release(slot)
                            break
                        state.dispatched += 1
                        tasks.append(
                            asyncio.create_task(
                                self._run_item(index, item, active, slot, state, condition, batch_ops)
                            )
                        )
                finally:
                    if tasks:
                        await asyncio.gather(*tasks)

                if state.stop_reason is not None:
                    break

                self._logger.debug(
                    f"Chunk {chunk_start // chunk_size + 1} finished",
                    None,
                    dispatched=state.dispatched,
                    failures=state.failures,
                )

            if state.stop_reason is not None:
                skipped = self._skip_from(items, state.dispatched, state.stop_reason)
                state.outcomes.extend(skipped)
                self._logger.warning(
                    f"Dispatch stopped ({state.stop_reason.value}); {len(skipped)} items skipped"
                )

        return self._build_result(state.outcomes, len(items), start_time, state.stop_reason)

    def _unavailable_reason(self, selector: CredentialSelector) -> SkipReason:
        name = getattr(selector, "name", None)
        if name is not None and self._registry.get(name).status == CredentialStatus.INVALID:
            return SkipReason.INVALID_CREDENTIAL
        return SkipReason.QUOTA_EXCEEDED

    def _limit_reached(self, state: _RunState) -> bool:
        limits = state.limits
        if limits.max_items is not None and state.dispatched >= limits.max_items:
            return True
        return limits.max_failures is not None and state.failures >= limits.max_failures

    async def _reserve(
        self, state: _RunState, condition: asyncio.Condition
    ) -> Optional[Credential]:
        """
        Reserve one unit of quota for the next item.

        Waits while the remaining capacity is fully reserved by in-flight
        items. Returns None (with ``state.stop_reason`` set) once nothing more
        may be dispatched.
        """
        async with condition:
            while True:
                if state.stop_reason is not None:
                    return None
                if self._limit_reached(state):
                    state.stop_reason = SkipReason.LIMIT_REACHED
                    return None

                current = self._registry.get(state.credential_name)
                available = self._registry.remaining(current.name) - state.reserved
                if current.status == CredentialStatus.ACTIVE and available >= 1:
                    state.reserved += 1
                    return current
                if state.reserved > 0:
                    await condition.wait()
                    continue
                if self._fail_over(state):
                    continue

                state.stop_reason = (
                    SkipReason.INVALID_CREDENTIAL
                    if current.status == CredentialStatus.INVALID
                    else SkipReason.QUOTA_EXCEEDED
                )
                return None

    def _fail_over(self, state: _RunState) -> bool:
        if not self._config.credential_failover or getattr(state.selector, "kind", None) != "best":
            return False
        selection = self._registry.select_best(required_units=1)
        if not isinstance(selection, Credential):
            return False
        self._logger.warning(
            f"Credential '{state.credential_name}' can no longer be used; "
            f"switching to '{selection.name}' ({selection.remaining} remaining)"
        )
        state.credential_name = selection.name
        return True

    async def _run_item(
        self,
        index: int,
        item: WorkItem,
        credential: Credential,
        slot: "Slot",
        state: _RunState,
        condition: asyncio.Condition,
        batch_ops: BatchOperationContextManager,
    ) -> None:
        try:
            await self._governor.throttle()
            outcome = await self._item_service.process_item(index, item, credential, trial=slot.trial)
        except Exception as exc:
            self._logger.error(f"Unexpected error processing {item.source_path}: {exc}")
            info = classify_error(exc)
            outcome = FailureOutcome(
                index=index,
                source_path=item.source_path,
                error_kind=info.kind,
                message=info.message,
                suggestion=info.suggestion,
                credential_name=credential.name,
            )
        finally:
            self._governor.release(slot)

        async with condition:
            state.reserved -= 1
            self._apply(outcome, state, batch_ops)
            condition.notify_all()

    def _apply(
        self,
        outcome: ItemOutcome,
        state: _RunState,
        batch_ops: BatchOperationContextManager,
    ) -> None:
        state.outcomes.append(outcome)

        if isinstance(outcome, SuccessOutcome):
            self._registry.record_usage(outcome.credential_name, outcome.usage_count)
            self._progress.record_success(outcome.savings)
            self._logger.debug(
                f"Usage for '{outcome.credential_name}' is now {outcome.usage_count}",
                None,
                index=outcome.index,
            )
            return

        state.failures += 1
        self._progress.record_failure()
        batch_ops.add_error(outcome.message, str(outcome.source_path))

        if outcome.credential_name is None:
            return
        if outcome.error_kind == ErrorKind.QUOTA_EXCEEDED:
            self._registry.mark_exhausted(outcome.credential_name)
        elif outcome.error_kind == ErrorKind.INVALID_CREDENTIAL:
            self._registry.mark_invalid(outcome.credential_name)

    def _skip_from(
        self, items: Sequence[WorkItem], start: int, reason: SkipReason
    ) -> List[SkippedOutcome]:
        skipped = [
            SkippedOutcome(index=index, source_path=items[index].source_path, reason=reason)
            for index in range(start, len(items))
        ]
        if skipped:
            self._progress.record_skipped(len(skipped))
        return skipped

    def _build_result(
        self,
        outcomes: List[Any],
        total_items: int,
        start_time: float,
        stop_reason: Optional[SkipReason],
    ) -> BatchResult:
        successes = [o for o in outcomes if isinstance(o, SuccessOutcome)]
        backups = Counter(
            o.backup.action.value
            for o in outcomes
            if isinstance(o, (SuccessOutcome, FailureOutcome)) and o.backup is not None
        )

        summary: Dict[str, Any] = {}
        metrics = self._item_service.metrics
        if metrics is not None:
            summary = metrics.get_summary(TRANSFORM_OPERATION)
        average_ms = 0.0
        if self._observer is not None:
            average_ms = self._observer.average_latency_ms(window_s=None)
        elif summary:
            average_ms = summary["avg_duration"] * 1000

        return BatchResult(
            outcomes=outcomes,
            total_items=total_items,
            total_original_size=sum(o.original_size for o in successes),
            total_result_size=sum(o.result_size for o in successes),
            duration=time.time() - start_time,
            peak_concurrency=self._governor.peak,
            average_concurrency=self._governor.average_concurrency,
            average_response_ms=average_ms,
            total_requests=summary.get("total_operations", 0),
            max_concurrent=self._governor.limit,
            final_usage={c.name: c.used_count for c in self._registry.all()},
            backups=dict(backups),
            aborted=stop_reason is not None,
            stop_reason=stop_reason,
        )
