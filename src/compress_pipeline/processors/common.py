"""Logging helpers shared by the batch entry points and the CLI."""

from typing import Iterable, Optional

from ..core import BatchResult, ConvertFormat, ProcessingConfig, TransformOptions, get_logger
from ..core.image_utils import format_bytes
from ..core.models import CapacityRow
from ..core.observability import ProgressSnapshot


def describe_options(options: TransformOptions) -> str:
    parts = []
    if isinstance(options.format_target, ConvertFormat):
        parts.append(f"convert to {options.format_target.format}")
    if options.resize is not None:
        parts.append(f"resize {options.resize.side} <= {options.resize.max_size}px")
    if options.preserve_metadata:
        parts.append("preserve metadata")
    return ", ".join(parts) or "compress only"


def log_configuration(
    config: ProcessingConfig, options: TransformOptions, credential: str, item_count: int
) -> None:
    """Log processing configuration."""
    logger = get_logger("processor")
    logger.info("=" * 80)
    logger.info("BATCH IMAGE COMPRESSION")
    logger.info("=" * 80)
    logger.info(f"  Items:          {item_count}")
    logger.info(f"  Credential:     {credential}")
    logger.info(f"  Options:        {describe_options(options)}")
    logger.info(f"  Concurrency:    {config.max_concurrent} (chunks of {config.chunk_size})")
    throttling = "adaptive" if config.adaptive_throttling else "fixed"
    logger.info(f"  Throttling:     {throttling}, base {config.base_delay_ms:.0f}ms")
    logger.info(f"  Backups:        ./{config.backup_directory_name}/")
    logger.info("=" * 80)


def log_capacity_table(rows: Iterable[CapacityRow]) -> None:
    logger = get_logger("processor")
    logger.info(f"{'CREDENTIAL':<24} {'USED':>6} {'LIMIT':>6} {'REMAINING':>10}  STATUS")
    for row in rows:
        logger.info(
            f"{row.name:<24} {row.used:>6} {row.limit:>6} {row.remaining:>10}  {row.status.value}"
        )


def log_progress(snapshot: ProgressSnapshot) -> None:
    """Progress callback suitable for ``on_progress``."""
    eta = f"{snapshot.eta_seconds:.0f}s" if snapshot.eta_seconds is not None else "-"
    get_logger("processor").info(
        f"Progress: {snapshot.processed + snapshot.skipped}/{snapshot.total} "
        f"({snapshot.percentage:.1f}%) - Rate: {snapshot.throughput:.1f} items/sec - "
        f"Success: {snapshot.successful}, Errors: {snapshot.failed}, "
        f"Saved: {format_bytes(snapshot.savings_bytes)}, ETA: {eta}"
    )


def log_final_statistics(result: BatchResult, stop_message: Optional[str] = None) -> None:
    """Log final processing statistics."""
    logger = get_logger("processor")
    overall_rate = len(result.successful) / result.duration if result.duration > 0 else 0

    logger.info("=" * 80)
    logger.info("PROCESSING COMPLETED")
    logger.info("=" * 80)
    logger.info(f"Total execution time: {result.duration:.1f}s")
    logger.info(f"Overall processing rate: {overall_rate:.1f} items/sec")
    logger.info(f"Successfully processed: {len(result.successful)}")
    logger.info(f"Errors encountered: {len(result.failed)}")
    logger.info(f"Skipped: {len(result.skipped)}")
    if result.total_original_size:
        ratio = result.total_savings / result.total_original_size * 100
        logger.info(
            f"Size: {format_bytes(result.total_original_size)} -> "
            f"{format_bytes(result.total_result_size)} ({ratio:.1f}% saved)"
        )
    logger.info(
        f"Concurrency: peak {result.peak_concurrency}/{result.max_concurrent}, "
        f"average {result.average_concurrency:.1f}; "
        f"average response {result.average_response_ms:.0f}ms over {result.total_requests} requests"
    )
    if result.backups:
        logger.info(
            "Backups: " + ", ".join(f"{action} {count}" for action, count in sorted(result.backups.items()))
        )
    for failure in result.failed:
        logger.error(f"  {failure.source_path.name}: {failure.message}")
        if failure.suggestion:
            logger.info(f"    Suggestion: {failure.suggestion}")
    if result.stop_reason is not None:
        logger.warning(stop_message or f"Dispatch stopped early: {result.stop_reason.value}")
    logger.info("=" * 80)
