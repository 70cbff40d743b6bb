"""Factory classes for creating configured service instances."""

import logging
from typing import Any, Optional, Union

from ..processors.circuit_breaker import CircuitBreaker
from ..processors.governor import ConcurrencyGovernor, MemoryPressureProbe
from ..processors.rate_observer import RateObserver
from .logging_config import get_logger
from .models import ProcessingConfig
from .observability import MetricsCollector, ProgressCallback, ProgressTracker, StructuredLogger
from .protocols import LoggerProtocol, TransformClientProtocol
from .registry import CredentialRegistry
from .services import BatchOrchestrator, ItemProcessingService
from .tinify_client import API_ENDPOINT, TinifyClient


class LoggerAdapter:
    """Adapter to make a standard logger compatible with LoggerProtocol."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    @staticmethod
    def _format(message: str, context: Any = None, **kwargs: Any) -> str:
        correlation_id = getattr(context, "correlation_id", None)
        if correlation_id:
            message = f"[{correlation_id}] {message}"
        if kwargs:
            message += " (" + ", ".join(f"{k}={v}" for k, v in kwargs.items()) + ")"
        return message

    def debug(self, message: str, context: Any = None, **kwargs: Any) -> None:
        self._logger.debug(self._format(message, context, **kwargs))

    def info(self, message: str, context: Any = None, **kwargs: Any) -> None:
        self._logger.info(self._format(message, context, **kwargs))

    def warning(self, message: str, context: Any = None, **kwargs: Any) -> None:
        self._logger.warning(self._format(message, context, **kwargs))

    def error(self, message: str, context: Any = None, **kwargs: Any) -> None:
        self._logger.error(self._format(message, context, **kwargs))


class LoggerFactory:
    """Factory for creating logger instances."""

    @staticmethod
    def create_logger(name: str = "pipeline", level: int = logging.INFO) -> LoggerProtocol:
        """Create a structured logger sharing the package's handler setup."""
        base = get_logger(name)
        return StructuredLogger(base.name, level)


class TransformClientFactory:
    """Factory for creating remote transform clients."""

    @staticmethod
    def create_client(
        config: Optional[ProcessingConfig] = None, base_url: str = API_ENDPOINT, **kwargs: Any
    ) -> TransformClientProtocol:
        config = config or ProcessingConfig()
        return TinifyClient(base_url=base_url, timeout=config.request_timeout_s, **kwargs)


class ProcessingPipelineFactory:
    """Factory for creating the complete processing pipeline."""

    @staticmethod
    def create_pipeline(
        registry: CredentialRegistry,
        client: Optional[TransformClientProtocol] = None,
        logger: Union[LoggerProtocol, logging.Logger, None] = None,
        config: Optional[ProcessingConfig] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchOrchestrator:
        """Wire observer, breaker, governor and services around ``registry``."""
        config = config or ProcessingConfig()

        if client is None:
            client = TransformClientFactory.create_client(config)

        if logger is None:
            level = logging.DEBUG if config.debug else logging.INFO
            logger = LoggerFactory.create_logger("pipeline", level)
        elif isinstance(logger, logging.Logger):
            logger = LoggerAdapter(logger)

        rate_observer = RateObserver(
            base_delay_ms=config.base_delay_ms, max_delay_ms=config.max_delay_ms
        )
        circuit_breaker = CircuitBreaker(
            failure_threshold=config.failure_threshold, cooldown_s=config.circuit_cooldown_s
        )
        backpressure = None
        if config.memory_limit_mb is not None:
            backpressure = MemoryPressureProbe(config.memory_limit_mb)

        progress = ProgressTracker(on_progress=on_progress)
        governor = ConcurrencyGovernor(
            max_concurrent=config.max_concurrent,
            circuit_breaker=circuit_breaker,
            rate_observer=rate_observer,
            backpressure=backpressure,
            adaptive_throttling=config.adaptive_throttling,
            base_delay_ms=config.base_delay_ms,
            on_change=progress.set_concurrency,
        )
        item_service = ItemProcessingService(
            client=client,
            config=config,
            logger=logger,
            rate_observer=rate_observer,
            circuit_breaker=circuit_breaker,
            metrics_collector=MetricsCollector(),
        )

        return BatchOrchestrator(
            registry=registry,
            item_service=item_service,
            governor=governor,
            config=config,
            logger=logger,
            progress=progress,
            rate_observer=rate_observer,
        )
