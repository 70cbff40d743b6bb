"""AsyncIO batch entry points: one event loop per batch run."""

import asyncio
from typing import List, Optional, Union

from ..core import (
    BatchLimits,
    BatchResult,
    CredentialRegistry,
    ProcessingConfig,
    WorkItem,
    get_logger,
)
from ..core.factories import ProcessingPipelineFactory
from ..core.models import CredentialSelector
from ..core.observability import ProgressCallback
from ..core.protocols import LoggerProtocol, TransformClientProtocol


async def process_batch_async(
    items: List[WorkItem],
    credential: Union[str, CredentialSelector, None],
    registry: CredentialRegistry,
    client: Optional[TransformClientProtocol] = None,
    config: Optional[ProcessingConfig] = None,
    limits: Optional[BatchLimits] = None,
    logger: Optional[LoggerProtocol] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> BatchResult:
    """Build a pipeline around ``registry`` and run ``items`` through it."""
    orchestrator = ProcessingPipelineFactory.create_pipeline(
        registry, client=client, logger=logger, config=config, on_progress=on_progress
    )
    try:
        return await orchestrator.run(items, credential, limits=limits)
    finally:
        orchestrator.governor.close()


def process_batch(
    items: List[WorkItem],
    credential: Union[str, CredentialSelector, None],
    registry: CredentialRegistry,
    client: Optional[TransformClientProtocol] = None,
    config: Optional[ProcessingConfig] = None,
    limits: Optional[BatchLimits] = None,
    logger: Optional[LoggerProtocol] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> BatchResult:
    """
    Process a batch of items using asyncio.

    This is the synchronous wrapper that runs the async function.

    Args:
        items: Work items to process, in dispatch order
        credential: Credential name, ``"best"``, or a selector
        registry: Credential registry; updated in place with reported usage
        client: Remote transform client (defaults to the Tinify client)
        config: Processing configuration
        limits: Operator caps on dispatched items and failures
        logger: Logger for the pipeline services
        on_progress: Callback receiving progress snapshots

    Returns:
        The aggregated batch result
    """
    get_logger("asyncio-processor").debug(f"Starting event loop for {len(items)} items")
    return asyncio.run(
        process_batch_async(
            items,
            credential,
            registry,
            client=client,
            config=config,
            limits=limits,
            logger=logger,
            on_progress=on_progress,
        )
    )
