"""Main module for the compress pipeline CLI."""

import argparse
import asyncio
import sys
from typing import List, Optional

from pydantic import ValidationError

from .core import (
    BatchLimits,
    CompressPipelineError,
    ConfigurationError,
    ConvertFormat,
    Credential,
    CredentialRegistry,
    KeepFormat,
    ProcessingConfig,
    ResizeSpec,
    TransformOptions,
    get_logger,
    parse_selector,
    set_debug_logging,
)
from .core.credential_store import DEFAULT_CONFIG_FILE, JsonCredentialStore
from .core.exceptions import InvalidCredentialError, QuotaExceededError, ServiceError
from .core.factories import TransformClientFactory
from .core.fileops import scan_for_images
from .core.models import SUPPORTED_FORMATS, NotFound
from .core.protocols import TransformClientProtocol
from .processors.asyncio_processor import process_batch
from .processors.common import (
    log_capacity_table,
    log_configuration,
    log_final_statistics,
    log_progress,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="compress-pipeline",
        description="Batch image compression against a quota-limited remote service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Compress every image in a directory with the credential that has most capacity
  compress-pipeline compress ./photos

  # Convert to WebP and downscale to at most 1920px on the longest side
  compress-pipeline compress ./photos --convert webp --max-size 1920

  # Show remaining capacity of every configured credential
  compress-pipeline check
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    compress_parser = subparsers.add_parser("compress", help="Compress images in a directory")
    compress_parser.add_argument("directory", help="Directory containing images")
    compress_parser.add_argument(
        "--credential", default="best", help="Credential name, or 'best' (default)"
    )
    compress_parser.add_argument(
        "--convert", choices=SUPPORTED_FORMATS, default=None, help="Convert to this format"
    )
    compress_parser.add_argument(
        "--background", default=None, help="Background color when converting transparent images"
    )
    compress_parser.add_argument(
        "--max-size", type=int, default=None, help="Downscale so the chosen side is at most N pixels"
    )
    compress_parser.add_argument(
        "--max-side",
        choices=["auto", "width", "height"],
        default="auto",
        help="Side checked by --max-size (default: the longer one)",
    )
    compress_parser.add_argument(
        "--preserve-metadata", action="store_true", help="Keep copyright, creation and location metadata"
    )
    compress_parser.add_argument("--recursive", action="store_true", help="Include subdirectories")
    compress_parser.add_argument(
        "--max-concurrent", type=int, default=None, help="Concurrent requests (1-20)"
    )
    compress_parser.add_argument(
        "--max-items", type=int, default=None, help="Stop dispatching after N items"
    )
    compress_parser.add_argument(
        "--max-failures", type=int, default=None, help="Stop dispatching after N failures"
    )
    compress_parser.add_argument(
        "--config", default=DEFAULT_CONFIG_FILE, help="Configuration file path"
    )
    compress_parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    check_parser = subparsers.add_parser("check", help="Show credential capacity")
    check_parser.add_argument(
        "--config", default=DEFAULT_CONFIG_FILE, help="Configuration file path"
    )
    check_parser.add_argument(
        "--offline", action="store_true", help="Do not refresh usage from the service"
    )

    subparsers.add_parser("version", help="Show version information")
    return parser


def build_options(args: argparse.Namespace) -> TransformOptions:
    target = ConvertFormat(format=args.convert) if args.convert else KeepFormat()
    resize = ResizeSpec(max_size=args.max_size, side=args.max_side) if args.max_size else None
    return TransformOptions(
        format_target=target,
        resize=resize,
        preserve_metadata=args.preserve_metadata,
        background=args.background,
    )


def build_config(base: ProcessingConfig, args: argparse.Namespace) -> ProcessingConfig:
    overrides = {}
    if args.max_concurrent is not None:
        overrides["max_concurrent"] = args.max_concurrent
    if args.debug:
        overrides["debug"] = True
    return ProcessingConfig.model_validate({**base.model_dump(), **overrides})


def run_compress(args: argparse.Namespace, client: Optional[TransformClientProtocol] = None) -> int:
    logger = get_logger("cli")
    store = JsonCredentialStore(args.config)
    try:
        stored = store.read()
        config = build_config(stored.processing, args)
        options = build_options(args)
        limits = BatchLimits(max_items=args.max_items, max_failures=args.max_failures)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    except CompressPipelineError as e:
        logger.error(str(e))
        return 1

    if config.debug:
        set_debug_logging()

    items = scan_for_images(
        args.directory,
        recursive=args.recursive,
        options=options,
        exclude_directory=config.backup_directory_name,
    )
    if not items:
        logger.info(f"No supported images found in {args.directory}")
        return 0

    registry = CredentialRegistry(stored.credentials)
    selector = parse_selector(args.credential)
    selection = registry.select(selector, required_units=1)
    if isinstance(selection, NotFound):
        logger.error(
            f"Credential '{selection.name}' not found. Available: {', '.join(selection.known_names) or 'none'}"
        )
        return 1
    if not isinstance(selection, Credential):
        logger.error("No credential has remaining capacity")
        log_capacity_table(registry.capacity_table())
        return 1

    if selection.remaining < len(items):
        logger.warning(
            f"Credential '{selection.name}' has {selection.remaining} compressions left "
            f"for {len(items)} images; the rest will be skipped"
        )

    log_configuration(config, options, selection.name, len(items))
    try:
        result = process_batch(
            items,
            selector,
            registry,
            client=client,
            config=config,
            limits=limits,
            on_progress=log_progress,
        )
    finally:
        # usage confirmed before an interrupt is kept
        store.save(registry.all())
    log_final_statistics(result)
    return 0


async def refresh_usage(registry: CredentialRegistry, client: TransformClientProtocol) -> None:
    logger = get_logger("cli")
    for credential in registry.all():
        try:
            count = await client.validate(credential.token)
        except InvalidCredentialError as e:
            logger.warning(f"Credential '{credential.name}' rejected: {e}")
            registry.mark_invalid(credential.name)
            continue
        except QuotaExceededError as e:
            logger.warning(f"Credential '{credential.name}' has no capacity left: {e}")
            registry.mark_exhausted(credential.name)
            continue
        except ServiceError as e:
            logger.warning(f"Could not check credential '{credential.name}': {e}")
            continue
        registry.record_usage(credential.name, count)


def run_check(args: argparse.Namespace, client: Optional[TransformClientProtocol] = None) -> int:
    logger = get_logger("cli")
    store = JsonCredentialStore(args.config)
    try:
        credentials = store.load()
    except CompressPipelineError as e:
        logger.error(str(e))
        return 1

    registry = CredentialRegistry(credentials)
    registry.reset_all_if_new_period()
    if not args.offline:
        asyncio.run(refresh_usage(registry, client or TransformClientFactory.create_client()))
        store.save(registry.all())

    log_capacity_table(registry.capacity_table())
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """
    Entry point for the command-line interface.

    Exits with status 1 on configuration or credential selection failure.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = get_logger("cli")

    if args.command == "version":
        print("compress-pipeline")
        print("Version 0.1.0")
        print("Batch image compression against a quota-limited remote service")
        sys.exit(0)

    if args.command not in ("compress", "check"):
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == "compress":
            code = run_compress(args)
        else:
            code = run_check(args)
    except KeyboardInterrupt:
        logger.warning("Processing interrupted by user.")
        code = 130
    except ConfigurationError as e:
        logger.error(str(e))
        code = 1
    except CompressPipelineError as e:
        logger.error(f"Processing failed: {e}", exc_info=True)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
