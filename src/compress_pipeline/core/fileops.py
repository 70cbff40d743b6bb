"""Local file operations behind the per-item safety protocol.

Backups are copied with their timestamps preserved so a later run can tell an
identical backup (same size and modification time) from a stale one. Results
are written to a sibling temporary file and moved into place with
``os.replace``, which is atomic on the same file system.
"""

import os
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Union

from .exceptions import FileSystemError, with_error_handling
from .image_utils import format_bytes, is_supported_extension, is_valid_image_header
from .logging_config import get_logger
from .models import (
    BackupAction,
    BackupResult,
    SUPPORTED_EXTENSIONS,
    TransformOptions,
    WorkItem,
)

PathLike = Union[str, Path]
HEADER_SIZE = 12
TEMP_SUFFIX = ".tmp"


def validate_file_for_processing(path: PathLike, max_size: int) -> List[str]:
    """Return every problem that makes ``path`` unfit for processing."""
    path = Path(path)
    errors: List[str] = []

    if not path.exists():
        return [f"File not found: {path}"]

    if not path.is_file():
        return [f"Path is not a file: {path}"]

    size = path.stat().st_size
    if size > max_size:
        errors.append(
            f"File too large: {format_bytes(size)} (max: {format_bytes(max_size)})"
        )

    if not os.access(path, os.R_OK):
        errors.append(f"File not readable: {path}")
        return errors

    if not is_supported_extension(path):
        errors.append(
            f"Unsupported format: {path.suffix.lower() or '(none)'}. "
            f"Supported: {', '.join(SUPPORTED_EXTENSIONS)}"
        )
        return errors

    try:
        with open(path, "rb") as handle:
            header = handle.read(HEADER_SIZE)
    except OSError:
        errors.append(f"Cannot read file header: {path}")
        return errors

    if not is_valid_image_header(header, path):
        errors.append(f"Invalid or corrupted image file: {path}")

    return errors


@with_error_handling
def create_backup_directory(base_directory: PathLike, name: str = "original") -> Path:
    """Create (if needed) and return the backup directory under ``base_directory``."""
    backup_path = Path(base_directory) / name
    backup_path.mkdir(parents=True, exist_ok=True)

    existing = sum(1 for _ in backup_path.iterdir())
    if existing:
        get_logger("fileops").warning(
            f"Backup directory already contains {existing} files; existing backups will be preserved"
        )
    return backup_path


def _is_identical_copy(source: Path, backup: Path) -> bool:
    source_stat = source.stat()
    backup_stat = backup.stat()
    return (
        source_stat.st_size == backup_stat.st_size
        and source_stat.st_mtime_ns == backup_stat.st_mtime_ns
    )


def _versioned_name(path: Path) -> str:
    timestamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S-%f")
    return f"{path.stem}_{timestamp}{path.suffix}"


@with_error_handling
def backup_file(path: PathLike, backup_directory: PathLike) -> BackupResult:
    """
    Copy ``path`` into ``backup_directory``.

    An existing backup with the same size and modification time makes this a
    no-op. A differing backup is kept and the new copy gets a timestamp
    suffix instead of overwriting it.
    """
    source = Path(path)
    backup_dir = Path(backup_directory)
    backup_path = backup_dir / source.name

    if backup_path.exists():
        if _is_identical_copy(source, backup_path):
            return BackupResult(path=backup_path, action=BackupAction.SKIPPED)

        versioned_path = backup_dir / _versioned_name(source)
        shutil.copy2(source, versioned_path)
        return BackupResult(path=versioned_path, action=BackupAction.VERSIONED)

    shutil.copy2(source, backup_path)
    return BackupResult(path=backup_path, action=BackupAction.CREATED)


def temp_path_for(path: PathLike) -> Path:
    """Unique temporary sibling of ``path`` (same directory, so rename is atomic)."""
    source = Path(path)
    return source.with_name(f".{source.name}.{uuid.uuid4().hex[:8]}{TEMP_SUFFIX}")


@with_error_handling
def write_temp_file(path: PathLike, data: bytes) -> Path:
    """Write ``data`` to a fresh temporary sibling of ``path``."""
    temp_path = temp_path_for(path)
    with open(temp_path, "wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())
    return temp_path


@with_error_handling
def atomic_install(temp_path: PathLike, destination: PathLike) -> Path:
    """Move ``temp_path`` over ``destination`` in one atomic rename."""
    destination = Path(destination)
    os.replace(temp_path, destination)
    return destination


def discard(path: PathLike) -> None:
    """Remove a temporary file if it exists; failures are logged, not raised."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        get_logger("fileops").warning(f"Could not remove temporary file {path}: {exc}")


def scan_for_images(
    directory: PathLike,
    recursive: bool = False,
    options: TransformOptions = TransformOptions(),
    exclude_directory: str = "original",
) -> List[WorkItem]:
    """List supported images under ``directory`` as work items, sorted by name."""
    root = Path(directory)
    if not root.is_dir():
        raise FileSystemError(f"Directory not found: {root}")

    items: List[WorkItem] = []
    pattern = "**/*" if recursive else "*"
    for path in root.glob(pattern):
        if not path.is_file() or not is_supported_extension(path):
            continue
        relative = path.relative_to(root)
        if exclude_directory in relative.parts[:-1]:
            continue
        items.append(
            WorkItem(source_path=path, size=path.stat().st_size, options=options)
        )

    return sorted(items, key=lambda item: (item.source_path.name, str(item.source_path)))
