"""Image inspection utilities for the compress pipeline."""

from pathlib import Path
from typing import Optional, Tuple, Union

from PIL import Image, UnidentifiedImageError

from .models import (
    ConvertFormat,
    FormatTarget,
    ResizeDimensions,
    ResizeSpec,
    SUPPORTED_EXTENSIONS,
)

PathLike = Union[str, Path]


def get_file_extension(path: PathLike) -> str:
    """Return the lower-case extension without the dot, e.g. ``"jpg"``."""
    return Path(path).suffix.lower().lstrip(".")


def _normalize(fmt: str) -> str:
    return "jpg" if fmt == "jpeg" else fmt


def is_conversion_needed(path: PathLike, target: FormatTarget) -> bool:
    """True when ``target`` changes the file's format (jpg and jpeg are equal)."""
    if not isinstance(target, ConvertFormat):
        return False
    return _normalize(get_file_extension(path)) != _normalize(target.format)


def generate_output_path(path: PathLike, target: FormatTarget) -> Path:
    """Destination path for a transformed file.

    The path only changes when a conversion changes the format; the new
    extension uses the canonical spelling (``.jpg`` for jpeg).
    """
    source = Path(path)
    if isinstance(target, ConvertFormat) and is_conversion_needed(source, target):
        return source.with_suffix(target.extension)
    return source


def is_valid_image_header(header: bytes, path: PathLike) -> bool:
    """Check the magic bytes of ``header`` against the file's extension."""
    ext = Path(path).suffix.lower()

    if ext == ".png":
        return header[:4] == b"\x89PNG"
    if ext in (".jpg", ".jpeg"):
        return header[:3] == b"\xff\xd8\xff"
    if ext == ".webp":
        return len(header) >= 12 and header[:4] == b"RIFF" and header[8:12] == b"WEBP"
    if ext == ".avif":
        return len(header) >= 8 and header[4:8] == b"ftyp"
    return False


def is_supported_extension(path: PathLike) -> bool:
    return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS


def get_image_dimensions(path: PathLike) -> Optional[Tuple[int, int]]:
    """Return ``(width, height)`` or ``None`` when Pillow cannot read the file."""
    try:
        with Image.open(path) as image:
            return image.size
    except (OSError, UnidentifiedImageError, Image.DecompressionBombError):
        return None


def calculate_resize_dimensions(
    width: int, height: int, request: Optional[ResizeSpec]
) -> Optional[ResizeDimensions]:
    """
    Compute a proportional downscale for ``request``.

    Args:
        width: Source width in pixels
        height: Source height in pixels
        request: Resize request, or None

    Returns:
        Target dimensions, or None when no resize is needed (no request, or the
        checked side already fits within ``max_size``).
    """
    if request is None:
        return None

    if request.side == "width":
        primary, other, width_primary = width, height, True
    elif request.side == "height":
        primary, other, width_primary = height, width, False
    elif width >= height:
        primary, other, width_primary = width, height, True
    else:
        primary, other, width_primary = height, width, False

    if primary <= request.max_size:
        return None

    scale = request.max_size / primary
    secondary = round(other * scale)

    if width_primary:
        return ResizeDimensions(
            width=request.max_size,
            height=secondary,
            scale_factor=scale,
            primary_dimension="width",
        )
    return ResizeDimensions(
        width=secondary,
        height=request.max_size,
        scale_factor=scale,
        primary_dimension="height",
    )


def resize_request(dimensions: Optional[ResizeDimensions]) -> Optional[dict]:
    """Remote-service resize payload: scale by the primary dimension only."""
    if dimensions is None:
        return None
    return {
        "method": "scale",
        dimensions.primary_dimension: getattr(dimensions, dimensions.primary_dimension),
    }


def format_bytes(size: int) -> str:
    """Human readable byte count, e.g. ``"1.5 KB"``."""
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(abs(size))
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    sign = "-" if size < 0 else ""
    return f"{sign}{round(value, 2):g} {units[index]}"
