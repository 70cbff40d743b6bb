"""Tests for image_utils.py functions."""

from pathlib import Path

import pytest

from compress_pipeline.core.image_utils import (
    calculate_resize_dimensions,
    format_bytes,
    generate_output_path,
    get_file_extension,
    get_image_dimensions,
    is_conversion_needed,
    is_supported_extension,
    is_valid_image_header,
    resize_request,
)
from compress_pipeline.core.models import ConvertFormat, KeepFormat, ResizeSpec
from compress_pipeline.testing.fakes import create_test_image, write_test_image


class TestOutputPaths:
    """Tests for conversion detection and destination paths."""

    def test_keep_format_never_changes_path(self):
        assert generate_output_path("/img/a.png", KeepFormat()) == Path("/img/a.png")

    def test_conversion_changes_extension(self):
        assert generate_output_path("/img/a.png", ConvertFormat(format="webp")) == Path(
            "/img/a.webp"
        )

    def test_jpeg_uses_canonical_extension(self):
        assert generate_output_path("/img/a.png", ConvertFormat(format="jpeg")) == Path(
            "/img/a.jpg"
        )

    @pytest.mark.parametrize(
        "path,fmt",
        [("a.jpg", "jpeg"), ("a.jpeg", "jpg"), ("a.PNG", "png")],
    )
    def test_same_format_is_not_a_conversion(self, path, fmt):
        assert not is_conversion_needed(path, ConvertFormat(format=fmt))
        assert generate_output_path(path, ConvertFormat(format=fmt)) == Path(path)

    def test_get_file_extension(self):
        assert get_file_extension("photo.JPEG") == "jpeg"
        assert get_file_extension("noext") == ""

    @pytest.mark.parametrize(
        "path,expected",
        [("a.png", True), ("a.webp", True), ("a.avif", True), ("a.gif", False), ("a", False)],
    )
    def test_is_supported_extension(self, path, expected):
        assert is_supported_extension(path) is expected


class TestImageHeaders:
    """Tests for magic-byte validation."""

    @pytest.mark.parametrize(
        "fmt,name",
        [("PNG", "a.png"), ("JPEG", "a.jpg"), ("JPEG", "a.jpeg"), ("WEBP", "a.webp")],
    )
    def test_real_images_have_valid_headers(self, fmt, name):
        data = create_test_image(20, 20, fmt=fmt)
        assert is_valid_image_header(data[:12], name)

    def test_avif_header(self):
        header = b"\x00\x00\x00\x1cftypavif"
        assert is_valid_image_header(header, "a.avif")

    def test_mismatched_header_is_invalid(self):
        png = create_test_image(20, 20, fmt="PNG")
        assert not is_valid_image_header(png[:12], "a.jpg")

    def test_truncated_header_is_invalid(self):
        assert not is_valid_image_header(b"RIFF", "a.webp")


class TestResizeCalculation:
    """Tests for proportional resize dimensions."""

    def test_no_spec_means_no_resize(self):
        assert calculate_resize_dimensions(4000, 3000, None) is None

    def test_auto_uses_longer_side_landscape(self):
        dims = calculate_resize_dimensions(4000, 3000, ResizeSpec(max_size=2000))
        assert dims.width == 2000
        assert dims.height == 1500
        assert dims.primary_dimension == "width"
        assert dims.scale_factor == 0.5

    def test_auto_uses_longer_side_portrait(self):
        dims = calculate_resize_dimensions(1000, 2000, ResizeSpec(max_size=500))
        assert (dims.width, dims.height) == (250, 500)
        assert dims.primary_dimension == "height"

    def test_explicit_height_on_landscape(self):
        dims = calculate_resize_dimensions(4000, 3000, ResizeSpec(max_size=1500, side="height"))
        assert (dims.width, dims.height) == (2000, 1500)
        assert dims.primary_dimension == "height"

    def test_already_small_enough(self):
        assert calculate_resize_dimensions(800, 600, ResizeSpec(max_size=800)) is None

    def test_checked_side_fits_even_if_other_does_not(self):
        assert calculate_resize_dimensions(4000, 500, ResizeSpec(max_size=1000, side="height")) is None

    def test_resize_request_sends_primary_dimension_only(self):
        dims = calculate_resize_dimensions(4000, 3000, ResizeSpec(max_size=2000))
        assert resize_request(dims) == {"method": "scale", "width": 2000}
        assert resize_request(None) is None


class TestImageDimensions:
    def test_reads_dimensions(self, tmp_path):
        path = write_test_image(tmp_path / "a.png", 120, 80)
        assert get_image_dimensions(path) == (120, 80)

    def test_unreadable_file_returns_none(self, tmp_path):
        path = tmp_path / "broken.png"
        path.write_bytes(b"\x89PNG not really")
        assert get_image_dimensions(path) is None

    def test_missing_file_returns_none(self, tmp_path):
        assert get_image_dimensions(tmp_path / "missing.png") is None


class TestFormatBytes:
    @pytest.mark.parametrize(
        "size,expected",
        [(0, "0 Bytes"), (500, "500 Bytes"), (1024, "1 KB"), (1536, "1.5 KB"), (1048576, "1 MB")],
    )
    def test_format_bytes(self, size, expected):
        assert format_bytes(size) == expected
