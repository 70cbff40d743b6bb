"""Testing utilities and fakes for the compress pipeline."""

from .fakes import (
    FakeLogger,
    FakeTransformClient,
    create_test_credential,
    create_test_image,
    render,
    setup_test_image_dir,
    write_test_image,
)

__all__ = [
    "FakeTransformClient",
    "FakeLogger",
    "create_test_credential",
    "create_test_image",
    "render",
    "setup_test_image_dir",
    "write_test_image",
]
