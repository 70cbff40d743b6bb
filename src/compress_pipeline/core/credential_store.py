"""JSON persistence for credentials (read at the start of a run, written at the end)."""

import os
from pathlib import Path
from typing import List, Union

from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError, FileSystemError
from .fileops import discard, temp_path_for
from .logging_config import get_logger
from .models import Credential, ProcessingConfig

CONFIG_VERSION = "1.0.0"
DEFAULT_CONFIG_FILE = "compress-pipeline.config.json"


class StoredConfig(BaseModel):
    """On-disk document: credentials plus optional processing tunables."""

    version: str = CONFIG_VERSION
    credentials: List[Credential] = Field(default_factory=list)
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)


class JsonCredentialStore:
    """Credential store backed by a JSON file."""

    def __init__(self, path: Union[str, Path] = DEFAULT_CONFIG_FILE):
        self.path = Path(path)
        self._logger = get_logger("credential-store")

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> StoredConfig:
        if not self.path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self.path}. Create one with at least one credential."
            )
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise FileSystemError(f"Cannot read configuration {self.path}: {exc}") from exc

        try:
            stored = StoredConfig.model_validate_json(raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Configuration validation failed:\n{exc}") from exc

        if stored.version != CONFIG_VERSION:
            raise ConfigurationError(f"Unsupported configuration version: {stored.version}")
        return stored

    def load(self) -> List[Credential]:
        return self.read().credentials

    def save(self, credentials: List[Credential]) -> None:
        """Replace the stored credentials, keeping the other sections."""
        stored = self.read() if self.path.exists() else StoredConfig()
        self.write(stored.model_copy(update={"credentials": list(credentials)}))

    def write(self, stored: StoredConfig) -> None:
        payload = stored.model_dump_json(indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = temp_path_for(self.path)
        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(temp_path, self.path)
        except OSError as exc:
            discard(temp_path)
            raise FileSystemError(f"Failed to save configuration: {exc}") from exc

        self._logger.debug(f"Saved {len(stored.credentials)} credentials to {self.path}")
