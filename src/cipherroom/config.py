"""Configuration management for cipherroom.

Settings live in ~/.config/cipherroom/config.yaml (respecting XDG_CONFIG_HOME).

Environment Variables:
    CIPHERROOM_ROOM_CODE_LENGTH: Length of generated room codes
    CIPHERROOM_BIND_METADATA: "1"/"true" to authenticate sender and timestamp
    CIPHERROOM_LOG_LEVEL: Logging level name (DEBUG, INFO, ...)

Environment variables override values loaded from the file.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import yaml

DEFAULT_PLACEHOLDER = "🔒 Could not decrypt"
MIN_ROOM_CODE_LENGTH = 4
MAX_ROOM_CODE_LENGTH = 16

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class CipherRoomConfigError(Exception):
    """Raised when configuration values are invalid."""

    pass


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "cipherroom"


def get_config_path() -> Path:
    """Get the config file path."""
    return get_config_dir() / "config.yaml"


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise CipherRoomConfigError(f"{name} must be a boolean, got {value!r}")


@dataclass
class CipherRoomConfig:
    """cipherroom settings."""

    room_code_length: int = 6
    """Length of room codes generated by the relay and sessions."""

    bind_metadata: bool = False
    """Authenticate sender, timestamp and epoch as AEAD associated data."""

    log_level: str = "WARNING"

    placeholder: str = DEFAULT_PLACEHOLDER
    """Text shown for messages that fail to decrypt."""

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        if not isinstance(self.room_code_length, int) or isinstance(self.room_code_length, bool):
            raise CipherRoomConfigError("room_code_length must be an integer")
        if not MIN_ROOM_CODE_LENGTH <= self.room_code_length <= MAX_ROOM_CODE_LENGTH:
            raise CipherRoomConfigError(
                f"room_code_length must be between {MIN_ROOM_CODE_LENGTH} and {MAX_ROOM_CODE_LENGTH}"
            )
        if not isinstance(self.bind_metadata, bool):
            raise CipherRoomConfigError("bind_metadata must be a boolean")

        self.log_level = str(self.log_level).upper()
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise CipherRoomConfigError(f"Unknown log level: {self.log_level}")

    def apply_env_overrides(self) -> "CipherRoomConfig":
        """Apply CIPHERROOM_* environment variables in place."""
        length = os.environ.get("CIPHERROOM_ROOM_CODE_LENGTH")
        if length:
            try:
                self.room_code_length = int(length)
            except ValueError as e:
                raise CipherRoomConfigError(f"CIPHERROOM_ROOM_CODE_LENGTH must be an integer: {length!r}") from e

        bind = os.environ.get("CIPHERROOM_BIND_METADATA")
        if bind is not None:
            self.bind_metadata = _parse_bool("CIPHERROOM_BIND_METADATA", bind)

        level = os.environ.get("CIPHERROOM_LOG_LEVEL")
        if level:
            self.log_level = level

        self._validate()
        return self

    def save(self, path: Path | None = None) -> Path:
        """Save config to file."""
        path = path or get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        return path

    @classmethod
    def load(cls, path: Path | None = None, env: bool = True) -> "CipherRoomConfig":
        """Load config from file (or defaults), then apply environment overrides."""
        path = path or get_config_path()

        data: dict[str, Any] = {}
        if path.exists():
            with open(path) as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise CipherRoomConfigError(f"Cannot parse {path}: {e}") from e
            if not isinstance(data, dict):
                raise CipherRoomConfigError(f"{path} must contain a mapping")

        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        config = cls(**known)
        if env:
            config.apply_env_overrides()
        return config

    @classmethod
    def exists(cls) -> bool:
        """Check if config file exists."""
        return get_config_path().exists()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
