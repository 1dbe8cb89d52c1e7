"""
Model Lifecycle – Configuration

This module handles the manager configuration surface.

SOURCES (lowest to highest precedence):
- Dataclass defaults
- YAML file (LifecycleConfig.from_yaml_file)
- MODEL_LIFECYCLE_* environment variables (LifecycleConfig.from_env)

RULES:
- Invalid values → ValueError at construction (fail fast)
- Configuration is IMMUTABLE once built
- No runtime reload
"""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

import yaml


DEFAULT_REMOTE_URL = "https://raw.githubusercontent.com/username/repo/main/model.tflite"
DEFAULT_TARGET_VERSION = "1.0"
DEFAULT_CACHE_DIR = os.path.join(os.path.expanduser("~"), ".cache", "model-lifecycle")
DEFAULT_MAX_AGE_MILLIS = 7 * 24 * 60 * 60 * 1000

ENV_PREFIX = "MODEL_LIFECYCLE_"


@dataclass(frozen=True)
class LifecycleConfig:
    """
    Configuration for one managed asset slot.

    Identity:
        remote_url: HTTP(S) GET endpoint serving the raw asset bytes
        target_version: Version identifier the manager wants installed
        slot_name: Logical cache slot name (one slot per manager)

    Network:
        connect_timeout_seconds: TCP connect timeout
        read_timeout_seconds: Per-read socket timeout while draining the body
        max_asset_bytes: Reject bodies larger than this (None = unlimited)

    Staleness:
        max_age_millis: Force refresh once the cached asset is older than this
        update_interval_seconds: Period used by UpdateService
    """

    remote_url: str = DEFAULT_REMOTE_URL
    target_version: str = DEFAULT_TARGET_VERSION
    cache_dir: str = DEFAULT_CACHE_DIR
    slot_name: str = "model"
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 30.0
    max_age_millis: int = DEFAULT_MAX_AGE_MILLIS
    max_asset_bytes: Optional[int] = None
    update_interval_seconds: float = 3600.0

    def __post_init__(self):
        """Validate configuration on construction."""
        if not self.remote_url or not self.remote_url.startswith(("http://", "https://")):
            raise ValueError(f"remote_url must be an http(s) URL, got {self.remote_url!r}")

        if not self.target_version:
            raise ValueError("target_version must be a non-empty string")

        if not self.slot_name or os.sep in self.slot_name or self.slot_name in (".", ".."):
            raise ValueError(f"slot_name must be a plain name, got {self.slot_name!r}")

        if not self.cache_dir:
            raise ValueError("cache_dir must be a non-empty path")

        if self.connect_timeout_seconds <= 0 or self.read_timeout_seconds <= 0:
            raise ValueError("timeouts must be positive")

        if self.max_age_millis < 0:
            raise ValueError("max_age_millis must be non-negative")

        if self.max_asset_bytes is not None and self.max_asset_bytes <= 0:
            raise ValueError("max_asset_bytes must be positive when set")

        if self.update_interval_seconds <= 0:
            raise ValueError("update_interval_seconds must be positive")

    @property
    def slot_dir(self) -> str:
        """Directory holding the asset and metadata for this slot."""
        return os.path.join(self.cache_dir, self.slot_name)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LifecycleConfig":
        """
        Build a config from a mapping, ignoring nothing silently.

        Raises:
            ValueError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        return cls(**dict(data))

    @classmethod
    def from_yaml_file(cls, yaml_path: str) -> "LifecycleConfig":
        """
        Parse and validate a YAML configuration file.

        Args:
            yaml_path: Path to the YAML file

        Returns:
            Validated LifecycleConfig

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the YAML is malformed or holds invalid values
        """
        with open(yaml_path, "r") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {yaml_path}: {e}") from e

        if data is None:
            data = {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration is not a YAML mapping: {yaml_path}")

        return cls.from_dict(data)

    def with_env_overrides(self, environ: Optional[Mapping[str, str]] = None) -> "LifecycleConfig":
        """
        Return a copy with MODEL_LIFECYCLE_* environment variables applied.

        Example: MODEL_LIFECYCLE_READ_TIMEOUT_SECONDS=60
        """
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}

        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            overrides[f.name] = _coerce(f.name, raw)

        return replace(self, **overrides) if overrides else self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LifecycleConfig":
        return cls().with_env_overrides(environ)


def _coerce(name: str, raw: str) -> Any:
    if name in ("connect_timeout_seconds", "read_timeout_seconds", "update_interval_seconds"):
        return float(raw)
    if name == "max_age_millis":
        return int(raw)
    if name == "max_asset_bytes":
        return int(raw) if raw.strip() else None
    return raw
