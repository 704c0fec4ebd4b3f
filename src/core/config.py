"""Resolver settings and the loader that reads them from YAML / JSON files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from ruamel.yaml import YAML

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_YAML_EXTS: Final[set[str]] = {".yaml", ".yml"}
_JSON_EXTS: Final[set[str]] = {".json"}

SETTINGS_FILE_NAMES: Final[tuple[str, ...]] = (
    ".tfresolver.yaml",
    ".tfresolver.yml",
    ".tfresolver.json",
)

DEFAULT_ENVIRONMENT_DIRECTORIES: Final[tuple[str, ...]] = (
    "environments/dev",
    "environments/test",
    "environments/production",
    "environments/staging",
    "env/dev",
    "env/test",
    "env/production",
    "env/staging",
    "dev",
    "test",
    "production",
    "staging",
)

DEFAULT_REMOTE_SOURCE_MARKERS: Final[tuple[str, ...]] = (
    "://",
    "::",
    "git@",
    "github.com",
    "bitbucket.org",
    "terraform.io",
)

_yaml_parser = YAML(typ="safe")  # safe loader, YAML 1.2


class ResolverSettings(BaseModel):
    """Tunable knobs of the resolution engine and its cache."""

    max_depth: int = Field(
        10, description="Maximum recursion depth of a single resolution."
    )
    cache_ttl_seconds: float = Field(
        60.0, description="Lifetime of a cache entry, evaluated lazily on read."
    )
    cache_max_entries: int = Field(
        1000, description="Capacity of the cache before LRU eviction kicks in."
    )
    sweep_interval_seconds: float = Field(
        300.0, description="Period of the proactive expired-entry sweep."
    )
    encoding: str = Field("utf-8", description="Encoding used to read files.")
    override_suffixes: list[str] = Field(
        default_factory=lambda: [".tfvars", ".tfvars.json"],
        description="Suffixes of environment-specific value-assignment files.",
    )
    configuration_suffixes: list[str] = Field(
        default_factory=lambda: [".tf"],
        description="Suffixes of configuration files holding blocks.",
    )
    environment_directories: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ENVIRONMENT_DIRECTORIES),
        description="Workspace-relative directories probed for per-environment values.",
    )
    remote_source_markers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_REMOTE_SOURCE_MARKERS),
        description="Substrings identifying module sources that are not local.",
    )

    model_config = ConfigDict(extra="forbid")

    # ----- validators --------------------------------------------------------
    @field_validator("max_depth", "cache_max_entries")
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("cache_ttl_seconds", "sweep_interval_seconds")
    @classmethod
    def _positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("override_suffixes", "configuration_suffixes")
    @classmethod
    def _dotted_suffixes(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one suffix is required")
        for suffix in v:
            if not suffix.startswith("."):
                raise ValueError(f"suffix '{suffix}' must start with '.'")
        return v


def load_settings(path: str | Path) -> ResolverSettings:
    """
    Read resolver settings from a YAML or JSON file.

    Args:
        path: Path to the settings file

    Returns:
        Validated settings

    Raises:
        ConfigurationError: If the file is missing, unparsable, not a mapping
            or carries invalid values
    """
    file_path = Path(path)

    if not file_path.exists():
        logger.error("Settings file not found: %s", file_path)
        raise ConfigurationError(
            f"Settings file not found: {file_path}", config_path=file_path
        )

    suffix = file_path.suffix.lower()
    if suffix not in _YAML_EXTS | _JSON_EXTS:
        raise ConfigurationError(
            f"Unsupported extension '{file_path.suffix}'. "
            f"Supported: {', '.join(sorted(_YAML_EXTS | _JSON_EXTS))}",
            config_path=file_path,
        )

    try:
        raw_text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(
            f"Cannot read {file_path.name}: {exc}", config_path=file_path
        ) from exc

    try:
        if suffix in _YAML_EXTS:
            data: Any = _yaml_parser.load(raw_text)
        else:  # .json
            data = json.loads(raw_text)
    except Exception as exc:
        raise ConfigurationError(
            f"Cannot parse {file_path.name}: {exc}", config_path=file_path
        ) from exc

    # An empty YAML document means "all defaults"
    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigurationError(
            "Top-level object must be a mapping", config_path=file_path
        )

    try:
        settings = ResolverSettings.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid resolver settings: {first.get('msg')}",
            config_path=file_path,
            field_name=field_name or None,
        ) from exc

    logger.debug("Settings loaded from %s (%d keys)", file_path, len(data))
    return settings


def discover_settings(workspace_root: str | Path) -> ResolverSettings:
    """Load the workspace's settings file when present, defaults otherwise."""
    root = Path(workspace_root)
    for name in SETTINGS_FILE_NAMES:
        candidate = root / name
        if candidate.is_file():
            return load_settings(candidate)
    return ResolverSettings()
