# === NAVMAP v1 ===
# {
#   "module": "ArchiveSync.settings",
#   "purpose": "Typed settings, YAML loading, environment overrides, and key-value config sources",
#   "sections": [
#     {"id": "loggingconfiguration", "name": "LoggingConfiguration", "anchor": "class-loggingconfiguration", "kind": "class"},
#     {"id": "archivesyncsettings", "name": "ArchiveSyncSettings", "anchor": "class-archivesyncsettings", "kind": "class"},
#     {"id": "configsource", "name": "ConfigSource", "anchor": "class-configsource", "kind": "class"},
#     {"id": "mappingconfigsource", "name": "MappingConfigSource", "anchor": "class-mappingconfigsource", "kind": "class"},
#     {"id": "build-settings", "name": "build_settings", "anchor": "function-build-settings", "kind": "function"},
#     {"id": "environment-values", "name": "environment_values", "anchor": "function-environment-values", "kind": "function"},
#     {"id": "settings-from-source", "name": "settings_from_source", "anchor": "function-settings-from-source", "kind": "function"},
#     {"id": "load-raw-yaml", "name": "load_raw_yaml", "anchor": "function-load-raw-yaml", "kind": "function"},
#     {"id": "load-settings", "name": "load_settings", "anchor": "function-load-settings", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration for archive deploys.

Settings come from a YAML file (or any key-value :class:`ConfigSource` handed
over by a deploy framework) and may be overridden with ``ARCHIVESYNC_*``
environment variables; nested logging fields use a double underscore
(``ARCHIVESYNC_LOGGING__LEVEL=DEBUG``).  Precedence, lowest first: file or
source values, environment, explicit keyword overrides (CLI flags).  Validation failures are reported as
:class:`~ArchiveSync.errors.ConfigurationError` so callers deal with a single
error type.
"""

from __future__ import annotations

import posixpath
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Protocol, Union

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, EnvSettingsSource, SettingsConfigDict

from .errors import ConfigurationError
from .revisions import SORT_PRESETS

__all__ = [
    "LoggingConfiguration",
    "ArchiveSyncSettings",
    "ConfigSource",
    "MappingConfigSource",
    "build_settings",
    "environment_values",
    "settings_from_source",
    "load_raw_yaml",
    "load_settings",
]

ENV_PREFIX = "ARCHIVESYNC_"


class LoggingConfiguration(BaseModel):
    """Logging-related configuration for deploy runs."""

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    max_log_size_mb: int = Field(default=100, gt=0, description="Maximum size of rotated log files")
    retention_days: int = Field(default=30, ge=1, description="Retention period for log files")
    log_dir: Optional[Path] = Field(default=None, description="Directory for JSON log files")

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        """Normalise logging levels and ensure they match the supported set."""

        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = value.upper()
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return upper

    model_config = {"validate_assignment": True}


class ArchiveSyncSettings(BaseSettings):
    """Everything a deploy run needs to resolve, stage, and release an archive."""

    repo_url: str = Field(description="Archive location, e.g. s3://bucket/releases")
    branch: Optional[str] = Field(default="latest", description="'latest' or an object name")
    stage: str = Field(default="production", min_length=1)
    deploy_to: Path = Field(default=Path("/var/www/app"), description="Deploy root on targets")

    client_options: Dict[str, Any] = Field(default_factory=dict)
    sort: Union[str, Callable[..., int]] = Field(default="key_desc")
    strategy: Literal["rsync", "direct"] = Field(default="rsync")
    object_version_id: Optional[str] = Field(default=None)

    local_download_dir: Path = Field(default=Path("tmp/archives"))
    local_cache_dir: Path = Field(default=Path("tmp/deploy"))
    rsync_options: List[str] = Field(default_factory=lambda: ["-az", "--delete"])
    rsync_ssh_options: List[str] = Field(default_factory=list)
    rsync_cache_dir: str = Field(default="shared/deploy")
    rsync_copy: str = Field(default="rsync --archive --acls --xattrs")
    hardlink_release: bool = Field(default=False)

    remote_cache_dir: str = Field(default="shared/archives")
    storage_cli: str = Field(default="aws", description="Storage CLI used by the direct strategy")

    keep_releases: int = Field(default=5, ge=1)
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        validate_assignment=True,
    )

    @field_validator("sort")
    @classmethod
    def validate_sort(cls, value: Union[str, Callable[..., int]]):
        if isinstance(value, str) and value not in SORT_PRESETS:
            raise ValueError(f"sort must be one of {sorted(SORT_PRESETS)} or a comparator")
        return value

    @field_validator("rsync_cache_dir", "remote_cache_dir")
    @classmethod
    def validate_relative_dir(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("directory must not be empty")
        return cleaned

    @property
    def rsync_cache_path(self) -> str:
        return posixpath.join(str(self.deploy_to), self.rsync_cache_dir)

    @property
    def remote_cache_path(self) -> str:
        return posixpath.join(str(self.deploy_to), self.remote_cache_dir)


class ConfigSource(Protocol):
    """Key-value lookup with defaults, as exposed by a deploy framework."""

    def fetch(self, key: str, default: Any = None) -> Any:
        """Return the value stored under ``key`` or ``default``."""


class MappingConfigSource:
    """:class:`ConfigSource` over a plain mapping."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None) -> None:
        self._values: Dict[str, Any] = dict(values or {})

    def fetch(self, key: str, default: Any = None) -> Any:
        value = self._values.get(key, default)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value


def _format_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "<root>"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def _deep_merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(dict(current), value)
        else:
            merged[key] = value
    return merged


def environment_values() -> Dict[str, Any]:
    """Return the ``ARCHIVESYNC_*`` values set in the environment, keyed by field.

    Raises:
        ConfigurationError: If a complex value (list, mapping) is not valid JSON.
    """

    try:
        return dict(EnvSettingsSource(ArchiveSyncSettings)())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid {ENV_PREFIX}* environment value: {exc}") from exc


def build_settings(values: Mapping[str, Any]) -> ArchiveSyncSettings:
    """Validate ``values`` into :class:`ArchiveSyncSettings`.

    Raises:
        ConfigurationError: If any value fails validation.
    """

    try:
        return ArchiveSyncSettings(**dict(values))
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {_format_validation_error(exc)}") from exc


def settings_from_source(source: ConfigSource) -> ArchiveSyncSettings:
    """Build settings by fetching every known key from ``source``.

    Environment values override what the source returns.
    """

    values: Dict[str, Any] = {}
    for name in ArchiveSyncSettings.model_fields:
        value = source.fetch(name)
        if value is not None:
            values[name] = value
    return build_settings(_deep_merge(values, environment_values()))


def load_raw_yaml(config_path: Path) -> Mapping[str, object]:
    """Read a YAML configuration file and return its top-level mapping."""

    normalized_path = Path(config_path).expanduser()
    if not normalized_path.exists():
        raise ConfigurationError(f"Configuration file not found: {normalized_path}")

    try:
        with normalized_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            f"Configuration file '{normalized_path}' contains invalid YAML"
        ) from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigurationError("Configuration file must contain a mapping at the root")
    return data


def load_settings(config_path: Path, **overrides: Any) -> ArchiveSyncSettings:
    """Load settings from YAML, layer the environment, apply ``overrides``, then validate.

    ``None`` overrides are ignored so unset CLI flags leave lower layers alone.
    """

    raw = _deep_merge(dict(load_raw_yaml(config_path)), environment_values())
    raw.update({key: value for key, value in overrides.items() if value is not None})
    return build_settings(raw)
