# === NAVMAP v1 ===
# {
#   "module": "ToolVault.Hydration.settings",
#   "purpose": "Define configuration models, environment overrides, and YAML loading for tool hydration",
#   "sections": [
#     {"id": "offlinepolicy", "name": "OfflinePolicy", "anchor": "class-offlinepolicy", "kind": "class"},
#     {"id": "httpsettings", "name": "HttpSettings", "anchor": "class-httpsettings", "kind": "class"},
#     {"id": "hydrationsettings", "name": "HydrationSettings", "anchor": "class-hydrationsettings", "kind": "class"},
#     {"id": "loggingsettings", "name": "LoggingSettings", "anchor": "class-loggingsettings", "kind": "class"},
#     {"id": "toolvaultconfig", "name": "ToolVaultConfig", "anchor": "class-toolvaultconfig", "kind": "class"},
#     {"id": "environmentoverrides", "name": "EnvironmentOverrides", "anchor": "class-environmentoverrides", "kind": "class"},
#     {"id": "load-raw-yaml", "name": "load_raw_yaml", "anchor": "function-load-raw-yaml", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models for the ToolVault hydration pipeline.

Configuration is loaded once at startup from an optional YAML file, layered
with ``TOOLVAULT_*`` environment overrides, and validated through pydantic.
The resulting :class:`ToolVaultConfig` is then injected explicitly into the
components that need it: the offline policy into the gate, the HTTP settings
into the retrieval client, and the directory layout into the hydrator.  Nothing
in the pipeline reads these values from module globals.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

import platformdirs
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError

__all__ = [
    "APP_NAME",
    "CACHE_DIR",
    "DATA_DIR",
    "LOG_DIR",
    "OfflinePolicy",
    "HttpSettings",
    "HydrationSettings",
    "LoggingSettings",
    "ToolVaultConfig",
    "EnvironmentOverrides",
    "load_raw_yaml",
    "load_config",
]

APP_NAME = "toolvault"
CACHE_DIR = Path(platformdirs.user_cache_dir(APP_NAME))
DATA_DIR = Path(platformdirs.user_data_dir(APP_NAME))
LOG_DIR = Path(platformdirs.user_log_dir(APP_NAME))

logger = logging.getLogger("ToolVault.Hydration")


class OfflinePolicy(BaseModel):
    """Process-wide network policy consulted by the offline gate.

    ``offline_mode`` is the soft switch a user toggles from the UI;
    ``force_offline`` is the hard switch set by deployment configuration.
    Either one blocks every outbound call.  An empty allowlist admits every
    value for that dimension.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    offline_mode: bool = Field(default=False, description="Soft offline switch")
    force_offline: bool = Field(default=False, description="Hard offline switch")
    allowed_hosts: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Hosts permitted for outbound calls; empty allows all",
    )
    allowed_ports: FrozenSet[int] = Field(
        default_factory=frozenset,
        description="Ports permitted for outbound calls; empty allows all",
    )

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def normalize_hosts(cls, value: Any) -> FrozenSet[str]:
        """Lower-case and strip host entries; accept comma-separated strings."""
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = value.split(",")
        return frozenset(str(item).strip().lower() for item in value if str(item).strip())

    @field_validator("allowed_ports", mode="before")
    @classmethod
    def normalize_ports(cls, value: Any) -> FrozenSet[int]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [item for item in value.split(",") if item.strip()]
        ports = frozenset(int(item) for item in value)
        for port in ports:
            if not 0 < port < 65536:
                raise ValueError(f"port out of range: {port}")
        return ports


class HttpSettings(BaseModel):
    """Retrieval client settings.

    ``timeout_sec`` bounds every polling phase (connect, request, body read) of
    both buffered and streamed requests.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    timeout_sec: float = Field(default=30.0, gt=0.0, le=600.0, description="Per-phase timeout")
    poll_interval_sec: float = Field(
        default=0.01, ge=0.0, le=1.0, description="Sleep between transport polls"
    )
    max_redirects: int = Field(default=5, ge=0, le=20, description="Maximum redirect hops")
    chunk_size: int = Field(default=64 * 1024, ge=1024, le=16 * 1024 * 1024)
    user_agent: str = Field(default="ToolVault-Hydration/0.1")
    verify_tls: bool = Field(default=True, description="Verify server certificates")


class HydrationSettings(BaseModel):
    """Directory layout and manifest source for hydration runs."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    manifest_source: Optional[str] = Field(
        default=None, description="Path, file:// URL, or http(s) URL of the repository manifest"
    )
    mirror_root: Optional[Path] = Field(
        default=None, description="Trusted root for relative archive paths"
    )
    staging_dir: Path = Field(default_factory=lambda: CACHE_DIR / "staging")
    library_dir: Path = Field(default_factory=lambda: DATA_DIR / "library")

    @field_validator("mirror_root", "staging_dir", "library_dir", mode="before")
    @classmethod
    def expand_paths(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return Path(value).expanduser()


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")
    log_dir: Optional[Path] = Field(default=None, description="Directory for JSON-lines logs")
    max_log_size_mb: int = Field(default=50, gt=0)
    retention_days: int = Field(default=14, ge=1)

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        """Normalize and validate logging level."""
        upper = str(v).upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {sorted(valid_levels)}, got '{v}'")
        return upper

    def level_int(self) -> int:
        """Convert level string to logging module integer."""
        return getattr(logging, self.level)


class ToolVaultConfig(BaseModel):
    """Top-level configuration aggregate."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    policy: OfflinePolicy = Field(default_factory=OfflinePolicy)
    http: HttpSettings = Field(default_factory=HttpSettings)
    hydration: HydrationSettings = Field(default_factory=HydrationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


class EnvironmentOverrides(BaseSettings):
    """Pydantic settings model exposing environment-derived overrides."""

    offline_mode: Optional[bool] = None
    force_offline: Optional[bool] = None
    timeout_sec: Optional[float] = None
    log_level: Optional[str] = None
    staging_dir: Optional[Path] = None
    library_dir: Optional[Path] = None
    mirror_root: Optional[Path] = None
    manifest_source: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="TOOLVAULT_", case_sensitive=False, extra="ignore")


_OVERRIDE_TARGETS: Dict[str, tuple[str, str]] = {
    "offline_mode": ("policy", "offline_mode"),
    "force_offline": ("policy", "force_offline"),
    "timeout_sec": ("http", "timeout_sec"),
    "log_level": ("logging", "level"),
    "staging_dir": ("hydration", "staging_dir"),
    "library_dir": ("hydration", "library_dir"),
    "mirror_root": ("hydration", "mirror_root"),
    "manifest_source": ("hydration", "manifest_source"),
}


def _apply_env_overrides(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``raw`` with ``TOOLVAULT_*`` values layered on top."""

    try:
        env = EnvironmentOverrides()
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid TOOLVAULT_* environment override: {exc}") from exc
    merged: Dict[str, Any] = {key: dict(value) for key, value in raw.items()}
    for name, value in env.model_dump(exclude_none=True).items():
        section, field_name = _OVERRIDE_TARGETS[name]
        merged.setdefault(section, {})[field_name] = value
        logger.debug(
            "applied environment override",
            extra={"stage": "config", "setting": f"{section}.{field_name}"},
        )
    return merged


def load_raw_yaml(config_path: Path) -> Mapping[str, object]:
    """Read ``config_path`` and return its top-level mapping."""

    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {config_path}") from exc
    except OSError as exc:
        raise ConfigError(f"Unable to read configuration file {config_path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Configuration file {config_path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration file must contain a mapping at the top level")
    return data


def load_config(config_path: Optional[Path] = None) -> ToolVaultConfig:
    """Build a validated :class:`ToolVaultConfig` from YAML plus environment overrides."""

    raw: Dict[str, Any] = {}
    if config_path is not None:
        for key, value in load_raw_yaml(config_path).items():
            if not isinstance(value, Mapping):
                raise ConfigError(f"Configuration section '{key}' must be a mapping")
            raw[str(key)] = dict(value)
    merged = _apply_env_overrides(raw)
    try:
        return ToolVaultConfig.model_validate(merged)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc
