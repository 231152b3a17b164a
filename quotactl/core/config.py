# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
quotactl Configuration System

Centralized configuration management supporting:
- Environment variables (QUOTACTL_*)
- Config files (~/.quotactl/config.yaml, ./.quotactl.yaml)
- Programmatic defaults
- Pydantic validation
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .exceptions import ConfigError

logger = logging.getLogger("quotactl.config")


def _default_home() -> Path:
    return Path.home() / ".quotactl"


# ============================================================================
# Configuration Models
# ============================================================================


class PathsConfig(BaseModel):
    """Path configuration"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    home: Path = Field(
        default_factory=_default_home,
        description="quotactl home directory",
    )
    state_file: Path = Field(
        default_factory=lambda: _default_home() / "state.json",
        description="Persisted state document",
    )
    unit_dir: Path = Field(
        default=Path("/etc/systemd/system"),
        description="Directory holding slice units and service drop-ins",
    )
    log_dir: Path = Field(
        default_factory=lambda: _default_home() / "logs",
        description="Log files directory",
    )

    @field_validator("*", mode="before")
    @classmethod
    def ensure_path(cls, v):
        """Convert strings to Path objects"""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v


class SystemdConfig(BaseModel):
    """Service manager configuration"""

    systemctl: str = Field(default="systemctl", description="systemctl binary")
    mode: str = Field(default="system", description="systemd instance (system/user)")
    slice_timeout_seconds: float = Field(
        default=5.0, description="Timeout for slice stop/restart", gt=0
    )
    service_timeout_seconds: float = Field(
        default=30.0, description="Timeout for service stop/start", gt=0
    )
    min_version: int = Field(
        default=205, description="Minimum systemd version for quota groups", ge=0
    )
    preseeding: bool = Field(
        default=False, description="Write units without reloading the daemon"
    )

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v):
        """Validate systemd mode"""
        if v not in ("system", "user"):
            raise ValueError("Invalid systemd mode. Must be 'system' or 'user'")
        return v


class ObservabilityConfig(BaseModel):
    """Logging configuration"""

    log_level: str = Field(default="INFO", description="Logging level")
    file_logging: bool = Field(default=True, description="Write rotating log files")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper


class QuotactlConfig(BaseModel):
    """Complete quotactl configuration"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    paths: PathsConfig = Field(
        default_factory=PathsConfig, description="Path configuration"
    )
    systemd: SystemdConfig = Field(
        default_factory=SystemdConfig, description="Service manager configuration"
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig, description="Logging configuration"
    )


# ============================================================================
# Configuration Loader
# ============================================================================

# environment variable -> (section, key, converter)
_ENV_VARS = {
    "QUOTACTL_HOME": ("paths", "home", str),
    "QUOTACTL_STATE_FILE": ("paths", "state_file", str),
    "QUOTACTL_UNIT_DIR": ("paths", "unit_dir", str),
    "QUOTACTL_LOG_DIR": ("paths", "log_dir", str),
    "QUOTACTL_SYSTEMCTL": ("systemd", "systemctl", str),
    "QUOTACTL_SYSTEMD_MODE": ("systemd", "mode", str),
    "QUOTACTL_SLICE_TIMEOUT": ("systemd", "slice_timeout_seconds", float),
    "QUOTACTL_SERVICE_TIMEOUT": ("systemd", "service_timeout_seconds", float),
    "QUOTACTL_PRESEEDING": ("systemd", "preseeding", lambda v: v.lower() == "true"),
    "QUOTACTL_LOG_LEVEL": ("observability", "log_level", str),
    "QUOTACTL_FILE_LOGS": (
        "observability",
        "file_logging",
        lambda v: v.lower() == "true",
    ),
}


class ConfigLoader:
    """Load configuration from multiple sources"""

    @staticmethod
    def load_from_env() -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config: Dict[str, Any] = {}

        for var, (section, key, convert) in _ENV_VARS.items():
            value = os.getenv(var)
            if value:
                try:
                    config.setdefault(section, {})[key] = convert(value)
                except ValueError as e:
                    raise ConfigError(
                        f"invalid value for {var}: {value!r}", cause=e
                    ) from e

        # a relocated home moves the derived paths along unless they are set
        home = config.get("paths", {}).get("home")
        if home:
            paths = config["paths"]
            paths.setdefault("state_file", str(Path(home) / "state.json"))
            paths.setdefault("log_dir", str(Path(home) / "logs"))

        return config

    @staticmethod
    def load_from_file(file_path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML file"""
        if not file_path.exists():
            return {}

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(
                f"cannot read config file {file_path}", cause=e
            ) from e

        if not isinstance(data, dict):
            raise ConfigError(f"config file {file_path} must contain a mapping")
        return data

    @staticmethod
    def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple configuration dictionaries"""
        result: Dict[str, Any] = {}
        for config in configs:
            for key, value in config.items():
                if (
                    key in result
                    and isinstance(result[key], dict)
                    and isinstance(value, dict)
                ):
                    result[key] = ConfigLoader.merge_configs(result[key], value)
                else:
                    result[key] = value
        return result


# ============================================================================
# Global Configuration Instance
# ============================================================================

_config: Optional[QuotactlConfig] = None


def get_config() -> QuotactlConfig:
    """
    Get global quotactl configuration

    Configuration is loaded from (in order of precedence):
    1. Environment variables (QUOTACTL_*)
    2. .quotactl.yaml in current directory
    3. ~/.quotactl/config.yaml
    4. Default values

    Returns:
        QuotactlConfig instance
    """
    global _config

    if _config is None:
        _config = load_config()

    return _config


def set_config(config: Optional[QuotactlConfig]):
    """Replace the global configuration (None forces a reload on next use)"""
    global _config
    _config = config


def load_config(
    config_file: Optional[Path] = None, env_override: bool = True
) -> QuotactlConfig:
    """
    Load configuration from all sources

    Args:
        config_file: Optional specific config file to load
        env_override: Whether environment variables override file config

    Returns:
        QuotactlConfig instance

    Raises:
        ConfigError: If a source cannot be read or the result fails validation
    """
    configs = []

    default_locations = [
        _default_home() / "config.yaml",
        Path.cwd() / ".quotactl.yaml",
    ]

    for location in default_locations:
        file_config = ConfigLoader.load_from_file(location)
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {location}")

    if config_file:
        file_config = ConfigLoader.load_from_file(Path(config_file))
        if file_config:
            configs.append(file_config)
            logger.debug(f"Loaded config from {config_file}")

    if env_override:
        env_config = ConfigLoader.load_from_env()
        if env_config:
            configs.append(env_config)
            logger.debug("Loaded config from environment")

    merged = ConfigLoader.merge_configs(*configs) if configs else {}

    try:
        return QuotactlConfig(**merged)
    except ValidationError as e:
        raise ConfigError("configuration validation failed", cause=e) from e


def reload_config() -> QuotactlConfig:
    """Reload global configuration"""
    global _config
    _config = load_config()
    logger.info("Configuration reloaded")
    return _config
