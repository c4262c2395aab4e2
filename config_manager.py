"""
Configuration management module for the ledger service.

Loads config.yaml, merges it over built-in defaults and applies the
environment overrides the deployment scripts rely on.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from exceptions import ConfigError

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    "database": {
        "data_dir": "data",
        "path": "account_app.db",
        "seed_defaults": True,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8080,
        "cors_origins": ["*"],
    },
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        "file": None,
    },
    "ledger": {
        "utc_offset_minutes": None,
    },
}

CONFIG_FILE = "config.yaml"
CONFIG_ENV_VAR = "LEDGER_CONFIG"


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge overrides into a copy of defaults."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply PORT and LOG_LEVEL environment overrides."""
    port = os.environ.get("PORT")
    if port:
        try:
            config["server"]["port"] = int(port)
        except ValueError as exc:
            raise ConfigError(
                "PORT must be an integer",
                details={"PORT": port},
                original_error=exc
            )

    log_level = os.environ.get("LOG_LEVEL")
    if log_level:
        config["logging"]["level"] = log_level.upper()

    return config


def get_config_path(config_path: Optional[Union[str, Path]] = None) -> Path:
    """
    Resolve which config file to read.

    Args:
        config_path: Explicit path (e.g. from --config); falls back to
            LEDGER_CONFIG and then config.yaml in the working directory.
    """
    if config_path:
        return Path(config_path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path(CONFIG_FILE)


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    A missing file is not an error; defaults are used.

    Args:
        config_path: Optional path to the YAML file

    Returns:
        Configuration dictionary with defaults for missing values

    Raises:
        ConfigError: If the file is not valid YAML or not a mapping
    """
    path = get_config_path(config_path)
    file_config: Dict[str, Any] = {}

    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigError(
                f"Invalid YAML in config file: {path}",
                details={"path": str(path)},
                original_error=exc
            )
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(
                "Config file must contain a mapping at the top level",
                details={"path": str(path), "type": type(loaded).__name__}
            )
        file_config = loaded
        logger.info("Configuration loaded from %s", path)
    else:
        logger.debug("Config file %s not found; using defaults", path)

    config = _merge(DEFAULT_CONFIG, file_config)
    return _apply_env_overrides(config)


def save_config(config: Dict[str, Any], config_path: Optional[Union[str, Path]] = None) -> Path:
    """
    Save configuration to a YAML file.

    Args:
        config: Configuration dictionary to save
        config_path: Optional target path

    Returns:
        Path the configuration was written to
    """
    path = get_config_path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config, f, default_flow_style=False, allow_unicode=True)
    logger.info("Configuration saved to %s", path)
    return path


def get_utc_offset_minutes(config: Dict[str, Any]) -> Optional[int]:
    """Return the configured ledger UTC offset in minutes, or None for local time."""
    raw = config.get("ledger", {}).get("utc_offset_minutes")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            "ledger.utc_offset_minutes must be an integer",
            details={"utc_offset_minutes": raw},
            original_error=exc
        )
