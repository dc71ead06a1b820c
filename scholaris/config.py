"""
Platform configuration: defaults, then an optional JSON file, then the
environment (a ``.env`` file is loaded first if present).
"""

import json
import logging
import os
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    'database_path': "scholaris.db",
    'host': "0.0.0.0",
    'port': 8000,
    'log_level': "INFO",
    'biometric_device_token': None,
    'cors_origins': ["*"],
    'capacity_retry_limit': 3,
    'bootstrap_admin_id': None,
}

ENVIRONMENT_KEYS = {
    'database_path': "SCHOLARIS_DATABASE_PATH",
    'host': "SCHOLARIS_HOST",
    'port': "SCHOLARIS_PORT",
    'log_level': "SCHOLARIS_LOG_LEVEL",
    'biometric_device_token': "BIOMETRIC_DEVICE_TOKEN",
    'cors_origins': "SCHOLARIS_CORS_ORIGINS",
    'capacity_retry_limit': "SCHOLARIS_CAPACITY_RETRY_LIMIT",
    'bootstrap_admin_id': "SCHOLARIS_BOOTSTRAP_ADMIN_ID",
}

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _coerce(key: str, value: Any) -> Any:
    if key in ('port', 'capacity_retry_limit'):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{key} must be an integer, got {value!r}", details={"key": key})
    if key == 'cors_origins' and isinstance(value, str):
        return [origin.strip() for origin in value.split(",") if origin.strip()]
    if key == 'log_level':
        return str(value).upper()
    return value


def _validate(config: Dict[str, Any]) -> None:
    if not 0 < config['port'] < 65536:
        raise ConfigurationError(f"port out of range: {config['port']}", details={"key": "port"})
    if config['capacity_retry_limit'] < 1:
        raise ConfigurationError("capacity_retry_limit must be at least 1",
                                 details={"key": "capacity_retry_limit"})
    if config['log_level'] not in _LOG_LEVELS:
        raise ConfigurationError(f"Unknown log level {config['log_level']}", details={"key": "log_level"})
    if not config['database_path']:
        raise ConfigurationError("database_path must not be empty", details={"key": "database_path"})


def load_config(path: Optional[str] = None, env_file: Optional[str] = None) -> Dict[str, Any]:
    """Build the platform configuration.

    Args:
        path: Optional JSON file whose keys override the defaults.
        env_file: Optional dotenv file; ``.env`` in the working directory otherwise.
    """
    load_dotenv(env_file)
    config = dict(DEFAULT_CONFIG)

    if path:
        try:
            with open(path, 'r') as f:
                overrides = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}", details={"path": path})
        if not isinstance(overrides, dict):
            raise ConfigurationError("Configuration file must contain a JSON object", details={"path": path})
        unknown = set(overrides) - set(DEFAULT_CONFIG)
        if unknown:
            logger.warning("Ignoring unknown configuration keys: %s", ", ".join(sorted(unknown)))
        for key in DEFAULT_CONFIG:
            if key in overrides:
                config[key] = _coerce(key, overrides[key])

    for key, variable in ENVIRONMENT_KEYS.items():
        value = os.getenv(variable)
        if value is not None and value != "":
            config[key] = _coerce(key, value)

    _validate(config)
    return config
