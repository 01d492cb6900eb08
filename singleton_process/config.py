"""
Configuration loading for singleton locks.

Configuration can come from a YAML or JSON file, a dict, or keyword overrides,
with environment variables as the last fallback:

    name: nightly-report
    options:
      lock_expire_seconds: 3600
    persister:
      backend: sqlite
      db_path: /var/lib/app/singletons.sqlite
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import yaml

from .errors import ConfigurationError


_FILE_KEYS = {"name", "lock_expire_seconds", "options", "persister"}

# Environment variable -> persister option
_PERSISTER_ENV = {
    "db_path": "SINGLETON_DB_PATH",
    "lock_dir": "SINGLETON_LOCK_DIR",
    "collection": "SINGLETON_FIRESTORE_COLLECTION",
    "project": "SINGLETON_FIRESTORE_PROJECT",
}


def _parse_expire_seconds(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigurationError(f"lock_expire_seconds must be an integer, got {value!r}")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigurationError(f"lock_expire_seconds must be a whole number of seconds, got {value!r}")
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"lock_expire_seconds must be an integer, got {value!r}")
    if seconds < 0:
        raise ConfigurationError(f"lock_expire_seconds must not be negative, got {seconds}")
    return seconds


@dataclass
class SingletonOptions:
    """
    Lock controller options.

    ``lock_expire_seconds`` is the age after which a conflicting lock is
    considered abandoned and removed. None (or 0) disables expiry, so a
    conflicting lock stands until it is released manually.
    """
    lock_expire_seconds: Optional[int] = None

    def __post_init__(self):
        self.lock_expire_seconds = _parse_expire_seconds(self.lock_expire_seconds)

    @classmethod
    def coerce(cls, options: Union["SingletonOptions", Dict[str, Any], None]) -> "SingletonOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        if isinstance(options, dict):
            return cls(lock_expire_seconds=options.get("lock_expire_seconds"))
        raise ConfigurationError(f"Unsupported options type: {type(options).__name__}")


@dataclass
class SingletonConfig:
    """Everything needed to build a Singleton and its persister."""
    name: str
    options: SingletonOptions = field(default_factory=SingletonOptions)
    persister: Dict[str, Any] = field(default_factory=lambda: {"backend": "memory"})


def _read_config_file(config_file: str) -> Dict[str, Any]:
    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    with open(config_file, 'r') as f:
        if config_file.endswith('.json'):
            return json.load(f) or {}
        return yaml.safe_load(f) or {}


def load_config(
    config_file: Optional[str] = None,
    config_dict: Optional[Dict[str, Any]] = None,
    **overrides: Any
) -> SingletonConfig:
    """
    Build a SingletonConfig from a file, a dict and keyword overrides.

    Precedence is overrides, then file/dict values, then environment variables
    (SINGLETON_NAME, SINGLETON_LOCK_EXPIRE_SECONDS, SINGLETON_PERSISTER,
    SINGLETON_DB_PATH, SINGLETON_LOCK_DIR, SINGLETON_FIRESTORE_COLLECTION,
    SINGLETON_FIRESTORE_PROJECT). Overrides whose value is None are ignored.

    Args:
        config_file: Path to a YAML or JSON config file
        config_dict: Configuration dictionary (used when no file is given)
        **overrides: name, lock_expire_seconds, backend, or any persister option

    Returns:
        SingletonConfig
    """
    if config_file is not None:
        config = _read_config_file(config_file)
    else:
        config = dict(config_dict or {})

    if not isinstance(config, dict):
        raise ConfigurationError("Configuration must be a mapping")

    unknown = set(config) - _FILE_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    options = config.get("options") or {}
    if not isinstance(options, dict):
        raise ConfigurationError("'options' must be a mapping")
    unknown = set(options) - {"lock_expire_seconds"}
    if unknown:
        raise ConfigurationError(f"Unknown options: {', '.join(sorted(unknown))}")

    overrides = {k: v for k, v in overrides.items() if v is not None}

    name = overrides.pop("name", config.get("name") or os.getenv("SINGLETON_NAME"))
    if not name:
        raise ConfigurationError("Missing required parameter 'name'.")

    # options.lock_expire_seconds, or the same key at the top level
    file_expire = options.get("lock_expire_seconds", config.get("lock_expire_seconds"))
    expire = overrides.pop(
        "lock_expire_seconds",
        file_expire if file_expire is not None else os.getenv("SINGLETON_LOCK_EXPIRE_SECONDS")
    )

    persister = dict(config.get("persister") or {})
    backend = overrides.pop(
        "backend",
        persister.get("backend") or os.getenv("SINGLETON_PERSISTER", "memory")
    )
    persister["backend"] = backend
    for option, env_var in _PERSISTER_ENV.items():
        if option in overrides:
            persister[option] = overrides.pop(option)
        elif option not in persister and os.getenv(env_var):
            persister[option] = os.getenv(env_var)

    if overrides:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(overrides))}")

    return SingletonConfig(
        name=str(name),
        options=SingletonOptions(lock_expire_seconds=expire),
        persister=persister,
    )


__all__ = [
    "SingletonOptions",
    "SingletonConfig",
    "load_config",
]
