"""
Logging and metrics for singleton-process.

Records logged by a Singleton carry the lock name through
``extra={"lock_name": ...}``; both log formats render it. Metrics go through
the OpenTelemetry API only. The application owns the meter provider and its
exporters, so nothing here configures them.
"""

import json
import logging
import os
import sys
from typing import Any, Optional

from .errors import ConfigurationError

try:
    from opentelemetry import metrics as otel_metrics
except ImportError:
    otel_metrics = None

PACKAGE_LOGGER = "singleton_process"
STANDARD_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(lock_name)s] %(message)s"

_handler: Optional[logging.Handler] = None


class LockNameFilter(logging.Filter):
    """Default ``lock_name`` to '-' for records logged outside a Singleton."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "lock_name"):
            record.lock_name = "-"
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with pid and lock name for fleet-wide grepping."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "pid": record.process,
            "message": record.getMessage(),
        }

        lock_name = getattr(record, "lock_name", "-")
        if lock_name != "-":
            entry["lock_name"] = lock_name

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False)


def setup_logging(
    level: Optional[str] = None,
    format: Optional[str] = None,
    force: bool = False
) -> None:
    """
    Attach a stderr handler to the ``singleton_process`` logger.

    Stdout is left to the CLI's own output.

    Args:
        level: Log level name. Defaults to SINGLETON_LOG_LEVEL or INFO.
        format: 'standard' or 'json'. Defaults to SINGLETON_LOG_FORMAT or 'standard'.
        force: Replace a handler installed by an earlier call.
    """
    global _handler

    if _handler is not None and not force:
        return

    level = (level or os.getenv("SINGLETON_LOG_LEVEL", "INFO")).upper()
    format = format or os.getenv("SINGLETON_LOG_FORMAT", "standard")

    if format == "json":
        formatter = JSONFormatter()
    elif format == "standard":
        formatter = logging.Formatter(STANDARD_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    else:
        raise ConfigurationError(f"Unknown log format: {format} (expected 'standard' or 'json')")

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, level, logging.INFO))

    if _handler is not None:
        package_logger.removeHandler(_handler)

    _handler = logging.StreamHandler(sys.stderr)
    _handler.addFilter(LockNameFilter())
    _handler.setFormatter(formatter)
    package_logger.addHandler(_handler)


def get_logger(name: str) -> logging.Logger:
    """Logger for a package module; sets up package logging on first use."""
    setup_logging()
    return logging.getLogger(name)


def metrics_enabled() -> bool:
    return os.getenv("SINGLETON_METRICS_ENABLED", "false").lower() in ("true", "1", "yes")


def get_meter() -> Optional[Any]:
    """
    OpenTelemetry meter for lock metrics.

    Returns None unless SINGLETON_METRICS_ENABLED is set and opentelemetry-api
    is installed. Without an application-configured provider the API hands
    out a no-op meter.
    """
    if not metrics_enabled():
        return None

    if otel_metrics is None:
        get_logger(__name__).warning(
            "SINGLETON_METRICS_ENABLED is set but opentelemetry-api is not installed. "
            "Install with: pip install singleton-process[metrics]"
        )
        return None

    return otel_metrics.get_meter(PACKAGE_LOGGER)


__all__ = [
    "JSONFormatter",
    "LockNameFilter",
    "setup_logging",
    "get_logger",
    "get_meter",
]
