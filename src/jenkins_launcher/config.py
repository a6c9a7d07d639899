"""Environment-based settings and logging setup."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from jenkins_launcher.errors import ConfigurationError

DEFAULT_POLL_INTERVAL = 2.0
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _float_env(name: str, default: float | None) -> float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}.") from None
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {raw!r}.")
    return value


def get_poll_interval() -> float:
    """Seconds between two status polls of a launched build.

    Read from ``JENKINS_LAUNCH_POLL_INTERVAL``, defaulting to two seconds.
    """
    return _float_env("JENKINS_LAUNCH_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)


def get_request_timeout() -> float | None:
    return _float_env("JENKINS_TIMEOUT", None)


def get_store_path() -> Path:
    custom = os.environ.get("JENKINS_LAUNCH_STORE_PATH")
    if custom:
        return Path(custom)
    return Path.home() / ".jenkins_launcher" / "launches.json"


def configure_logging(level: str | None = None) -> None:
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
