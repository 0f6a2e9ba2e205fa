from __future__ import annotations

import logging
import os
from typing import Final

_configured: bool = False
_DEFAULT_FORMAT: Final[str] = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Client libraries that log every request at INFO; scans issue hundreds
_NOISY_LOGGERS: Final[tuple[str, ...]] = (
    "googleapiclient.discovery",
    "googleapiclient.discovery_cache",
    "google.auth.transport.requests",
    "urllib3.connectionpool",
)


def _level_from_env(var: str, default: str) -> int:
    return getattr(logging, os.getenv(var, default).upper(), logging.INFO)


def _configure_root() -> None:
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(os.getenv("SUBTRACK_LOG_FORMAT", _DEFAULT_FORMAT), datefmt="%Y-%m-%d %H:%M:%S")
    )
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(_level_from_env("SUBTRACK_LOG_LEVEL", "INFO"))

    library_level = _level_from_env("SUBTRACK_LIBRARY_LOG_LEVEL", "WARNING")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Module logger; the first call installs one stream handler on the root logger."""
    _configure_root()
    logger = logging.getLogger(name)
    logger.setLevel(_level_from_env("SUBTRACK_LOG_LEVEL", "INFO"))
    return logger
