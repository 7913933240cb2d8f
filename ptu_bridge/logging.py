"""Logging setup for the ptu-bridge service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Levels applied to chatty loggers unless network logging is requested.
_QUIET_LEVELS = {
    "paho": logging.WARNING,
    "aiohttp.access": logging.WARNING,
    "ptu_bridge.adapters": logging.INFO,
}


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Install console (and optionally file) handlers on the root logger.

    Parameters
    ----------
    level:
        Level name for the service, e.g. "DEBUG".
    log_path:
        Optional file that receives the same records as the console.
    log_network:
        Leave broker, HTTP access and link adapter loggers at the service
        level instead of quieting them.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    for name, quiet_level in _QUIET_LEVELS.items():
        logging.getLogger(name).setLevel(logging.NOTSET if log_network else quiet_level)
