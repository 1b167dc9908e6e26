"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Libraries whose debug output drowns the per-tick telemetry lines.
_NETWORK_LOGGERS = ("paho", "paho.mqtt", "aiohttp.access", "asyncio")


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Configure root logging handlers.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO". Unknown names fall back to INFO.
    log_path:
        Optional file that receives a copy of every record.
    log_network:
        Keep MQTT and HTTP library loggers at the root level instead of
        raising them to WARNING.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    if not log_network:
        for name in _NETWORK_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
