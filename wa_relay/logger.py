"""Logging helpers for the relay."""

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "WaRelay") -> logging.Logger:
    """Return the named :class:`logging.Logger`.

    Handlers are installed once by :func:`configure_logging` from the entry
    point; modules only ask for a logger.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger for the process.

    Console output is always enabled. When ``log_file`` is given every record
    is also appended to that file.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
