"""Root logging setup for the fabbot process."""

from __future__ import annotations

import contextlib
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, List, Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 500 * 1024
LOG_BACKUP_COUNT = 2

# pyusb and aiofiles are chatty at DEBUG; keep them at ERROR unless asked.
QUIET_LOGGERS = ("usb", "aiofiles")


def coerce_level(level: Union[int, str]) -> int:
    if isinstance(level, str):
        name = level.upper()
        if not isinstance(getattr(logging, name, None), int):
            raise ValueError(f"Unknown log level '{level}'")
        return getattr(logging, name)
    return int(level)


def configure_logging(
    level: Union[int, str] = logging.INFO,
    *,
    console: bool = True,
    log_file: Optional[Union[str, Path]] = None,
    quiet_loggers: Iterable[str] = QUIET_LOGGERS,
) -> List[logging.Handler]:
    """Replace the root handlers with a console and/or rotating file handler.

    Args:
        level: Logging level (int or name such as "info").
        console: Emit records to stdout.
        log_file: Optional path for a rotating log file.
        quiet_loggers: Third-party logger names forced to ERROR.

    Returns:
        The handlers installed on the root logger.
    """
    numeric_level = coerce_level(level)
    root = logging.getLogger()

    for handler in list(root.handlers):
        root.removeHandler(handler)
        with contextlib.suppress(Exception):
            handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers: List[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler(sys.stdout))

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path,
                maxBytes=MAX_LOG_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        )

    if not handlers:
        handlers.append(logging.NullHandler())

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.setLevel(numeric_level)
    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.ERROR)

    return handlers


__all__ = ["configure_logging", "coerce_level", "LOG_FORMAT", "LOG_DATEFMT", "QUIET_LOGGERS"]
