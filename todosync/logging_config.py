"""Logging setup for the todosync client.

Logs go to ``<todosync home>/logs/local-YYYY-MM-DD.log``. A console handler
is added only at DEBUG level.
"""

import logging
from datetime import date
from pathlib import Path
from typing import Optional, Union

from .config import get_todosync_home

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
ROOT_LOGGER = "todosync"


def setup_todosync_logging(
    level: str = "INFO", log_dir: Optional[Union[str, Path]] = None
) -> logging.Logger:
    """Configure the ``todosync`` logger. Safe to call repeatedly."""
    logger = logging.getLogger(ROOT_LOGGER)
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    directory = get_todosync_home() / "logs" if log_dir is None else Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_file = directory / f"local-{date.today().isoformat()}.log"
    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    has_console = any(type(h) is logging.StreamHandler for h in logger.handlers)
    if resolved <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    return logger


def log_sync_cycle(
    state: str,
    uploaded: int = 0,
    downloaded: int = 0,
    conflicts: int = 0,
    error: Optional[str] = None,
) -> None:
    """One-line summary of a sync cycle."""
    logger = logging.getLogger(f"{ROOT_LOGGER}.sync")
    message = (
        f"sync | state={state} | uploaded={uploaded} | downloaded={downloaded} | "
        f"conflicts={conflicts}"
    )
    if error:
        logger.warning(f"{message} | error={error[:200]}")
    else:
        logger.info(message)
