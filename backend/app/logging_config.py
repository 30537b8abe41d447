"""Logging helpers for the todosync backend.

All backend loggers live under the ``todosync`` namespace so one call to
``setup_logging`` configures every module.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
ROOT_LOGGER = "todosync"


def setup_logging(level: str = "INFO") -> logging.Logger:
    """Configure the backend root logger with a single stderr handler."""
    logger = logging.getLogger(ROOT_LOGGER)
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    if not any(getattr(h, "_todosync_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._todosync_handler = True
        logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the todosync namespace."""
    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


_sync_logger = get_logger("todosync.sync.ops")
_auth_logger = get_logger("todosync.auth.events")


def log_sync_operation(
    owner: str | int,
    action: str,
    client_id: str | None,
    server_id: int | None,
    success: bool,
    error: str | None = None,
) -> None:
    """Log a single per-item sync outcome."""
    status = "ok" if success else "failed"
    message = (
        f"{action} | user={owner} | client_id={client_id} | "
        f"server_id={server_id} | {status}"
    )
    if error:
        message += f" | error={error[:200]}"
    if success:
        _sync_logger.info(message)
    else:
        _sync_logger.warning(message)


def log_auth_event(event: str, subject: str, success: bool, detail: str | None = None) -> None:
    """Log an authentication event (register, login, verify)."""
    message = f"{event} | subject={subject} | {'ok' if success else 'failed'}"
    if detail:
        message += f" | {detail}"
    if success:
        _auth_logger.info(message)
    else:
        _auth_logger.warning(message)
