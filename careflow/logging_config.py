"""
Logging setup for the careflow processes.

The API server and the recovery worker call :func:`setup_logging` once at
startup. Library modules only obtain named loggers (``rule_engine``,
``multiplexer``, ``change_capture`` ...).
"""

import logging
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(threadName)s]: %(message)s"


def _level_from_env() -> int:
    return getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)


def setup_logging(level: Optional[int] = None, log_file: Optional[str] = None) -> None:
    """Configure the root logger.

    ``level`` defaults to ``LOG_LEVEL`` from the environment and ``log_file``
    to ``LOG_FILE``. Thread names are part of the format because channel
    supervisors and workflow workers log concurrently.
    """
    log_file = log_file or os.getenv("LOG_FILE")
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level if level is not None else _level_from_env(),
        format=LOG_FORMAT,
        handlers=handlers,
    )