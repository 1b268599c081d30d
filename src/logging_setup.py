"""Root logger setup: console always, rotating file when LOG_DIR is set."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

from config import clean_env, parse_int

LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 10

# aiosqlite logs every proxied call at DEBUG.
NOISY_LOGGERS = ("aiosqlite",)


def _file_handler(service_name: str) -> RotatingFileHandler | None:
    log_dir = clean_env(os.getenv("LOG_DIR"))
    if not log_dir:
        return None
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        directory / (clean_env(os.getenv("LOG_FILE_NAME")) or f"{service_name}.log"),
        maxBytes=parse_int(os.getenv("LOG_MAX_BYTES"), DEFAULT_LOG_MAX_BYTES),
        backupCount=parse_int(os.getenv("LOG_BACKUP_COUNT"), DEFAULT_LOG_BACKUP_COUNT),
        encoding="utf-8",
    )


def configure_logging(service_name: str) -> None:
    level = getattr(logging, (clean_env(os.getenv("LOG_LEVEL")) or "INFO").upper(), logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_error: OSError | None = None
    try:
        file_handler = _file_handler(service_name)
    except OSError as error:
        file_handler = None
        file_error = error
    if file_handler is not None:
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))

    if file_error is not None:
        root_logger.warning("File logging disabled for %s: %s", service_name, file_error)
