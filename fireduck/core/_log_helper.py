__all__ = ["configure_logging", "get_logger", "parse_log_level", "warn"]

import logging
import os
import threading

ROOT_LOGGER = "fireduck"
LOG_LEVEL_ENV = "LOG_LEVEL"
LOG_FILE_ENV = "LOG_FILE"
LOG_FORMAT = "[%(name)s %(levelname)s] %(message)s"
LOG_FILE_FORMAT = "%(asctime)s [%(name)s %(levelname)s] %(message)s"

# NONE is one step above CRITICAL so nothing gets through.
LEVEL_NONE = logging.CRITICAL + 10

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "NONE": LEVEL_NONE,
    "OFF": LEVEL_NONE,
}

_lock = threading.Lock()
_configured = False
_file_handler: logging.FileHandler | None = None


def parse_log_level(value: str | None) -> int:
    if value is None:
        return LEVEL_NONE
    return _LEVELS.get(value.strip().upper(), LEVEL_NONE)


def configure_logging(
    level: str | int | None = None,
    log_file: str | None = None,
    force: bool = False,
):
    """Configure the fireduck logger hierarchy.

    Args:
        level:
            Level name or number. Defaults to the LOG_LEVEL
            environment variable; unknown names disable logging.
        log_file:
            File that receives log records in addition to stderr.
            Defaults to the LOG_FILE environment variable.
        force:
            Reconfigure even if already configured.
    """
    global _configured, _file_handler
    with _lock:
        if _configured and not force:
            return
        if level is None:
            level = parse_log_level(os.environ.get(LOG_LEVEL_ENV))
        elif isinstance(level, str):
            level = parse_log_level(level)
        if log_file is None:
            log_file = os.environ.get(LOG_FILE_ENV) or None
        logger = logging.getLogger(ROOT_LOGGER)
        logger.setLevel(level)
        if _file_handler is not None:
            logger.removeHandler(_file_handler)
            _file_handler.close()
            _file_handler = None
        if not logger.handlers and not logging.getLogger().handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
        if log_file:
            _file_handler = logging.FileHandler(log_file, encoding="utf-8")
            _file_handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT))
            logger.addHandler(_file_handler)
        _configured = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def warn(message: str):
    get_logger(ROOT_LOGGER).warning(message)
