"""
Process logging setup.

Logs go to stderr and to a size-rotated file. Components only ever call
logging.getLogger(__name__); this module wires the handlers once at startup.
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .errors import ConfigError
from .settings import LogSettings


LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
LOG_BACKUP_COUNT = 3


def configure_logging(settings: LogSettings, logger_name: str = "certkeeper") -> logging.Logger:
    """
    Attach console and rotating file handlers to the package logger.

    Args:
        settings: Log file path, rotation size in MB and level
        logger_name: Logger to configure (the package root by default)

    Returns:
        The configured logger

    Raises:
        ConfigError: If the log file cannot be opened
    """
    log_path = Path(settings.logfilepath)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=settings.maxlogsize * 1024 * 1024,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as e:
        raise ConfigError(f"Failed to initialize log file {log_path}: {e}") from e

    formatter = logging.Formatter(LOG_FORMAT)
    file_handler.setFormatter(formatter)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger(logger_name)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.addHandler(console_handler)
    root.addHandler(file_handler)
    root.setLevel(settings.level)
    root.propagate = False

    root.info("[CERT-LOG] Logger initialized, writing to %s", log_path)
    return root
