"""
Logging setup for the bank feed reconciliation engine.

Everything logs under the ``bank_feed_recon`` namespace. The console gets the
configured level; the optional rotating file always records DEBUG with source
locations so sync and import runs can be traced after the fact.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..config import LoggingConfig

PACKAGE_LOGGER = "bank_feed_recon"
FILE_FORMAT = (
    "%(asctime)s %(levelname)-8s [%(threadName)s] %(name)s "
    "%(filename)s:%(lineno)d %(message)s"
)

# HTTP and SQL libraries are chatty at INFO/DEBUG
NOISY_LIBRARIES = ("urllib3", "requests", "sqlalchemy.engine", "sqlalchemy.pool")


def level_from_name(name: str) -> int:
    """Translate a configured level name ("INFO", "debug") to a logging level."""
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(settings: "LoggingConfig", verbose: bool = False) -> logging.Logger:
    """
    Install console and file handlers on the package logger.

    Args:
        settings: Logging section of the engine configuration
        verbose: Force DEBUG on the console, overriding settings.level

    Returns:
        The package logger
    """
    console_level = logging.DEBUG if verbose else level_from_name(settings.level)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG if settings.file else console_level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(settings.format))
    package_logger.addHandler(console)

    if settings.file:
        log_path = Path(settings.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_path,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        rotating.setLevel(logging.DEBUG)
        rotating.setFormatter(logging.Formatter(FILE_FORMAT))
        package_logger.addHandler(rotating)

    library_level = level_from_name(settings.library_level)
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(library_level)

    package_logger.debug(
        f"Logging configured: console {logging.getLevelName(console_level)}, "
        f"file {settings.file or 'disabled'}"
    )
    return package_logger
