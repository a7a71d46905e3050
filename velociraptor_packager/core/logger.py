#!/usr/bin/env python3
"""
Packager Logging
Console and build-log configuration for the packaging pipeline
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from velociraptor_packager.core.time_utils import utc_slug

LOGGER_NAME = "velociraptor_packager"


class PackagerFormatter(logging.Formatter):
    """Custom formatter with color support for console"""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.use_color = use_color

    def format(self, record):
        if self.use_color and sys.stderr.isatty():
            levelname = record.levelname
            if levelname in self.COLORS:
                record = logging.makeLogRecord(record.__dict__)
                record.levelname = (
                    f"{self.COLORS[levelname]}{levelname}{self.COLORS['RESET']}"
                )
        return super().format(record)


def setup_logging(
    log_dir: Optional[Path] = None,
    level: str = "INFO",
    log_to_file: bool = True,
    log_to_console: bool = True,
) -> logging.Logger:
    """
    Setup packager logging

    Args:
        log_dir: Directory for the build log
        level: Console logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_to_file: Enable the build log file
        log_to_console: Enable console logging (stderr)

    Returns:
        Logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(getattr(logging, level.upper()))
        console_handler.setFormatter(PackagerFormatter(use_color=True))
        logger.addHandler(console_handler)

    if log_to_file and log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"build_{utc_slug()}.log"

        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)  # Always DEBUG for file
        file_handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

        logger.info(f"Logging to file: {log_file}")

    return logger


def build_log_path(logger: Optional[logging.Logger] = None) -> Optional[Path]:
    """Return the build log file currently attached to ``logger``."""

    logger = logger or logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler):
            return Path(handler.baseFilename)
    return None


def get_module_logger(module_name: str) -> logging.Logger:
    """
    Get logger for a specific pipeline component

    Args:
        module_name: Component name

    Returns:
        Logger instance
    """
    return logging.getLogger(f"{LOGGER_NAME}.{module_name}")
