"""
Logging configuration for nano-seq.

Features:
- Timestamped records with level and module name
- Console output with color-coded levels, optional plain-text file output
- Module-specific loggers (`nanoseq.nn.sequencer`, `nanoseq.data.labelme`, ...)
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING
from typing import Optional

if TYPE_CHECKING:
    from nanoseq.config import LoggingConfig


DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class Colors:
    """ANSI color codes for different log levels."""
    GREY = '\033[90m'
    BLUE = '\033[94m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD_RED = '\033[91m\033[1m'
    RESET = '\033[0m'


class ColorFormatter(logging.Formatter):
    """Console formatter that colors the level name."""

    COLORS = {
        logging.DEBUG: Colors.GREY,
        logging.INFO: Colors.BLUE,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD_RED,
    }

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        if not (self.use_colors and record.levelno in self.COLORS):
            return super().format(record)
        # Color a copy of the level name only; handlers sharing the record
        # (e.g. the file handler) must still see the plain name.
        levelname = record.levelname
        record.levelname = f"{self.COLORS[record.levelno]}{levelname}{Colors.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_colors: bool = True,
    log_format: Optional[str] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to a log file (parent directories are created)
        use_colors: Enable color-coded console output
        log_format: Custom format string (default: timestamp | level | module: message)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format is None:
        log_format = DEFAULT_FORMAT
        date_format = DEFAULT_DATE_FORMAT
    else:
        date_format = None

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColorFormatter(log_format, datefmt=date_format, use_colors=use_colors))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, mode='a')
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        root_logger.addHandler(file_handler)


def setup_logging_from_config(config: "LoggingConfig") -> None:
    """Configure logging from a `LoggingConfig`."""
    setup_logging(
        log_level=config.log_level,
        log_file=config.log_file,
        use_colors=config.use_colors,
        log_format=config.log_format,
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger for a module.

    Usage:
        from nanoseq.logging import get_logger
        logger = get_logger(__name__)

        logger.info("Parsed %d masks", n)
        logger.debug("Step %d: allocated %d buffers", step, count)
    """
    return logging.getLogger(name)


def quick_setup(level: str = "INFO") -> None:
    """Quick console-only setup for scripts."""
    setup_logging(log_level=level)
