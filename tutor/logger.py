"""
Logging Configuration Module

Provides centralized logging setup with configurable output to console and file.
Uses the standard library logging module with custom formatting.

Usage:
    from tutor.logger import get_logger, TurnLogger

    logger = get_logger(__name__)
    turn_log = TurnLogger(logger, session_id="s-1", turn_id="a1b2")
    turn_log.info("Routing to math_specialist")
"""

import logging
import sys
from pathlib import Path
from typing import Any, MutableMapping, Optional, Tuple


class ColoredFormatter(logging.Formatter):
    """
    Custom formatter that adds colors to log output for better readability.
    """

    COLORS = {
        logging.DEBUG: "\033[36m",     # Cyan
        logging.INFO: "\033[32m",      # Green
        logging.WARNING: "\033[33m",   # Yellow
        logging.ERROR: "\033[31m",     # Red
        logging.CRITICAL: "\033[1;31m" # Bold Red
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with colors for terminal output."""
        color = self.COLORS.get(record.levelno, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


class TurnLogger(logging.LoggerAdapter):
    """
    Logger adapter that prefixes every message with session and turn ids.

    Each pipeline turn creates one of these so that interleaved turns of
    different sessions stay readable in a single log stream.
    """

    def __init__(self, logger: logging.Logger, session_id: str, turn_id: str):
        super().__init__(logger, {"session_id": session_id, "turn_id": turn_id})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['session_id']}:{self.extra['turn_id']}] {msg}", kwargs


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    use_colors: bool = True
) -> None:
    """
    Configure the root logger with console and optional file handlers.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        use_colors: Whether to use colored output in console
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)

    if use_colors and sys.stdout.isatty():
        console_format = ColoredFormatter(
            "%(asctime)s │ %(levelname)s │ %(name)s │ %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
    else:
        console_format = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    console_handler.setFormatter(console_format)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_format = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        file_handler.setFormatter(file_format)
        root_logger.addHandler(file_handler)

    # aiohttp and the speech SDK are chatty at DEBUG
    logging.getLogger("aiohttp").setLevel(max(numeric_level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Usually __name__ of the calling module

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


_initialized = False


def init_logging() -> None:
    """
    Initialize logging from settings. Call once at application startup.
    """
    global _initialized
    if _initialized:
        return

    from tutor.config import settings
    setup_logging(
        level=settings.logging.level,
        log_file=settings.logging.file
    )

    _initialized = True
