"""Logging configuration and utilities for Roundtable.

This module provides centralized logging setup and helper functions
for consistent logging across the package.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.logging import RichHandler


# Global logger cache
_loggers: dict[str, logging.Logger] = {}


def setup_logging(
    level: str = "WARNING",
    log_dir: Optional[Path] = None,
    session_id: Optional[str] = None,
    log_to_file: bool = True,
) -> Optional[Path]:
    """Set up logging configuration for the package.

    Args:
        level: Console logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_dir: Directory for log files. Defaults to 'logs'.
        session_id: Unique session identifier for log file naming.
        log_to_file: Also write a DEBUG-level log file.

    Returns:
        Path to the log file, or None when file logging is disabled.
    """
    log_level = getattr(logging, level.upper(), logging.WARNING)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = RichHandler(
        rich_tracebacks=True,
        show_time=True,
        show_path=False,
    )
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(console_handler)

    log_file = None
    if log_to_file:
        if log_dir is None:
            log_dir = Path("logs")
        log_dir.mkdir(parents=True, exist_ok=True)

        if session_id is None:
            session_id = datetime.now().strftime("%Y-%m-%d_%H%M%S")

        log_file = log_dir / f"session_{session_id}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)

    logger = get_logger(__name__)
    logger.debug(f"Logging initialized - console level: {level}")
    if log_file:
        logger.debug(f"Log file: {log_file.absolute()}")

    return log_file


def get_logger(name: str) -> logging.Logger:
    """Get or create a logger with the specified name.

    Args:
        name: Logger name (typically __name__ of the module).

    Returns:
        Configured logger instance.
    """
    if name not in _loggers:
        _loggers[name] = logging.getLogger(name)
    return _loggers[name]


def log_state_snapshot(snapshot: dict[str, Any]) -> None:
    """Log a flat summary of store state for debugging.

    Args:
        snapshot: Mapping of field name to value
    """
    logger = get_logger("roundtable.debug")
    logger.debug("=" * 50)
    logger.debug("STORE STATE SNAPSHOT")
    logger.debug("=" * 50)

    for key, value in snapshot.items():
        if isinstance(value, (list, tuple, set, frozenset)):
            logger.debug(f"{key}: [{len(value)} items]")
        else:
            logger.debug(f"{key}: {value}")

    logger.debug("=" * 50)
