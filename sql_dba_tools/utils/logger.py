"""Centralized logging configuration for SQL DBA Tools."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from datetime import datetime


def setup_logger(
    name: str = "sql_dba_tools",
    log_dir: str | None = "logs",
    level: int = logging.INFO,
    console_level: int = logging.WARNING,
) -> logging.Logger:
    """Configure and return the package logger.

    Args:
        name: Logger name. Module loggers obtained with ``get_logger(__name__)``
            are children of ``sql_dba_tools`` and inherit these handlers.
        log_dir: Directory to store log files. ``None`` disables the file handler.
        level: Logging level of the logger itself
        console_level: Minimum level echoed to the console

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    logger.setLevel(level)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        # One file per day
        log_file = log_path / f"sql_dba_tools_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get or create a logger instance.

    Args:
        name: Logger name (typically __name__ from calling module)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
