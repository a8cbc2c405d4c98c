"""Logging configuration for the orchestrator.

This module provides centralized logging configuration using Loguru.
It sets up logging to both file and console with proper formatting
and log rotation. Library modules only import ``logger``; the CLI calls
:func:`setup_logging` once at startup.
"""

import sys
from pathlib import Path

from loguru import logger

# Default log directory in user's home directory
LOG_DIR = Path.home() / ".bulletproof" / "logs"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(level: str = "INFO", log_dir: Path | None = None) -> Path:
    """Replace loguru's default sink with console and rotating file sinks.

    Args:
        level: Minimum level for the console sink
        log_dir: Directory for ``bulletproof.log`` (default: ``LOG_DIR``)

    Returns:
        Path: The log file path
    """
    target_dir = log_dir or LOG_DIR
    target_dir.mkdir(parents=True, exist_ok=True)
    log_file = target_dir / "bulletproof.log"

    logger.remove()  # Remove default handler

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level=level,
        backtrace=True,
        diagnose=False,
    )

    # Add file handler with rotation
    logger.add(
        log_file,
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        format=FILE_FORMAT,
        level="DEBUG",
        backtrace=True,
        diagnose=False,
        enqueue=True,
    )
    return log_file


__all__ = ["LOG_DIR", "logger", "setup_logging"]
