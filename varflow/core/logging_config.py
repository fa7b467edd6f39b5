#!/usr/bin/env python3
"""Logging configuration using loguru for varflow."""

import contextlib
from datetime import datetime
from pathlib import Path
from typing import Literal

from loguru import logger
from rich.console import Console
from rich.logging import RichHandler

# Track file handler ID so we can avoid duplicates
_file_handler_id: int | None = None

# Default log format for files
LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(level: LogLevel = "INFO", monochrome: bool = False) -> None:
    """Send log records to a rich console on stderr.

    The per-run log file is attached separately with :func:`add_file_handler`
    once the output directory is known.

    Args:
        level: Minimum log level to display.
        monochrome: Disable colors and markup on the console.
    """
    logger.remove()

    # At INFO, only the CLI and the pipeline report progress; everything else needs WARNING+
    console_filter = {"varflow.cli": "INFO", "varflow.pipeline": "INFO", "": "WARNING"} if level == "INFO" else None

    logger.add(
        RichHandler(
            console=Console(stderr=True, no_color=monochrome),
            markup=not monochrome,
            show_time=False,
            show_level=True,
            show_path=False,
        ),
        format="{message}",
        level=level,
        filter=console_filter,
    )


def get_logger(name: str | None = None):
    """Get a logger instance.

    Args:
        name: Optional name for the logger context.

    Returns:
        Configured logger instance.
    """
    if name:
        return logger.bind(name=name)
    return logger


def get_log_path(output_dir: Path | str) -> Path:
    """Generate timestamped log file path.

    Args:
        output_dir: Directory where log file will be created.

    Returns:
        Path to the log file with format: varflow_YYYYMMDD_HHMMSS.log
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return Path(output_dir) / f"varflow_{timestamp}.log"


def add_file_handler(log_path: Path | str, level: LogLevel = "DEBUG") -> int:
    """Add a file handler to the logger.

    Each run logs to its own timestamped file. Only one file handler is
    active at a time, so repeated runs in the same process do not write
    duplicate lines.

    Args:
        log_path: Path to the log file.
        level: Minimum log level for file logging.

    Returns:
        Handler ID that can be used to remove the handler later.
    """
    global _file_handler_id

    if _file_handler_id is not None:
        with contextlib.suppress(ValueError):
            logger.remove(_file_handler_id)

    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    _file_handler_id = logger.add(
        str(log_path),
        format=LOG_FORMAT,
        level=level,
        colorize=False,
    )

    return _file_handler_id


def log_subprocess_stderr(stderr: str | bytes | None, tool_name: str) -> None:
    """Log captured stderr from an external tool.

    Args:
        stderr: Stderr output from subprocess (string or bytes).
        tool_name: Name of the external tool for log context.
    """
    if stderr is None:
        return

    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")

    for line in stderr.strip().splitlines():
        if line.strip():
            logger.debug(f"[{tool_name}] {line}")
