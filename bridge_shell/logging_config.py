"""Logging configuration module.

This module centralises project-wide logging setup. Calling
:func:`setup_logging` once (at application start-up) configures the root
logger with:
    • RotatingFileHandler → logs/app.log (size-based rotation)
    • StreamHandler       → console for developer visibility

Subsequent calls are no-ops thanks to an idempotent guard.  Worker output is
routed through the dedicated ``worker`` logger so it can be filtered apart
from the bridge's own records.
"""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path

__all__ = ["setup_logging", "reset_logging", "LOG_FORMAT"]

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Prevent double configuration if called multiple times
_CONFIGURED: bool = False
_HANDLERS: list[logging.Handler] = []


def setup_logging(
    *,
    log_file: str | os.PathLike[str] = "logs/app.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10 MiB per file
    backup_count: int = 5,
    level: int | str = logging.INFO,
) -> None:
    """Configure the root logger with a rotating file + console handler.

    Parameters
    ----------
    log_file: path-like or str
        Destination path for the primary log file. Intermediate directories
        will be created automatically.
    max_bytes: int
        Rotate the log file once it exceeds this many bytes.
    backup_count: int
        Number of rotated log files to keep (``app.log.1`` → ``app.log.N``).
    level: int | str
        Minimum log level captured by the root logger.  Names such as
        ``"debug"`` are accepted case-insensitively.
    """

    global _CONFIGURED  # noqa: PLW0603 – module-level singleton guard

    if _CONFIGURED:
        return

    if isinstance(level, str):
        level = level.upper()

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = RotatingFileHandler(
        filename=log_path,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    _HANDLERS[:] = [file_handler, console_handler]

    # pyzmq's asyncio integration is chatty at DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    _CONFIGURED = True


def reset_logging() -> None:
    """Remove the handlers installed by :func:`setup_logging` (tests)."""
    global _CONFIGURED  # noqa: PLW0603

    root_logger = logging.getLogger()
    for handler in _HANDLERS:
        root_logger.removeHandler(handler)
        handler.close()
    _HANDLERS.clear()
    _CONFIGURED = False
