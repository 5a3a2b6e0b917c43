"""Centralised crash reporting.

Installs a global ``sys.excepthook`` capturing uncaught exceptions into a
dedicated rotating log file (``logs/crash.log``, 10 × 1 MiB by default) and an
asyncio exception handler that routes failures of orphaned tasks to the same
file, so a crashing background task is recorded instead of lost.

Public API:

* ``install()`` – register the exception hook (idempotent).
* ``install_loop_handler(loop)`` – route unhandled event-loop errors here.
* ``close()`` – restore the previous hook and close the handler (tests).

The log location is read from ``WORKER_BRIDGE_CRASH_LOG`` when the handler is
first created; nothing is touched on import.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import TracebackType
from typing import Any, Callable, Dict, Optional, Type

__all__ = [
    "install",
    "install_loop_handler",
    "close",
    "crash_log_path",
]

_DEFAULT_PATH = "logs/crash.log"
_MAX_BYTES = int(os.getenv("WORKER_BRIDGE_CRASH_MAX_BYTES", str(1 * 1024 * 1024)))
_BACKUP_COUNT = int(os.getenv("WORKER_BRIDGE_CRASH_BACKUP_COUNT", "10"))

_logger = logging.getLogger("WorkerBridge.CrashReporter")
_logger.propagate = False
_logger.setLevel(logging.ERROR)

_installed: bool = False
_previous_hook: Optional[Callable[..., Any]] = None


def crash_log_path() -> Path:
    return Path(os.getenv("WORKER_BRIDGE_CRASH_LOG", _DEFAULT_PATH))


def _ensure_handler() -> None:
    path = crash_log_path()
    target = os.path.abspath(path)
    # Attach our rotating file handler once per path; other handlers don't count.
    if any(isinstance(h, RotatingFileHandler) and h.baseFilename == target for h in _logger.handlers):
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    _logger.addHandler(handler)


def _flush() -> None:
    for handler in _logger.handlers:
        handler.flush()


def _handle_exception(
    exc_type: Type[BaseException],
    exc_value: BaseException,
    exc_tb: TracebackType | None,
) -> None:
    """``sys.excepthook`` implementation writing the traceback to the crash log."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return

    logging.getLogger(__name__).critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    try:
        _ensure_handler()
    except OSError as exc:  # pragma: no cover – unwritable log directory
        logging.getLogger(__name__).error("Cannot open crash log: %s", exc)
        return
    _logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    _flush()


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
    message = context.get("message", "Unhandled exception in event loop")
    exc = context.get("exception")
    exc_info = (type(exc), exc, exc.__traceback__) if isinstance(exc, BaseException) else None

    logging.getLogger(__name__).error("%s", message, exc_info=exc_info)
    try:
        _ensure_handler()
    except OSError:  # pragma: no cover
        return
    _logger.error("Event loop: %s", message, exc_info=exc_info)
    _flush()


def install() -> None:  # noqa: D401 – imperative API
    """Register the crash reporter as ``sys.excepthook`` (idempotent)."""
    global _installed, _previous_hook  # noqa: PLW0603
    if _installed:
        return
    _previous_hook = sys.excepthook
    sys.excepthook = _handle_exception  # type: ignore[assignment]
    _installed = True


def install_loop_handler(loop: asyncio.AbstractEventLoop) -> None:
    """Route exceptions nobody retrieved on *loop* to the crash log."""
    loop.set_exception_handler(_handle_loop_exception)


def close() -> None:  # noqa: D401 – public API
    """Restore the previous hook and close all handlers (primarily for tests)."""
    global _installed, _previous_hook  # noqa: PLW0603

    if _installed and sys.excepthook is _handle_exception:
        sys.excepthook = _previous_hook or sys.__excepthook__
    _installed = False
    _previous_hook = None

    for handler in list(_logger.handlers):
        handler.flush()
        handler.close()
        _logger.removeHandler(handler)
