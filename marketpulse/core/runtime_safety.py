"""
Runtime Safety Hooks

Last-resort logging for failures that escape the engine's own handling:
uncaught exceptions on the main thread or worker threads, fatal signals,
and asyncio callbacks or tasks whose exception nobody retrieved.

Hooks never raise.
"""

from __future__ import annotations

import asyncio
import faulthandler
import signal
import sys
import threading
import traceback
from pathlib import Path
from typing import Any, Optional, TextIO

# Held open for the process lifetime so faulthandler can write during shutdown.
_FAULT_FILE: Optional[TextIO] = None


def _format_exception(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def _enable_faulthandler(log_dir: str) -> None:
    global _FAULT_FILE
    if _FAULT_FILE is not None:
        return
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    _FAULT_FILE = open(path / "faults.log", "a", encoding="utf-8")
    faulthandler.enable(file=_FAULT_FILE, all_threads=True)
    if hasattr(signal, "SIGUSR1"):
        faulthandler.register(signal.SIGUSR1, file=_FAULT_FILE, all_threads=True)


def install_global_exception_handlers(logger: Any, log_dir: str = "logs") -> None:
    """Route uncaught exceptions (main thread and worker threads) to ``logger``."""
    try:
        _enable_faulthandler(log_dir)
    except OSError as e:
        logger.warning("faulthandler unavailable", error=repr(e))

    previous_hook = sys.excepthook

    def _excepthook(exctype, value, tb):  # type: ignore[no-untyped-def]
        if not issubclass(exctype, KeyboardInterrupt):
            try:
                logger.critical(
                    "Unhandled exception",
                    error_type=exctype.__name__,
                    error=str(value),
                    traceback="".join(traceback.format_exception(exctype, value, tb)),
                )
            except Exception:
                pass
        previous_hook(exctype, value, tb)

    sys.excepthook = _excepthook

    previous_thread_hook = threading.excepthook

    def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
        exc = args.exc_value
        try:
            logger.error(
                "Unhandled exception in thread",
                thread=getattr(args.thread, "name", "unknown"),
                error_type=args.exc_type.__name__,
                error=str(exc),
                traceback=_format_exception(exc) if exc is not None else None,
            )
        except Exception:
            pass
        previous_thread_hook(args)

    threading.excepthook = _thread_excepthook


def install_asyncio_exception_handler(loop: asyncio.AbstractEventLoop, logger: Any) -> None:
    """Log "exception was never retrieved" and failing loop callbacks."""

    def _handler(_loop: asyncio.AbstractEventLoop, context: dict) -> None:
        message = context.get("message", "asyncio exception")
        exc = context.get("exception")
        task = context.get("task") or context.get("future")
        try:
            if isinstance(exc, BaseException):
                logger.error(
                    "Asyncio exception",
                    message=message,
                    task=getattr(task, "get_name", lambda: None)(),
                    error_type=type(exc).__name__,
                    error=str(exc),
                    traceback=_format_exception(exc),
                )
            else:
                details = {k: repr(v) for k, v in context.items() if k not in ("handle", "future", "task")}
                logger.error("Asyncio exception", message=message, context=details)
        except Exception:
            pass

    loop.set_exception_handler(_handler)
