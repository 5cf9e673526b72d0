"""
Graceful Error Handler - background failures become log lines, not crashes.

Classifies failures from the refresh cadences by how much they degrade
what the user sees:

- TRANSIENT: the fast price tick or a globals sample missed; simulation
  covers it and nobody needs to know.
- DEGRADED: the order book / trade refresh or part of the initial load
  failed; the feed indicator drops to "partial".
- CRITICAL: every source failed on the initial load; the view runs on
  simulated data.

Nothing here raises.
"""

from __future__ import annotations

import asyncio
import enum
import traceback
from typing import Any, Awaitable, Callable, Optional

from marketpulse.core.logger import get_logger
from marketpulse.exchange.exceptions import FetchError, InvariantViolation

logger = get_logger("error_handler")


class ErrorSeverity(enum.Enum):
    CRITICAL = "critical"
    DEGRADED = "degraded"
    TRANSIENT = "transient"


# Cadences whose failures are covered by local simulation.
_SILENT_COMPONENTS = frozenset({"price_tick", "globals_sample"})

# Cadences whose failures show up in the feed indicator.
_DEGRADING_COMPONENTS = frozenset({"book_refresh", "initial_load"})


class GracefulErrorHandler:
    """
    Centralized error classification and handling.

    Usage::

        handler = GracefulErrorHandler()
        await handler.handle(err, component="book_refresh", context="BTCUSDT")
    """

    def __init__(self, notify_fn: Optional[Callable[[str], Awaitable[Any]]] = None):
        self._notify_fn = notify_fn
        self.counts = {s: 0 for s in ErrorSeverity}

    def set_notify_fn(self, fn: Callable[[str], Awaitable[Any]]) -> None:
        self._notify_fn = fn

    def classify_error(
        self,
        error: BaseException,
        *,
        component: str = "",
        total_failure: bool = False,
    ) -> ErrorSeverity:
        """Classify an error by severity based on where it came from."""
        comp = component.lower().strip()

        if comp == "initial_load" and total_failure:
            return ErrorSeverity.CRITICAL

        if comp in _SILENT_COMPONENTS:
            return ErrorSeverity.TRANSIENT

        if comp in _DEGRADING_COMPONENTS:
            return ErrorSeverity.DEGRADED

        if isinstance(error, InvariantViolation):
            return ErrorSeverity.DEGRADED

        if isinstance(error, FetchError) and error.transient:
            return ErrorSeverity.TRANSIENT

        if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return ErrorSeverity.TRANSIENT

        return ErrorSeverity.DEGRADED

    async def handle(
        self,
        error: BaseException,
        *,
        component: str = "",
        context: str = "",
        total_failure: bool = False,
    ) -> ErrorSeverity:
        """Classify, log, and optionally notify. Returns the severity."""
        severity = self.classify_error(error, component=component, total_failure=total_failure)
        self.counts[severity] += 1

        msg = (
            f"[{severity.value.upper()}] {component or 'unknown'}"
            f"{(' / ' + context) if context else ''}: "
            f"{type(error).__name__}: {error}"
        )

        if severity == ErrorSeverity.CRITICAL:
            logger.critical(msg)
        elif severity == ErrorSeverity.DEGRADED:
            tb = traceback.format_exception(type(error), error, error.__traceback__)
            logger.warning(msg, traceback="".join(tb[-3:]) if error.__traceback__ else None)
        else:
            logger.info(msg)

        if severity in (ErrorSeverity.CRITICAL, ErrorSeverity.DEGRADED) and self._notify_fn:
            try:
                await self._notify_fn(msg)
            except Exception as e:
                logger.debug("Error notification failed", error=repr(e))

        return severity
