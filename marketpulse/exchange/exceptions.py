"""Typed error hierarchy for market-data fetches and local order commands.

Fetch errors are returned as values by the gateway (``FetchResult.error``)
so callers can tell transient from malformed failures without try/except.
Order errors are raised to the caller of the command.
"""

from __future__ import annotations


class MarketDataError(Exception):
    """Base class for all engine errors."""


# ---------------------------------------------------------------------------
# Fetch failures (returned, never raised past the gateway)
# ---------------------------------------------------------------------------

class FetchError(MarketDataError):
    """A single external fetch did not produce a usable payload."""

    transient: bool = True

    def __init__(self, message: str = "", *, source: str = ""):
        super().__init__(message)
        self.source = source


class TransientFetchError(FetchError):
    """Timeout, 5xx or network failure. Next tick may succeed."""


class RateLimitError(TransientFetchError):
    """Upstream rate limit hit (429)."""

    def __init__(self, message: str = "Rate limit exceeded", *, source: str = "", retry_after: float = 0.0):
        super().__init__(message, source=source)
        self.retry_after = retry_after


class UpstreamRejectedError(FetchError):
    """Non-2xx, non-5xx response (bad symbol, auth, removed endpoint)."""

    transient = False

    def __init__(self, message: str = "", *, source: str = "", status_code: int = 0):
        super().__init__(message, source=source)
        self.status_code = status_code


class MalformedPayloadError(FetchError):
    """Payload was not valid JSON or did not match the expected schema."""


# ---------------------------------------------------------------------------
# Consistency
# ---------------------------------------------------------------------------

class InvariantViolation(MarketDataError):
    """A state contract (e.g. portfolio balance) does not hold.

    Logged and used to reject the offending payload; never allowed to crash
    a reader of the engine snapshot.
    """


# ---------------------------------------------------------------------------
# Local order commands (raised to the caller)
# ---------------------------------------------------------------------------

class OrderError(MarketDataError):
    """Base class for rejected local order commands."""


class InvalidOrderError(OrderError):
    """Invalid order parameters (bad side, non-positive size, unknown pair)."""


class InsufficientFundsError(OrderError):
    """Order notional exceeds the available balance."""


class UnknownOrderError(OrderError):
    """Cancel requested for an order that is not open."""
