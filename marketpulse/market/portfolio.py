"""
Portfolio Ledger - balance aggregate for the active account.

Enforces ``available_balance + in_orders == total_balance`` at every
boundary. A payload that breaks it is logged and rejected; the previous
aggregate stays in place.
"""

from __future__ import annotations

import math
import threading
from typing import Any, Mapping, Optional, Union

from marketpulse.core.logger import get_logger
from marketpulse.exchange.exceptions import InsufficientFundsError, InvalidOrderError, InvariantViolation
from marketpulse.market.models import Portfolio

logger = get_logger("portfolio")

DEFAULT_TOLERANCE = 1e-6

_FIELDS = ("total_balance", "available_balance", "in_orders", "total_pnl_pct")


def portfolio_from_payload(raw: Union[Portfolio, Mapping[str, Any]]) -> Portfolio:
    """Coerce an account payload into a ``Portfolio``; raises ``InvariantViolation`` on bad shape."""
    if isinstance(raw, Portfolio):
        return raw
    try:
        values = {key: float(raw[key]) for key in _FIELDS if key != "total_pnl_pct"}
        values["total_pnl_pct"] = float(raw.get("total_pnl_pct", 0.0) or 0.0)
    except (KeyError, TypeError, ValueError) as e:
        raise InvariantViolation(f"portfolio payload incomplete: {e!r}") from e
    if not all(math.isfinite(v) for v in values.values()):
        raise InvariantViolation("portfolio payload has non-finite values")
    return Portfolio(**values)


class PortfolioLedger:
    """Holds the current ``Portfolio`` and applies local order reservations."""

    def __init__(self, tolerance: float = DEFAULT_TOLERANCE):
        self.tolerance = tolerance
        self._portfolio: Optional[Portfolio] = None
        self._write_lock = threading.Lock()
        self.rejected_count = 0
        self.version = 0

    @property
    def portfolio(self) -> Optional[Portfolio]:
        return self._portfolio

    def check(self, portfolio: Portfolio) -> None:
        """Raise ``InvariantViolation`` if the balance identity does not hold."""
        if portfolio.in_orders < -self.tolerance:
            raise InvariantViolation(f"in_orders is negative: {portfolio.in_orders}")
        if abs(portfolio.imbalance()) > self.tolerance:
            raise InvariantViolation(
                f"available {portfolio.available_balance} + in_orders {portfolio.in_orders} "
                f"!= total {portfolio.total_balance}"
            )

    def recompute(self, raw: Union[Portfolio, Mapping[str, Any]]) -> bool:
        """Replace the aggregate wholesale. Returns False (and keeps prior state) if rejected."""
        try:
            candidate = portfolio_from_payload(raw)
            self.check(candidate)
        except InvariantViolation as e:
            self.rejected_count += 1
            logger.error("Portfolio invariant violation, payload rejected", error=str(e))
            return False
        with self._write_lock:
            self._portfolio = candidate
            self.version += 1
        return True

    def reserve(self, amount: float) -> Portfolio:
        """Move ``amount`` from available balance into ``in_orders``."""
        if not math.isfinite(amount) or amount <= 0:
            raise InvalidOrderError(f"reservation must be positive, got {amount}")
        with self._write_lock:
            current = self._require()
            if amount > current.available_balance + self.tolerance:
                raise InsufficientFundsError(
                    f"order notional {amount:.8f} exceeds available balance {current.available_balance:.8f}"
                )
            in_orders = current.in_orders + amount
            # Derive available from the total so rounding cannot drift the identity.
            self._portfolio = Portfolio(
                total_balance=current.total_balance,
                available_balance=current.total_balance - in_orders,
                in_orders=in_orders,
                total_pnl_pct=current.total_pnl_pct,
            )
            self.version += 1
            return self._portfolio

    def release(self, amount: float) -> Portfolio:
        """Return ``amount`` from ``in_orders`` to the available balance."""
        if not math.isfinite(amount) or amount <= 0:
            raise InvalidOrderError(f"release must be positive, got {amount}")
        with self._write_lock:
            current = self._require()
            in_orders = max(0.0, current.in_orders - amount)
            self._portfolio = Portfolio(
                total_balance=current.total_balance,
                available_balance=current.total_balance - in_orders,
                in_orders=in_orders,
                total_pnl_pct=current.total_pnl_pct,
            )
            self.version += 1
            return self._portfolio

    def clear(self) -> None:
        with self._write_lock:
            self._portfolio = None
            self.version += 1

    def _require(self) -> Portfolio:
        if self._portfolio is None:
            raise InsufficientFundsError("portfolio not loaded yet")
        return self._portfolio
