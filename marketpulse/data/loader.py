"""
Resilient Loader - concurrent fan-out over the gateway, joined not raced.

All requests are issued together and awaited until every one has settled.
Only then are the successful payloads applied to their stores, so no store
is touched while a fetch is still in flight. Failed requests leave their
store untouched; the caller only sees counts.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Collection, Dict, Iterable, List, Mapping, Optional

from marketpulse.core.logger import get_logger
from marketpulse.exchange.exceptions import FetchError, InvariantViolation, TransientFetchError
from marketpulse.exchange.gateway import FetchKind, FetchResult
from marketpulse.market.models import LoadOutcome

logger = get_logger("loader")


@dataclass(frozen=True)
class LoadRequest:
    """One source in a fan-out. ``apply`` merges a successful payload into its store."""
    key: str
    kind: FetchKind
    params: Mapping[str, Any] = field(default_factory=dict)
    # Returning False means the store rejected the payload.
    apply: Optional[Callable[[Any], Any]] = None


@dataclass
class LoadReport:
    results: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, FetchError] = field(default_factory=dict)
    succeeded_count: int = 0
    failed_count: int = 0
    # True when results were dropped because the cycle was superseded.
    discarded: bool = False

    @property
    def total(self) -> int:
        return self.succeeded_count + self.failed_count

    def outcome(
        self,
        now: float,
        previous: Optional[LoadOutcome] = None,
        market_sources: Optional[Collection[str]] = None,
    ) -> LoadOutcome:
        """Summarise this cycle.

        With ``market_sources`` only those keys count as fresh market data:
        ``last_updated`` advances and the feed reads as live or partial only
        when one of them succeeded.
        """
        last = previous.last_updated if previous else None
        if market_sources is None:
            fresh = self.succeeded_count > 0
        else:
            fresh = any(
                key in self.results and key not in self.errors
                for key in market_sources
            )
        if fresh:
            last = now
        return LoadOutcome(
            succeeded_count=self.succeeded_count,
            failed_count=self.failed_count,
            last_updated=last,
            market_data=fresh,
        )


class ResilientLoader:
    """Fans out gateway calls and merges whatever succeeded."""

    def __init__(self, gateway: Any, clock: Callable[[], float] = time.time):
        self.gateway = gateway
        self._clock = clock

    async def load_all(
        self,
        requests: Iterable[LoadRequest],
        should_apply: Optional[Callable[[], bool]] = None,
    ) -> LoadReport:
        """Fetch every request concurrently and apply the successes.

        ``should_apply`` is checked once after everything has settled; if it
        returns False the whole batch is discarded (the caller moved on).
        Never raises for fetch or apply failures.
        """
        requests = list(requests)
        report = LoadReport()
        if not requests:
            return report

        settled = await asyncio.gather(
            *(self.gateway.fetch(req.kind, **dict(req.params)) for req in requests),
            return_exceptions=True,
        )
        results: List[FetchResult] = [
            self._coerce(req, item) for req, item in zip(requests, settled)
        ]

        if should_apply is not None and not should_apply():
            report.discarded = True
            logger.debug("Load results discarded", keys=[r.key for r in requests])
            report.results = {req.key: None for req in requests}
            return report

        for req, res in zip(requests, results):
            if not res.ok:
                self._fail(report, req, res.error)
                continue
            if req.apply is not None:
                try:
                    accepted = req.apply(res.payload)
                except Exception as e:
                    logger.error(
                        "Store rejected payload",
                        key=req.key,
                        error=repr(e),
                        error_type=type(e).__name__,
                    )
                    self._fail(report, req, InvariantViolation(repr(e)))
                    continue
                if accepted is False:
                    self._fail(report, req, InvariantViolation(f"{req.key} payload rejected by store"))
                    continue
            report.results[req.key] = res.payload
            report.succeeded_count += 1

        if report.failed_count:
            logger.info(
                "Partial load",
                failed=report.failed_count,
                total=report.total,
                failed_keys=sorted(report.errors),
            )
        return report

    @staticmethod
    def _coerce(req: LoadRequest, item: Any) -> FetchResult:
        if isinstance(item, FetchResult):
            return item
        if isinstance(item, BaseException):
            return FetchResult.failure(req.kind, TransientFetchError(repr(item), source=req.key))
        return FetchResult.success(req.kind, item)

    @staticmethod
    def _fail(report: LoadReport, req: LoadRequest, error: Exception) -> None:
        report.results[req.key] = None
        report.errors[req.key] = error if isinstance(error, FetchError) else FetchError(str(error), source=req.key)
        report.failed_count += 1
