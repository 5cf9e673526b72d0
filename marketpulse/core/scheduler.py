"""
Update Scheduler - owns every timer that refreshes market state.

Lifecycle::

    IDLE -> LOADING -> LIVE <-> REFRESHING -> ... -> STOPPED

Cadences:
- fast (price tick, default 30s): each tick fetches real prices with
  probability ``price_fetch_probability`` and otherwise applies a local
  bounded random walk; a failed fetch falls back to the random walk.
  The same tick samples a globals resync with ``globals_fetch_probability``.
- medium (order book + trades, default 60s): always fetches for the
  selected pair; one task per selection, replaced on pair switch.

Store writes happen synchronously after the awaited fetches complete, so
on a single event loop two cadences never interleave inside a write.
After ``stop()`` no task remains and every apply path checks the state
first, so nothing can mutate a store after teardown.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import random
import time
import traceback
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from marketpulse.core.config import CadenceConfig, FallbackInstrument
from marketpulse.core.error_handler import GracefulErrorHandler
from marketpulse.core.logger import cadence_context, get_logger
from marketpulse.data.loader import LoadReport, LoadRequest, ResilientLoader
from marketpulse.exchange.exceptions import FetchError
from marketpulse.exchange.gateway import FetchKind
from marketpulse.market.models import Instrument, LoadOutcome
from marketpulse.market.order_book import OrderBookManager
from marketpulse.market.portfolio import PortfolioLedger
from marketpulse.market.ticker_store import TickerStore, simulate_price_tick

logger = get_logger("scheduler")

SleepFn = Callable[[float], Awaitable[Any]]

SIMULATED_DATA_NOTICE = (
    "Live market data is unavailable. Prices shown are simulated and will "
    "update automatically once the data sources recover."
)

# Sources backed by upstream services, as opposed to locally served ones.
MARKET_DATA_SOURCES = frozenset({"instruments", "globals", "order_book", "trades"})


class EngineState(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    LIVE = "live"
    REFRESHING = "refreshing"
    STOPPED = "stopped"


class UpdateScheduler:
    """Drives the three refresh cadences over the market-state stores."""

    def __init__(
        self,
        gateway: Any,
        tickers: TickerStore,
        books: OrderBookManager,
        ledger: PortfolioLedger,
        cadence: Optional[CadenceConfig] = None,
        *,
        loader: Optional[ResilientLoader] = None,
        error_handler: Optional[GracefulErrorHandler] = None,
        rng: Optional[random.Random] = None,
        price_rng: Optional[random.Random] = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        instruments_limit: Optional[int] = None,
        news_limit: int = 20,
        fallback_instruments: Sequence[FallbackInstrument] = (),
    ):
        self.gateway = gateway
        self.tickers = tickers
        self.books = books
        self.ledger = ledger
        self.cadence = cadence or CadenceConfig()
        self.loader = loader or ResilientLoader(gateway, clock=clock)
        self.errors = error_handler or GracefulErrorHandler()
        self._rng = rng or random.Random()
        self._price_rng = price_rng or self._rng
        self._sleep = sleep
        self._clock = clock
        self.instruments_limit = instruments_limit
        self.news_limit = news_limit
        self.fallback_instruments = list(fallback_instruments)

        self.state = EngineState.IDLE
        self.load_outcome = LoadOutcome()
        self.notice: Optional[str] = None
        self.news: tuple = ()
        self.education: tuple = ()

        self._price_task: Optional[asyncio.Task] = None
        self._book_task: Optional[asyncio.Task] = None
        self._pair_generation = 0
        self._inflight = 0

        # Counters for the status endpoint and tests
        self.tick_count = 0
        self.price_fetch_count = 0
        self.simulated_tick_count = 0
        self.globals_fetch_count = 0
        self.book_refresh_count = 0
        self.failure_count = 0

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.state in (EngineState.LOADING, EngineState.LIVE, EngineState.REFRESHING)

    def _is_current(self, pair_id: str, generation: int) -> bool:
        return (
            self.is_active
            and generation == self._pair_generation
            and pair_id == self.books.selected_pair
        )

    @contextlib.contextmanager
    def _refreshing(self):
        self._inflight += 1
        if self.state == EngineState.LIVE:
            self.state = EngineState.REFRESHING
        try:
            yield
        finally:
            self._inflight -= 1
            if self._inflight == 0 and self.state == EngineState.REFRESHING:
                self.state = EngineState.LIVE

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        return asyncio.get_running_loop().create_task(coro, name=name)

    @property
    def tasks(self) -> List[asyncio.Task]:
        return [t for t in (self._price_task, self._book_task) if t is not None and not t.done()]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> LoadOutcome:
        """Run the initial load, then arm the cadences."""
        if self.state != EngineState.IDLE:
            logger.warning("Scheduler start ignored", state=self.state.value)
            return self.load_outcome

        self.state = EngineState.LOADING
        generation = self._pair_generation
        logger.info(
            "Initial load started",
            pair=self.books.selected_pair,
            price_tick=self.cadence.price_tick_seconds,
            book_refresh=self.cadence.book_refresh_seconds,
        )
        try:
            await self._initial_load()
        except Exception as e:
            logger.error(
                "Initial load error",
                error=repr(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc(),
            )
        if self.state == EngineState.STOPPED:
            return self.load_outcome

        self.state = EngineState.LIVE
        self._price_task = self._spawn(self._price_loop(), "price_tick")
        pair = self.books.selected_pair
        # A pair picked while loading still needs its first book right away.
        self._book_task = self._spawn(
            self._book_loop(pair, self._pair_generation, immediate=generation != self._pair_generation),
            f"book_refresh:{pair}",
        )
        logger.info(
            "Scheduler live",
            succeeded=self.load_outcome.succeeded_count,
            failed=self.load_outcome.failed_count,
            status=self.load_outcome.status.value,
        )
        return self.load_outcome

    async def stop(self) -> None:
        """Cancel every timer. Terminal: the scheduler cannot be restarted."""
        if self.state == EngineState.STOPPED:
            return
        self.state = EngineState.STOPPED
        tasks = self.tasks
        for task in tasks:
            task.cancel()
        if tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*tasks, return_exceptions=True),
                    timeout=self.cadence.stop_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Some timers did not finish within shutdown timeout",
                    pending=[t.get_name() for t in tasks if not t.done()],
                )
        self._price_task = None
        self._book_task = None
        logger.info("Scheduler stopped", ticks=self.tick_count, book_refreshes=self.book_refresh_count)

    def select_pair(self, pair_id: str) -> bool:
        """Switch the selected pair and restart the book cadence for it.

        Returns False if ``pair_id`` was already selected.
        """
        if self.state == EngineState.STOPPED:
            logger.warning("Pair switch ignored after stop", pair=pair_id)
            return False
        previous = self.books.switch_pair(pair_id)
        if previous == pair_id:
            return False
        self._pair_generation += 1
        if self._book_task is not None:
            self._book_task.cancel()
            self._book_task = None
        # While loading, start() arms the book cadence for whatever pair is selected.
        if self.state in (EngineState.LIVE, EngineState.REFRESHING):
            self._book_task = self._spawn(
                self._book_loop(pair_id, self._pair_generation, immediate=True),
                f"book_refresh:{pair_id}",
            )
        return True

    def dismiss_notice(self) -> None:
        self.notice = None

    # ------------------------------------------------------------------
    # Initial load
    # ------------------------------------------------------------------

    def _load_requests(self, pair_id: str, generation: int) -> List[LoadRequest]:
        depth = self.books.depth
        return [
            LoadRequest(
                "instruments", FetchKind.INSTRUMENTS,
                {"limit": self.instruments_limit},
                apply=self.tickers.replace_all,
            ),
            LoadRequest("globals", FetchKind.GLOBALS, apply=self.tickers.set_globals),
            LoadRequest("portfolio", FetchKind.PORTFOLIO, apply=self.ledger.recompute),
            LoadRequest(
                "order_book", FetchKind.ORDER_BOOK,
                {"pair_id": pair_id, "depth": depth},
                apply=lambda book: self._apply_book(pair_id, generation, book),
            ),
            LoadRequest(
                "trades", FetchKind.TRADES,
                {"pair_id": pair_id, "limit": self.books.trade_capacity},
                apply=lambda trades: self._apply_trades(pair_id, generation, trades),
            ),
            LoadRequest("news", FetchKind.NEWS, {"limit": self.news_limit}, apply=self._apply_news),
            LoadRequest("education", FetchKind.EDUCATION, apply=self._apply_education),
        ]

    async def _initial_load(self) -> LoadReport:
        pair = self.books.selected_pair
        generation = self._pair_generation
        report = await self.loader.load_all(
            self._load_requests(pair, generation),
            should_apply=lambda: self.is_active,
        )
        if report.discarded:
            return report

        self.load_outcome = report.outcome(self._clock(), self.load_outcome, MARKET_DATA_SOURCES)
        self.failure_count += report.failed_count

        if "instruments" in report.errors and len(self.tickers) == 0:
            self._seed_fallback_instruments()

        # Portfolio, education and catalog news are served locally and keep
        # answering while every upstream is down.
        if MARKET_DATA_SOURCES <= report.errors.keys():
            self.notice = SIMULATED_DATA_NOTICE
            await self.errors.handle(
                self._first_error(report),
                component="initial_load",
                context=f"no market data source answered ({report.failed_count}/{report.total} failed)",
                total_failure=True,
            )
        elif report.failed_count:
            await self.errors.handle(
                self._first_error(report),
                component="initial_load",
                context=f"{report.failed_count}/{report.total} sources failed: {sorted(report.errors)}",
            )
        return report

    def _seed_fallback_instruments(self) -> None:
        if not self.fallback_instruments:
            return
        now = self._clock()
        rows = [
            Instrument(
                id=f.id,
                symbol=f.symbol,
                name=f.name,
                price=f.price,
                change_24h_pct=f.change_24h_pct,
                market_cap=f.market_cap,
                volume_24h=f.volume_24h,
                last_updated=now,
            )
            for f in self.fallback_instruments
        ]
        self.tickers.replace_all(rows)
        # Start from a perturbed value so the table never shows the static seed.
        self.tickers.perturb(None, lambda inst: simulate_price_tick(inst, self._price_rng, now))
        logger.warning("Seeded simulated instruments", count=len(rows))

    @staticmethod
    def _first_error(report: LoadReport) -> BaseException:
        if report.errors:
            return next(iter(report.errors.values()))
        return FetchError("no sources answered")

    # ------------------------------------------------------------------
    # Apply callbacks
    # ------------------------------------------------------------------

    def _apply_book(self, pair_id: str, generation: int, book: Any) -> Optional[bool]:
        if not self._is_current(pair_id, generation):
            return None
        return self.books.set_book(pair_id, book)

    def _apply_trades(self, pair_id: str, generation: int, trades: Iterable[Any]) -> Optional[int]:
        if not self._is_current(pair_id, generation):
            return None
        return self.books.prepend_trades(pair_id, trades)

    def _apply_news(self, items: Iterable[Any]) -> None:
        self.news = tuple(items)

    def _apply_education(self, items: Iterable[Any]) -> None:
        self.education = tuple(items)

    # ------------------------------------------------------------------
    # Fast cadence: prices (+ sampled globals)
    # ------------------------------------------------------------------

    async def _price_loop(self) -> None:
        interval = self.cadence.price_tick_seconds
        while self.is_active:
            try:
                await self._sleep(interval)
                if not self.is_active:
                    break
                with cadence_context("fast"):
                    await self.price_tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Price tick loop error",
                    error=repr(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc(),
                )

    async def price_tick(self) -> None:
        """One fast-cadence tick. Never raises for fetch failures."""
        if not self.is_active:
            return
        self.tick_count += 1

        if self._rng.random() < self.cadence.price_fetch_probability:
            self.price_fetch_count += 1
            with self._refreshing():
                result = await self.gateway.fetch(FetchKind.INSTRUMENTS, limit=self.instruments_limit)
            if not self.is_active:
                return
            if result.ok and self.tickers.replace_all(result.payload) > 0:
                logger.debug("Prices refreshed from source", count=len(self.tickers))
            else:
                if result.error is not None:
                    await self.errors.handle(result.error, component="price_tick")
                if not self.is_active:
                    return
                self.simulate_prices()
        else:
            self.simulate_prices()

        if self._rng.random() < self.cadence.globals_fetch_probability:
            await self.refresh_globals()

    def simulate_prices(self) -> int:
        """Apply one bounded random-walk step to every instrument."""
        if not self.is_active:
            return 0
        now = self._clock()
        self.simulated_tick_count += 1
        return self.tickers.perturb(None, lambda inst: simulate_price_tick(inst, self._price_rng, now))

    async def refresh_globals(self) -> bool:
        self.globals_fetch_count += 1
        with self._refreshing():
            result = await self.gateway.fetch(FetchKind.GLOBALS)
        if not self.is_active:
            return False
        if result.ok:
            self.tickers.set_globals(result.payload)
            return True
        await self.errors.handle(result.error, component="globals_sample")
        return False

    # ------------------------------------------------------------------
    # Medium cadence: order book + trades for the selected pair
    # ------------------------------------------------------------------

    async def _book_loop(self, pair_id: str, generation: int, immediate: bool = False) -> None:
        interval = self.cadence.book_refresh_seconds
        wait_first = not immediate
        while self._is_current(pair_id, generation):
            try:
                if wait_first:
                    await self._sleep(interval)
                wait_first = True
                if not self._is_current(pair_id, generation):
                    break
                with cadence_context("medium", pair=pair_id):
                    await self.refresh_book(pair_id, generation)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Book refresh loop error",
                    pair=pair_id,
                    error=repr(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc(),
                )

    async def refresh_book(self, pair_id: Optional[str] = None, generation: Optional[int] = None) -> LoadReport:
        """Fetch book and trades for ``pair_id`` and apply them if still selected."""
        pair_id = pair_id or self.books.selected_pair
        generation = self._pair_generation if generation is None else generation
        requests = [
            LoadRequest(
                "order_book", FetchKind.ORDER_BOOK,
                {"pair_id": pair_id, "depth": self.books.depth},
                apply=lambda book: self._apply_book(pair_id, generation, book),
            ),
            LoadRequest(
                "trades", FetchKind.TRADES,
                {"pair_id": pair_id, "limit": self.books.trade_capacity},
                apply=lambda trades: self._apply_trades(pair_id, generation, trades),
            ),
        ]
        with self._refreshing():
            report = await self.loader.load_all(
                requests,
                should_apply=lambda: self._is_current(pair_id, generation),
            )
        if report.discarded:
            return report

        self.book_refresh_count += 1
        self.load_outcome = report.outcome(self._clock(), self.load_outcome)
        if report.failed_count:
            self.failure_count += report.failed_count
            await self.errors.handle(
                self._first_error(report),
                component="book_refresh",
                context=f"{pair_id} {sorted(report.errors)}",
            )
        return report
