from __future__ import annotations

import asyncio
import time

import pytest

from marketpulse.data.loader import LoadReport, LoadRequest, ResilientLoader
from marketpulse.exchange.exceptions import MalformedPayloadError, TransientFetchError
from marketpulse.exchange.gateway import FetchKind, FetchResult
from marketpulse.market.models import FeedStatus, LoadOutcome
from marketpulse.market.order_book import OrderBookManager
from marketpulse.market.ticker_store import TickerStore
from tests.conftest import T0, FakeGateway, default_instruments, make_globals


class _SlowGateway:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    async def fetch(self, kind, **params):
        await asyncio.sleep(self.delay)
        return FetchResult.success(FetchKind(kind), kind)


class _RaisingGateway:
    async def fetch(self, kind, **params):
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_middle_failure_leaves_its_store_untouched():
    gateway = FakeGateway()
    gateway.fail(FetchKind.GLOBALS)
    store = TickerStore()
    store.set_globals(make_globals(total_cap=1.0e12))
    books = OrderBookManager("BTCUSDT")
    portfolio = {}

    report = await ResilientLoader(gateway).load_all([
        LoadRequest("instruments", FetchKind.INSTRUMENTS, apply=store.replace_all),
        LoadRequest("globals", FetchKind.GLOBALS, apply=store.set_globals),
        LoadRequest(
            "trades", FetchKind.TRADES, {"pair_id": "BTCUSDT"},
            apply=lambda trades: books.prepend_trades("BTCUSDT", trades),
        ),
        LoadRequest("portfolio", FetchKind.PORTFOLIO, apply=portfolio.update),
    ])

    assert report.failed_count == 1
    assert report.succeeded_count == 3
    assert isinstance(report.errors["globals"], TransientFetchError)
    assert report.results["globals"] is None
    assert store.globals.total_market_cap == 1.0e12
    assert len(store) == len(default_instruments())
    assert [t.trade_id for t in books.trades()] == ["2", "1"]
    assert portfolio["total_balance"] == 19000.12


@pytest.mark.asyncio
async def test_requests_run_in_parallel():
    """Three 0.2s fetches settle together rather than one after another."""
    loader = ResilientLoader(_SlowGateway(0.2))
    started = time.perf_counter()
    report = await loader.load_all([
        LoadRequest("a", FetchKind.INSTRUMENTS),
        LoadRequest("b", FetchKind.GLOBALS),
        LoadRequest("c", FetchKind.NEWS),
    ])
    elapsed = time.perf_counter() - started
    assert report.succeeded_count == 3
    assert elapsed < 0.5


@pytest.mark.asyncio
async def test_nothing_applied_until_everything_settles():
    gateway = FakeGateway()
    gate = gateway.hold(FetchKind.GLOBALS)
    store = TickerStore()

    task = asyncio.create_task(ResilientLoader(gateway).load_all([
        LoadRequest("instruments", FetchKind.INSTRUMENTS, apply=store.replace_all),
        LoadRequest("globals", FetchKind.GLOBALS, apply=store.set_globals),
    ]))
    for _ in range(10):
        await asyncio.sleep(0)
    assert len(store) == 0

    gate.set()
    report = await task
    assert report.succeeded_count == 2
    assert len(store) > 0


@pytest.mark.asyncio
async def test_discarded_batch_applies_nothing():
    gateway = FakeGateway()
    store = TickerStore()
    report = await ResilientLoader(gateway).load_all(
        [LoadRequest("instruments", FetchKind.INSTRUMENTS, apply=store.replace_all)],
        should_apply=lambda: False,
    )
    assert report.discarded
    assert report.results == {"instruments": None}
    assert len(store) == 0


@pytest.mark.asyncio
async def test_store_rejection_counts_as_failure():
    gateway = FakeGateway()

    def _reject(_payload):
        return False

    def _explode(_payload):
        raise ValueError("bad row")

    report = await ResilientLoader(gateway).load_all([
        LoadRequest("portfolio", FetchKind.PORTFOLIO, apply=_reject),
        LoadRequest("news", FetchKind.NEWS, apply=_explode),
        LoadRequest("education", FetchKind.EDUCATION),
    ])
    assert report.failed_count == 2
    assert report.succeeded_count == 1
    assert report.results["education"]


@pytest.mark.asyncio
async def test_gateway_exceptions_are_coerced_to_failures():
    report = await ResilientLoader(_RaisingGateway()).load_all([
        LoadRequest("instruments", FetchKind.INSTRUMENTS),
    ])
    assert report.failed_count == 1
    assert isinstance(report.errors["instruments"], TransientFetchError)


@pytest.mark.asyncio
async def test_malformed_payload_is_reported_by_type():
    gateway = FakeGateway()
    gateway.fail(FetchKind.INSTRUMENTS, error=MalformedPayloadError("not a list"))
    report = await ResilientLoader(gateway).load_all([LoadRequest("instruments", FetchKind.INSTRUMENTS)])
    assert isinstance(report.errors["instruments"], MalformedPayloadError)


def test_outcome_status_and_last_updated():
    previous = LoadOutcome(succeeded_count=7, failed_count=0, last_updated=T0)

    partial = LoadReport(succeeded_count=1, failed_count=1).outcome(T0 + 60, previous)
    assert partial.status == FeedStatus.PARTIAL
    assert partial.last_updated == T0 + 60

    failed = LoadReport(succeeded_count=0, failed_count=2).outcome(T0 + 120, previous)
    assert failed.status == FeedStatus.DEGRADED
    assert failed.last_updated == T0


def test_outcome_only_counts_market_sources_as_fresh():
    report = LoadReport(
        results={"instruments": None, "globals": None, "portfolio": {"total_balance": 1.0}},
        errors={
            "instruments": TransientFetchError("HTTP 503"),
            "globals": TransientFetchError("HTTP 503"),
        },
        succeeded_count=1,
        failed_count=2,
    )
    previous = LoadOutcome(succeeded_count=3, failed_count=0, last_updated=T0)

    stale = report.outcome(T0 + 60, previous, market_sources={"instruments", "globals"})
    assert not stale.market_data
    assert stale.status == FeedStatus.DEGRADED
    assert stale.last_updated == T0

    # Without a market-source filter any success counts.
    assert report.outcome(T0 + 60, previous).status == FeedStatus.PARTIAL
