"""Shared test fixtures and stubs for MarketPulse tests.

Provides a manual clock that drives the scheduler's timers without real
waiting, a scriptable gateway stub, and engine factories.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import random
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import pytest

from marketpulse.core.config import EngineConfig
from marketpulse.core.engine import TradingEngine
from marketpulse.data import content
from marketpulse.exchange.exceptions import FetchError, TransientFetchError
from marketpulse.exchange.gateway import FetchKind, FetchResult
from marketpulse.market.models import Instrument, MarketGlobals, OrderBook, OrderBookLevel, Side, Trade

T0 = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Time and randomness
# ---------------------------------------------------------------------------


class ManualClock:
    """Virtual time source. ``sleep`` parks until ``advance`` moves past the deadline."""

    def __init__(self, start: float = T0) -> None:
        self.now = start
        self._timers: List[Tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._timers, (self.now + seconds, next(self._seq), fut))
        await fut

    @property
    def pending(self) -> int:
        return sum(1 for _, _, fut in self._timers if not fut.done())

    async def settle(self, rounds: int = 50) -> None:
        """Let every runnable task progress until it blocks again."""
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        await self.settle()
        while self._timers and self._timers[0][0] <= target:
            deadline, _, fut = heapq.heappop(self._timers)
            self.now = max(self.now, deadline)
            if not fut.done():
                fut.set_result(None)
            await self.settle()
        self.now = target


class ScriptedRandom:
    """``random()`` returns the scripted values in order, then ``default``."""

    def __init__(self, values: Iterable[float] = (), default: float = 0.99) -> None:
        self.values = list(values)
        self.default = default

    def random(self) -> float:
        if self.values:
            return self.values.pop(0)
        return self.default


# ---------------------------------------------------------------------------
# Payload factories
# ---------------------------------------------------------------------------


def make_instrument(id: str, price: float, *, symbol: Optional[str] = None, change: float = 0.0,
                    updated: float = T0) -> Instrument:
    return Instrument(
        id=id,
        symbol=symbol or id[:3].upper(),
        name=id.title(),
        price=price,
        change_24h_pct=change,
        market_cap=price * 1_000_000,
        volume_24h=price * 10_000,
        last_updated=updated,
    )


def default_instruments() -> List[Instrument]:
    return [
        make_instrument("bitcoin", 43250.5, symbol="BTC", change=2.94),
        make_instrument("ethereum", 2645.89, symbol="ETH", change=-1.22),
        make_instrument("solana", 98.0, symbol="SOL", change=4.1),
    ]


def make_globals(total_cap: float = 1.7e12, fear_greed: Optional[int] = 55) -> MarketGlobals:
    return MarketGlobals(
        total_market_cap=total_cap,
        total_volume_24h=6.2e10,
        btc_dominance_pct=51.2,
        eth_dominance_pct=17.4,
        fear_greed_index=fear_greed,
        last_updated=T0,
    )


def make_book(pair_id: str, mid: float = 100.0, levels: int = 3, updated: float = T0) -> OrderBook:
    return OrderBook(
        pair_id=pair_id,
        asks=tuple(OrderBookLevel(price=mid + i + 1, quantity=1.0 + i) for i in range(levels)),
        bids=tuple(OrderBookLevel(price=mid - i - 1, quantity=1.0 + i) for i in range(levels)),
        last_updated=updated,
    )


def make_trade(pair_id: str, n: int, *, price: float = 100.0, side: Side = Side.BUY) -> Trade:
    return Trade(pair_id=pair_id, price=price, quantity=0.1, side=side, timestamp=T0 + n, trade_id=str(n))


# ---------------------------------------------------------------------------
# Gateway stub
# ---------------------------------------------------------------------------


class FakeGateway:
    """Scriptable stand-in for ``MarketDataGateway``.

    Configurable via attributes:
        responses: FetchKind -> payload, or a callable taking the fetch params
        failures: FetchKind -> FetchError returned instead of a payload
        gates: FetchKind -> asyncio.Event the fetch waits on before answering
    """

    def __init__(self) -> None:
        self._trade_ids = itertools.count(1)
        self.responses: Dict[FetchKind, Any] = {
            FetchKind.INSTRUMENTS: lambda **_: default_instruments(),
            FetchKind.GLOBALS: make_globals(),
            FetchKind.PORTFOLIO: {
                "total_balance": 19000.12,
                "available_balance": 17000.12,
                "in_orders": 2000.0,
                "total_pnl_pct": 2.94,
            },
            FetchKind.ORDER_BOOK: lambda pair_id, depth=20: make_book(pair_id),
            FetchKind.TRADES: lambda pair_id, limit=20: [
                make_trade(pair_id, next(self._trade_ids)) for _ in range(2)
            ],
            FetchKind.NEWS: lambda limit=20: content.news(limit),
            FetchKind.EDUCATION: lambda **_: content.education(),
        }
        self.failures: Dict[FetchKind, FetchError] = {}
        self.gates: Dict[FetchKind, asyncio.Event] = {}
        self.calls: List[Tuple[FetchKind, Dict[str, Any]]] = []
        self.initialized = False
        self.closed = False

    async def initialize(self) -> None:
        self.initialized = True

    async def close(self) -> None:
        self.closed = True

    def fail(self, *kinds: FetchKind, error: Optional[FetchError] = None) -> None:
        for kind in kinds:
            self.failures[kind] = error or TransientFetchError("HTTP 503", source=kind.value)

    def fail_all(self) -> None:
        self.fail(*FetchKind)

    def recover(self, *kinds: FetchKind) -> None:
        for kind in kinds or list(self.failures):
            self.failures.pop(kind, None)

    def hold(self, kind: FetchKind) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[kind] = gate
        return gate

    def calls_for(self, kind: FetchKind) -> List[Dict[str, Any]]:
        return [params for k, params in self.calls if k == kind]

    async def fetch(self, kind: FetchKind, **params: Any) -> FetchResult:
        kind = FetchKind(kind)
        self.calls.append((kind, params))
        gate = self.gates.get(kind)
        if gate is not None:
            await gate.wait()
        if kind in self.failures:
            return FetchResult.failure(kind, self.failures[kind])
        payload = self.responses[kind]
        if callable(payload):
            payload = payload(**{k: v for k, v in params.items() if v is not None})
        return FetchResult.success(kind, payload)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def make_engine(clock: ManualClock, gateway: FakeGateway, engine_config: EngineConfig) -> Callable[..., TradingEngine]:
    """Factory for engines on virtual time. ``rng`` scripts the cadence sampling draws."""
    created: List[TradingEngine] = []

    def _make(rng: Optional[ScriptedRandom] = None, config: Optional[EngineConfig] = None) -> TradingEngine:
        engine = TradingEngine(
            config or engine_config,
            gateway=gateway,
            rng=rng or ScriptedRandom(),
            price_rng=random.Random(7),
            sleep=clock.sleep,
            clock=clock.time,
        )
        created.append(engine)
        return engine

    return _make
