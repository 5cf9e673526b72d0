"""
Trading Engine - facade over the market-state stores.

Owns one gateway, the three stores and the scheduler that keeps them
fresh. Presentation code only ever talks to this object:

- ``get_snapshot()`` returns an immutable view of everything on screen
- ``select_pair()`` switches the order book / trade tape owner
- ``place_order()`` / ``cancel_order()`` are the only calls that raise
  (``OrderError`` subclasses); background failures never reach callers
"""

from __future__ import annotations

import asyncio
import math
import random
import threading
import time
import uuid
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from marketpulse.core.config import EngineConfig, get_config
from marketpulse.core.error_handler import GracefulErrorHandler
from marketpulse.core.logger import get_logger
from marketpulse.core.scheduler import EngineState, UpdateScheduler
from marketpulse.data.loader import ResilientLoader
from marketpulse.exchange.exceptions import InvalidOrderError, UnknownOrderError
from marketpulse.exchange.gateway import MarketDataGateway
from marketpulse.market.models import Order, OrderStatus, Side, Snapshot, Trade
from marketpulse.market.order_book import OrderBookManager
from marketpulse.market.portfolio import PortfolioLedger
from marketpulse.market.ticker_store import TickerStore

logger = get_logger("engine")


class TradingEngine:
    """
    Entry point for hosts (the API server, a CLI, tests).

    Lifecycle:
    1. ``await start()`` - initial load, then the refresh cadences run
    2. read with ``get_snapshot()``, act with the command methods
    3. ``await stop()`` - cancels every timer; terminal
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        gateway: Any = None,
        rng: Optional[random.Random] = None,
        price_rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        error_handler: Optional[GracefulErrorHandler] = None,
    ):
        self.config = config or get_config()
        trading = self.config.trading
        self._clock = clock

        self.gateway = gateway or MarketDataGateway(self.config.gateway, self.config.portfolio, clock=clock)
        self.tickers = TickerStore()
        self.books = OrderBookManager(
            trading.default_pair,
            trade_capacity=trading.trade_tape_capacity,
            depth=trading.order_book_depth,
        )
        self.ledger = PortfolioLedger(self.config.portfolio.balance_tolerance)
        self.error_handler = error_handler or GracefulErrorHandler()
        self.scheduler = UpdateScheduler(
            self.gateway,
            self.tickers,
            self.books,
            self.ledger,
            self.config.cadence,
            loader=ResilientLoader(self.gateway, clock=clock),
            error_handler=self.error_handler,
            rng=rng,
            price_rng=price_rng,
            sleep=sleep,
            clock=clock,
            instruments_limit=self.config.gateway.instruments_limit,
            news_limit=self.config.gateway.news_limit,
            fallback_instruments=trading.fallback_instruments,
        )

        # Open orders only; cancelled ones are dropped.
        self._orders: Dict[str, Order] = {}
        self._orders_lock = threading.Lock()
        self._start_time: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self.scheduler.state

    @property
    def pairs(self) -> List[str]:
        return list(self.config.trading.pairs)

    async def start(self) -> None:
        logger.info(
            "Starting trading engine",
            pair=self.books.selected_pair,
            pairs=self.pairs,
        )
        self._start_time = self._clock()
        initialize = getattr(self.gateway, "initialize", None)
        if initialize is not None:
            await initialize()
        await self.scheduler.start()

    async def stop(self) -> None:
        """Cancel every timer and drop the per-pair buffers."""
        if self.state == EngineState.STOPPED:
            return
        logger.info("Stopping trading engine...")
        await self.scheduler.stop()
        self.books.clear()
        close = getattr(self.gateway, "close", None)
        if close is not None:
            try:
                await close()
            except Exception as e:
                logger.warning("Gateway close failed", error=repr(e))
        logger.info("Trading engine stopped")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_snapshot(self) -> Snapshot:
        """Immutable view of the current market state."""
        with self._orders_lock:
            open_orders = tuple(self._orders.values())
        return Snapshot(
            state=self.state.value,
            instruments=self.tickers.list(),
            globals=self.tickers.globals,
            order_book=self.books.book(),
            trades=self.books.trades(),
            portfolio=self.ledger.portfolio,
            load_outcome=self.scheduler.load_outcome,
            top_movers=self.tickers.top_movers(self.config.trading.top_movers),
            news=self.scheduler.news,
            education=self.scheduler.education,
            open_orders=open_orders,
            notice=self.scheduler.notice,
        )

    def open_orders(self) -> List[Order]:
        with self._orders_lock:
            return list(self._orders.values())

    def health(self) -> Dict[str, Any]:
        outcome = self.scheduler.load_outcome
        return {
            "state": self.state.value,
            "feed_status": outcome.status.value,
            "selected_pair": self.books.selected_pair,
            "instruments": len(self.tickers),
            "last_updated": outcome.last_updated,
            "uptime_seconds": round(self._clock() - self._start_time, 3) if self._start_time else 0.0,
            "ticks": self.scheduler.tick_count,
            "book_refreshes": self.scheduler.book_refresh_count,
            "failures": self.scheduler.failure_count,
            "errors": {k.value: v for k, v in self.error_handler.counts.items()},
        }

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def select_pair(self, pair_id: str) -> bool:
        """Make ``pair_id`` the selected pair. Raises ValueError for unknown pairs."""
        pair_id = pair_id.strip().upper()
        if pair_id not in self.config.trading.pairs:
            raise ValueError(f"unknown trading pair: {pair_id}")
        return self.scheduler.select_pair(pair_id)

    def dismiss_notice(self) -> None:
        self.scheduler.dismiss_notice()

    def place_order(
        self,
        side: Union[Side, str],
        pair_id: str,
        price: float,
        quantity: float,
    ) -> Order:
        """Reserve ``price * quantity`` from the available balance and open an order.

        Raises ``InvalidOrderError`` for bad input and
        ``InsufficientFundsError`` when the notional exceeds what is available.
        """
        if self.state == EngineState.STOPPED:
            raise InvalidOrderError("engine is stopped")
        try:
            side = Side(side)
        except ValueError:
            raise InvalidOrderError(f"side must be 'buy' or 'sell', got {side!r}")
        pair_id = (pair_id or "").strip().upper()
        if pair_id not in self.config.trading.pairs:
            raise InvalidOrderError(f"unknown trading pair: {pair_id}")
        try:
            price = float(price)
            quantity = float(quantity)
        except (TypeError, ValueError):
            raise InvalidOrderError("price and quantity must be numbers")
        if not (math.isfinite(price) and price > 0):
            raise InvalidOrderError(f"price must be positive, got {price}")
        if not (math.isfinite(quantity) and quantity > 0):
            raise InvalidOrderError(f"quantity must be positive, got {quantity}")

        self.ledger.reserve(price * quantity)

        now = self._clock()
        order = Order(
            order_id=f"ord-{uuid.uuid4().hex[:12]}",
            pair_id=pair_id,
            side=side,
            price=price,
            quantity=quantity,
            created_at=now,
        )
        with self._orders_lock:
            self._orders[order.order_id] = order
        self.books.record_trade(
            Trade(
                pair_id=pair_id,
                price=price,
                quantity=quantity,
                side=side,
                timestamp=now,
                trade_id=f"local-{order.order_id}",
            )
        )
        logger.info(
            "Order placed",
            order_id=order.order_id,
            pair=pair_id,
            side=side.value,
            price=price,
            quantity=quantity,
        )
        return order

    def cancel_order(self, order_id: str) -> Order:
        """Cancel an open order and release its reservation."""
        with self._orders_lock:
            order = self._orders.pop(order_id, None)
            if order is None:
                raise UnknownOrderError(f"no open order {order_id!r}")
        cancelled = replace(order, status=OrderStatus.CANCELLED)
        self.ledger.release(order.notional)
        logger.info("Order cancelled", order_id=order_id, pair=order.pair_id)
        return cancelled
