"""
Order Book Manager - ladders and trade tape for the selected pair.

Only the selected pair owns state. Updates addressed to any other pair
are dropped, which is how results of an in-flight refresh for a pair the
user already left get discarded.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Deque, Iterable, Optional, Tuple

from marketpulse.core.logger import get_logger
from marketpulse.market.models import OrderBook, OrderBookLevel, Trade

logger = get_logger("order_book")

DEFAULT_TAPE_CAPACITY = 20


class OrderBookManager:
    """Bid/ask ladders plus a bounded newest-first trade tape."""

    def __init__(self, pair_id: str, trade_capacity: int = DEFAULT_TAPE_CAPACITY, depth: int = 20):
        if trade_capacity < 1:
            raise ValueError("trade_capacity must be at least 1")
        self.trade_capacity = trade_capacity
        self.depth = depth
        self._pair_id = pair_id
        self._book = OrderBook(pair_id=pair_id)
        self._tape: Deque[Trade] = deque(maxlen=trade_capacity)
        self._trades: Tuple[Trade, ...] = ()
        self._write_lock = threading.Lock()
        self.version = 0

    @property
    def selected_pair(self) -> str:
        return self._pair_id

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_book(self, pair_id: str, book: OrderBook) -> bool:
        """Replace the ladders wholesale. Returns False if the pair is not selected."""
        with self._write_lock:
            if pair_id != self._pair_id:
                logger.debug("Dropping book for unselected pair", pair=pair_id, selected=self._pair_id)
                return False
            asks = sorted((lvl for lvl in book.asks if lvl.quantity > 0), key=lambda lvl: lvl.price)
            bids = sorted((lvl for lvl in book.bids if lvl.quantity > 0), key=lambda lvl: lvl.price, reverse=True)
            updated_at = max(self._book.last_updated, book.last_updated or time.time())
            self._book = OrderBook(
                pair_id=pair_id,
                asks=tuple(asks[: self.depth]),
                bids=tuple(bids[: self.depth]),
                last_updated=updated_at,
            )
            self.version += 1
            return True

    def prepend_trades(self, pair_id: str, trades: Iterable[Trade]) -> int:
        """Merge trades into the tape, newest first, keeping at most ``trade_capacity``.

        Trades already on the tape (same ``trade_id``) are skipped. Returns
        the number of trades added, or 0 if the pair is not selected.
        """
        with self._write_lock:
            if pair_id != self._pair_id:
                logger.debug("Dropping trades for unselected pair", pair=pair_id, selected=self._pair_id)
                return 0
            seen = {t.trade_id for t in self._tape if t.trade_id is not None}
            fresh = []
            for trade in trades:
                if trade.pair_id != pair_id:
                    continue
                if trade.trade_id is not None:
                    if trade.trade_id in seen:
                        continue
                    seen.add(trade.trade_id)
                fresh.append(trade)
            if not fresh:
                return 0
            # Stable sort keeps the given order for trades sharing a timestamp.
            merged = sorted([*fresh, *self._tape], key=lambda t: t.timestamp, reverse=True)
            self._tape = deque(merged[: self.trade_capacity], maxlen=self.trade_capacity)
            self._trades = tuple(self._tape)
            self.version += 1
            return len(fresh)

    def record_trade(self, trade: Trade) -> bool:
        """Push one local trade onto the head of the tape."""
        with self._write_lock:
            if trade.pair_id != self._pair_id:
                return False
            self._tape.appendleft(trade)
            self._trades = tuple(self._tape)
            self.version += 1
            return True

    def switch_pair(self, pair_id: str) -> str:
        """Hand ownership to ``pair_id``; the previous pair's book and tape are dropped."""
        with self._write_lock:
            previous = self._pair_id
            if pair_id != previous:
                self._pair_id = pair_id
                self._reset(pair_id)
                logger.info("Selected pair switched", previous=previous, pair=pair_id)
            return previous

    def clear(self) -> None:
        with self._write_lock:
            self._reset(self._pair_id)

    def _reset(self, pair_id: str) -> None:
        self._book = OrderBook(pair_id=pair_id)
        self._tape = deque(maxlen=self.trade_capacity)
        self._trades = ()
        self.version += 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def book(self) -> OrderBook:
        return self._book

    def trades(self) -> Tuple[Trade, ...]:
        return self._trades

    def last_price(self) -> Optional[float]:
        trades = self._trades
        return trades[0].price if trades else None


def levels_from_pairs(rows: Iterable[Iterable[object]]) -> Tuple[OrderBookLevel, ...]:
    """Build levels from ``[[price, qty], ...]`` rows as exchanges send them."""
    levels = []
    for row in rows:
        price, qty = list(row)[:2]
        levels.append(OrderBookLevel(price=float(price), quantity=float(qty)))
    return tuple(levels)
