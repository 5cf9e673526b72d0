"""
Ticker Store - canonical instrument table plus market globals.

The table is held as one immutable tuple and swapped by a single
assignment, so readers always see either the previous or the next table.
A writer lock serialises the read-modify-write of ``perturb`` for hosts
that drive the store from more than one thread.
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from marketpulse.core.logger import get_logger
from marketpulse.market.models import Instrument, MarketGlobals, TopMovers

logger = get_logger("ticker_store")

# Maximum relative move applied by one simulated tick (+/- 0.1%).
MAX_TICK_FLUCTUATION = 0.001
PRICE_DECIMALS = 8

RowUpdate = Callable[[Instrument], Mapping[str, Any]]

_IMMUTABLE_FIELDS = frozenset({"id"})


def simulate_price_tick(
    instrument: Instrument,
    rng: Optional[random.Random] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Bounded random-walk step for one instrument.

    Draws ``f = (rand - 0.5) * 0.002`` and returns the new price
    ``price * (1 + f)`` rounded to 8 decimals with a fresh timestamp.
    """
    draw = (rng or random).random()
    factor = (draw - 0.5) * (2 * MAX_TICK_FLUCTUATION)
    return {
        "price": round(instrument.price * (1 + factor), PRICE_DECIMALS),
        "last_updated": time.time() if now is None else now,
    }


class TickerStore:
    """Canonical table of instruments keyed by id, in market-cap order."""

    def __init__(self) -> None:
        self._table: Tuple[Tuple[Instrument, ...], Dict[str, Instrument]] = ((), {})
        self._globals: Optional[MarketGlobals] = None
        self._write_lock = threading.Lock()
        self.version = 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def replace_all(self, instruments: Iterable[Instrument]) -> int:
        """Swap in a full new table. Returns the number of rows kept.

        Rows with a non-positive price or a duplicate id are dropped.
        ``last_updated`` never moves backwards for an id already present.
        """
        with self._write_lock:
            _, current = self._table
            rows = []
            index: Dict[str, Instrument] = {}
            for inst in instruments:
                if inst.price <= 0 or inst.id in index:
                    logger.debug("Dropping invalid instrument row", id=inst.id, price=inst.price)
                    continue
                prev = current.get(inst.id)
                if prev is not None and inst.last_updated < prev.last_updated:
                    inst = replace(inst, last_updated=prev.last_updated)
                rows.append(inst)
                index[inst.id] = inst
            self._table = (tuple(rows), index)
            self.version += 1
            return len(rows)

    def perturb(self, ids: Optional[Iterable[str]], fn: RowUpdate) -> int:
        """Apply ``fn`` to the rows in ``ids`` (all rows when None).

        ``fn`` returns only the fields it changes; everything else is kept.
        Returns the number of rows updated.
        """
        with self._write_lock:
            rows, index = self._table
            targets = None if ids is None else set(ids)
            new_rows = []
            new_index: Dict[str, Instrument] = {}
            changed = 0
            for inst in rows:
                if targets is None or inst.id in targets:
                    updated = self._apply_update(inst, fn)
                    if updated is not inst:
                        changed += 1
                    inst = updated
                new_rows.append(inst)
                new_index[inst.id] = inst
            if changed:
                self._table = (tuple(new_rows), new_index)
                self.version += 1
            return changed

    @staticmethod
    def _apply_update(inst: Instrument, fn: RowUpdate) -> Instrument:
        updates = dict(fn(inst) or {})
        for key in _IMMUTABLE_FIELDS:
            updates.pop(key, None)
        if not updates:
            return inst
        price = updates.get("price", inst.price)
        if not price or price <= 0:
            logger.warning("Rejected non-positive price update", id=inst.id, price=price)
            return inst
        if "last_updated" in updates:
            updates["last_updated"] = max(inst.last_updated, float(updates["last_updated"]))
        return replace(inst, **updates)

    def set_globals(self, market_globals: MarketGlobals) -> None:
        """Replace market globals wholesale."""
        with self._write_lock:
            self._globals = market_globals
            self.version += 1

    def clear(self) -> None:
        with self._write_lock:
            self._table = ((), {})
            self._globals = None
            self.version += 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list(self) -> Tuple[Instrument, ...]:
        return self._table[0]

    def get(self, instrument_id: str) -> Optional[Instrument]:
        return self._table[1].get(instrument_id)

    def find_symbol(self, symbol: str) -> Optional[Instrument]:
        symbol = symbol.upper()
        for inst in self._table[0]:
            if inst.symbol.upper() == symbol:
                return inst
        return None

    @property
    def globals(self) -> Optional[MarketGlobals]:
        return self._globals

    def __len__(self) -> int:
        return len(self._table[0])

    def top_movers(self, limit: int = 5) -> TopMovers:
        """Largest gainers and losers by 24h change."""
        rows = self._table[0]
        gainers = sorted((i for i in rows if i.change_24h_pct > 0), key=lambda i: i.change_24h_pct, reverse=True)
        losers = sorted((i for i in rows if i.change_24h_pct < 0), key=lambda i: i.change_24h_pct)
        return TopMovers(gainers=tuple(gainers[:limit]), losers=tuple(losers[:limit]))
