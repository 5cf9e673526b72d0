"""
Market state entities.

All entities are frozen dataclasses: stores swap whole tuples of them, so
any reference handed to a reader is an immutable snapshot.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple


class Side(str, enum.Enum):
    BUY = "buy"
    SELL = "sell"


class FeedStatus(str, enum.Enum):
    """Indicator shown next to the market widgets."""
    LIVE = "live"
    PARTIAL = "partial"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class Instrument:
    id: str
    symbol: str
    name: str
    price: float
    change_24h_pct: float = 0.0
    market_cap: float = 0.0
    volume_24h: float = 0.0
    last_updated: float = 0.0


@dataclass(frozen=True)
class MarketGlobals:
    total_market_cap: float
    total_volume_24h: float
    btc_dominance_pct: float
    eth_dominance_pct: float
    # None when the sentiment source was unavailable for this refresh.
    fear_greed_index: Optional[int] = None
    last_updated: float = 0.0


@dataclass(frozen=True)
class OrderBookLevel:
    price: float
    quantity: float


@dataclass(frozen=True)
class OrderBook:
    """Asks ascending, bids descending. Crossed books are allowed."""
    pair_id: str
    asks: Tuple[OrderBookLevel, ...] = ()
    bids: Tuple[OrderBookLevel, ...] = ()
    last_updated: float = 0.0

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0].price if self.asks else None

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0].price if self.bids else None

    @property
    def spread(self) -> Optional[float]:
        if self.best_ask is None or self.best_bid is None:
            return None
        return self.best_ask - self.best_bid


@dataclass(frozen=True)
class Trade:
    pair_id: str
    price: float
    quantity: float
    side: Side
    timestamp: float
    trade_id: Optional[str] = None


@dataclass(frozen=True)
class Portfolio:
    total_balance: float
    available_balance: float
    in_orders: float
    total_pnl_pct: float = 0.0

    def imbalance(self) -> float:
        return self.available_balance + self.in_orders - self.total_balance


class OrderStatus(str, enum.Enum):
    OPEN = "open"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Order:
    order_id: str
    pair_id: str
    side: Side
    price: float
    quantity: float
    created_at: float
    status: OrderStatus = OrderStatus.OPEN

    @property
    def notional(self) -> float:
        return self.price * self.quantity


@dataclass(frozen=True)
class NewsItem:
    id: str
    title: str
    summary: str = ""
    source: str = ""
    url: str = ""
    sentiment: str = "neutral"
    published_at: str = ""
    related_assets: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EducationItem:
    id: str
    title: str
    description: str = ""
    kind: str = "article"
    level: str = "beginner"
    category: str = ""
    duration_minutes: int = 0


@dataclass(frozen=True)
class LoadOutcome:
    """Per-cycle summary of how many sources answered."""
    succeeded_count: int = 0
    failed_count: int = 0
    # Time of the last cycle in which fresh market data arrived.
    last_updated: Optional[float] = None
    # False when only locally served sources answered.
    market_data: bool = True

    @property
    def status(self) -> FeedStatus:
        if self.failed_count == 0:
            return FeedStatus.LIVE
        if self.succeeded_count > 0 and self.market_data:
            return FeedStatus.PARTIAL
        return FeedStatus.DEGRADED


@dataclass(frozen=True)
class TopMovers:
    gainers: Tuple[Instrument, ...] = ()
    losers: Tuple[Instrument, ...] = ()


@dataclass(frozen=True)
class Snapshot:
    state: str
    instruments: Tuple[Instrument, ...]
    globals: Optional[MarketGlobals]
    order_book: OrderBook
    trades: Tuple[Trade, ...]
    portfolio: Optional[Portfolio]
    load_outcome: LoadOutcome
    top_movers: TopMovers = field(default_factory=TopMovers)
    news: Tuple[NewsItem, ...] = ()
    education: Tuple[EducationItem, ...] = ()
    open_orders: Tuple[Order, ...] = ()
    notice: Optional[str] = None

    @property
    def selected_pair(self) -> str:
        return self.order_book.pair_id

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly dict (enums flattened to their values)."""
        d = asdict(self)
        d["selected_pair"] = self.selected_pair
        d["load_outcome"]["status"] = self.load_outcome.status.value
        return _flatten_enums(d)


def _flatten_enums(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _flatten_enums(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_flatten_enums(v) for v in value]
    return value
