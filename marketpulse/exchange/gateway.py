"""
Market Data Gateway - one external fetch per call, failures as values.

Every call is bounded by its own timeout and resolves to a ``FetchResult``;
nothing raised by the transport or the payload parsers escapes ``fetch``.
There are no retries here: the scheduler decides when to ask again.

Sources:
- CoinGecko ``/coins/markets`` and ``/global`` (instruments, globals)
- alternative.me Fear & Greed (best effort, folded into globals)
- Binance ``/api/v3/depth`` and ``/api/v3/trades`` (order book, trades)
- CryptoPanic posts when a key is configured, else the built-in catalog
- portfolio from the local account configuration
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from marketpulse.core.config import GatewayConfig, PortfolioConfig
from marketpulse.core.logger import get_logger, log_performance
from marketpulse.data import content
from marketpulse.exchange.exceptions import (
    FetchError,
    MalformedPayloadError,
    RateLimitError,
    TransientFetchError,
    UpstreamRejectedError,
)
from marketpulse.market.models import (
    Instrument,
    MarketGlobals,
    NewsItem,
    OrderBook,
    OrderBookLevel,
    Side,
    Trade,
)

logger = get_logger("gateway")


class FetchKind(str, enum.Enum):
    INSTRUMENTS = "instruments"
    GLOBALS = "globals"
    ORDER_BOOK = "order_book"
    TRADES = "trades"
    NEWS = "news"
    EDUCATION = "education"
    PORTFOLIO = "portfolio"


@dataclass(frozen=True)
class FetchResult:
    kind: FetchKind
    payload: Any = None
    error: Optional[FetchError] = None
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, kind: FetchKind, payload: Any, *, from_cache: bool = False) -> FetchResult:
        return cls(kind=kind, payload=payload, from_cache=from_cache)

    @classmethod
    def failure(cls, kind: FetchKind, error: FetchError) -> FetchResult:
        return cls(kind=kind, error=error)


# ---------------------------------------------------------------------------
# Payload parsers (raise MalformedPayloadError on schema mismatch)
# ---------------------------------------------------------------------------

def _parse_ts(value: Any, default: float) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
        except ValueError:
            return default
    return default


def parse_instruments(rows: Any, now: float) -> List[Instrument]:
    if not isinstance(rows, list):
        raise MalformedPayloadError("instrument payload is not a list", source="coingecko")
    instruments: List[Instrument] = []
    for row in rows:
        try:
            price = float(row.get("current_price") or 0)
            if price <= 0:
                continue
            instruments.append(
                Instrument(
                    id=str(row["id"]),
                    symbol=str(row.get("symbol", "")).upper(),
                    name=str(row.get("name", "")),
                    price=price,
                    change_24h_pct=float(row.get("price_change_percentage_24h") or 0),
                    market_cap=float(row.get("market_cap") or 0),
                    volume_24h=float(row.get("total_volume") or 0),
                    last_updated=_parse_ts(row.get("last_updated"), now),
                )
            )
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.debug("Skipping malformed instrument row", row=repr(row)[:200])
    if not instruments:
        raise MalformedPayloadError("no usable instrument rows", source="coingecko")
    return instruments


def parse_globals(data: Any, fear_greed: Any, now: float) -> MarketGlobals:
    try:
        g = data["data"]
        dominance = g.get("market_cap_percentage") or {}
        return MarketGlobals(
            total_market_cap=float(g["total_market_cap"]["usd"]),
            total_volume_24h=float(g["total_volume"]["usd"]),
            btc_dominance_pct=float(dominance.get("btc", 0) or 0),
            eth_dominance_pct=float(dominance.get("eth", 0) or 0),
            fear_greed_index=parse_fear_greed(fear_greed),
            last_updated=now,
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"globals payload: {e!r}", source="coingecko") from e


def parse_fear_greed(data: Any) -> Optional[int]:
    """Index value 0..100, or None if the payload is missing or out of range."""
    try:
        value = int(data["data"][0]["value"])
    except (IndexError, KeyError, TypeError, ValueError):
        return None
    return value if 0 <= value <= 100 else None


def parse_order_book(pair_id: str, data: Any, now: float) -> OrderBook:
    try:
        asks = tuple(OrderBookLevel(price=float(p), quantity=float(q)) for p, q, *_ in data["asks"])
        bids = tuple(OrderBookLevel(price=float(p), quantity=float(q)) for p, q, *_ in data["bids"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"order book payload: {e!r}", source="binance") from e
    return OrderBook(pair_id=pair_id, asks=asks, bids=bids, last_updated=now)


def parse_trades(pair_id: str, rows: Any) -> List[Trade]:
    if not isinstance(rows, list):
        raise MalformedPayloadError("trades payload is not a list", source="binance")
    trades: List[Trade] = []
    try:
        for row in rows:
            trades.append(
                Trade(
                    pair_id=pair_id,
                    price=float(row["price"]),
                    quantity=float(row["qty"]),
                    # Buyer was the maker, so the aggressor sold.
                    side=Side.SELL if row.get("isBuyerMaker") else Side.BUY,
                    timestamp=float(row["time"]) / 1000.0,
                    trade_id=str(row["id"]),
                )
            )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"trade row: {e!r}", source="binance") from e
    trades.sort(key=lambda t: t.timestamp, reverse=True)
    return trades


def parse_news(data: Any, limit: int) -> List[NewsItem]:
    try:
        posts = data["results"]
        items = []
        for post in posts[:limit]:
            votes = post.get("votes") or {}
            pos = int(votes.get("positive", 0) or 0)
            neg = int(votes.get("negative", 0) or 0)
            sentiment = "positive" if pos > neg else "negative" if neg > pos else "neutral"
            items.append(
                NewsItem(
                    id=str(post["id"]),
                    title=str(post.get("title", ""))[:500],
                    source=str((post.get("source") or {}).get("title", "")),
                    url=str(post.get("url", "")),
                    sentiment=sentiment,
                    published_at=str(post.get("published_at", "")),
                    related_assets=tuple(
                        (c.get("code") or "").upper() for c in (post.get("currencies") or []) if c.get("code")
                    ),
                )
            )
        return items
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise MalformedPayloadError(f"news payload: {e!r}", source="cryptopanic") from e


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class MarketDataGateway:
    """Async adapter over the external market-data sources."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        portfolio: Optional[PortfolioConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or GatewayConfig()
        self.portfolio_config = portfolio or PortfolioConfig()
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._cache: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], Tuple[float, Any]] = {}
        self.request_count = 0
        self._handlers: Dict[FetchKind, Callable[..., Awaitable[Any]]] = {
            FetchKind.INSTRUMENTS: self._fetch_instruments,
            FetchKind.GLOBALS: self._fetch_globals,
            FetchKind.ORDER_BOOK: self._fetch_order_book,
            FetchKind.TRADES: self._fetch_trades,
            FetchKind.NEWS: self._fetch_news,
            FetchKind.EDUCATION: self._fetch_education,
            FetchKind.PORTFOLIO: self._fetch_portfolio,
        }

    async def initialize(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                headers={"Accept": "application/json"},
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._cache.clear()

    def timeout_for(self, kind: FetchKind) -> float:
        return float(self.config.kind_timeouts.get(kind.value, self.config.timeout_seconds))

    async def fetch(self, kind: FetchKind, **params: Any) -> FetchResult:
        """Run one fetch. Always returns; never raises (except on cancellation)."""
        try:
            kind = FetchKind(kind)
            handler = self._handlers[kind]
        except (ValueError, KeyError):
            logger.warning("Unknown fetch kind", kind=repr(kind))
            return FetchResult.failure(kind, MalformedPayloadError(f"unknown fetch kind {kind!r}", source=str(kind)))
        timeout = self.timeout_for(kind)
        try:
            with log_performance(logger, "fetch", slow_ms=timeout * 500, kind=kind.value):
                payload = await asyncio.wait_for(handler(**params), timeout=timeout)
            return FetchResult.success(kind, payload)
        except FetchError as e:
            error = e
        except (asyncio.TimeoutError, httpx.TimeoutException):
            error = TransientFetchError(f"{kind.value} timed out after {timeout}s", source=kind.value)
        except httpx.HTTPStatusError as e:
            error = self._status_error(e.response, kind)
        except httpx.TransportError as e:
            error = TransientFetchError(f"network error: {e!r}", source=kind.value)
        except (ValueError, KeyError, TypeError) as e:
            error = MalformedPayloadError(f"{kind.value} payload: {e!r}", source=kind.value)
        except Exception as e:
            error = TransientFetchError(f"unexpected {type(e).__name__}: {e}", source=kind.value)
        logger.debug("Fetch failed", kind=kind.value, error_type=type(error).__name__, error=str(error))
        return FetchResult.failure(kind, error)

    # -- convenience wrappers ---------------------------------------------

    async def fetch_instruments(self, limit: Optional[int] = None) -> FetchResult:
        return await self.fetch(FetchKind.INSTRUMENTS, limit=limit)

    async def fetch_globals(self) -> FetchResult:
        return await self.fetch(FetchKind.GLOBALS)

    async def fetch_order_book(self, pair_id: str, depth: int = 20) -> FetchResult:
        return await self.fetch(FetchKind.ORDER_BOOK, pair_id=pair_id, depth=depth)

    async def fetch_trades(self, pair_id: str, limit: int = 20) -> FetchResult:
        return await self.fetch(FetchKind.TRADES, pair_id=pair_id, limit=limit)

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _status_error(response: httpx.Response, kind: FetchKind) -> FetchError:
        code = response.status_code
        if code == 429:
            try:
                retry_after = float(response.headers.get("Retry-After", 0) or 0)
            except ValueError:
                retry_after = 0.0
            return RateLimitError(source=kind.value, retry_after=retry_after)
        if code >= 500:
            return TransientFetchError(f"HTTP {code}", source=kind.value)
        return UpstreamRejectedError(f"HTTP {code}", source=kind.value, status_code=code)

    async def _get_json(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """GET ``url`` and decode JSON, serving fresh hits from the TTL cache."""
        key = (url, tuple(sorted((k, str(v)) for k, v in (params or {}).items())))
        ttl = self.config.cache_ttl_seconds
        now = self._clock()
        cached = self._cache.get(key)
        if cached is not None and ttl > 0 and now - cached[0] < ttl:
            return cached[1]

        if self._client is None:
            await self.initialize()
        self.request_count += 1
        resp = await self._client.get(url, params=params, headers=headers)
        resp.raise_for_status()
        data = resp.json()
        if ttl > 0:
            self._cache[key] = (now, data)
        return data

    def _coingecko_headers(self) -> Dict[str, str]:
        if self.config.coingecko_api_key:
            return {"x-cg-demo-api-key": self.config.coingecko_api_key}
        return {}

    # ------------------------------------------------------------------
    # Per-kind handlers
    # ------------------------------------------------------------------

    async def _fetch_instruments(self, limit: Optional[int] = None) -> List[Instrument]:
        per_page = min(max(1, int(limit or self.config.instruments_limit)), 250)
        rows = await self._get_json(
            f"{self.config.coingecko_url.rstrip('/')}/coins/markets",
            params={
                "vs_currency": "usd",
                "order": "market_cap_desc",
                "per_page": per_page,
                "page": 1,
                "sparkline": "false",
            },
            headers=self._coingecko_headers(),
        )
        return parse_instruments(rows, self._clock())

    async def _fetch_globals(self) -> MarketGlobals:
        global_data, fng = await asyncio.gather(
            self._get_json(
                f"{self.config.coingecko_url.rstrip('/')}/global",
                headers=self._coingecko_headers(),
            ),
            self._get_json(self.config.fear_greed_url, params={"limit": 1, "format": "json"}),
            return_exceptions=True,
        )
        if isinstance(global_data, BaseException):
            raise global_data
        if isinstance(fng, BaseException):
            logger.debug("Fear & Greed unavailable", error=repr(fng))
            fng = None
        return parse_globals(global_data, fng, self._clock())

    async def _fetch_order_book(self, pair_id: str, depth: int = 20) -> OrderBook:
        data = await self._get_json(
            f"{self.config.binance_url.rstrip('/')}/api/v3/depth",
            params={"symbol": pair_id, "limit": depth},
        )
        return parse_order_book(pair_id, data, self._clock())

    async def _fetch_trades(self, pair_id: str, limit: int = 20) -> List[Trade]:
        rows = await self._get_json(
            f"{self.config.binance_url.rstrip('/')}/api/v3/trades",
            params={"symbol": pair_id, "limit": limit},
        )
        return parse_trades(pair_id, rows)

    async def _fetch_news(self, limit: Optional[int] = None) -> List[NewsItem]:
        limit = int(limit or self.config.news_limit)
        if not self.config.cryptopanic_api_key:
            return content.news(limit)
        data = await self._get_json(
            self.config.cryptopanic_url,
            params={
                "auth_token": self.config.cryptopanic_api_key,
                "filter": "important",
                "public": "true",
            },
        )
        return parse_news(data, limit)

    async def _fetch_education(self, category: Optional[str] = None, level: Optional[str] = None) -> list:
        return content.education(category, level)

    async def _fetch_portfolio(self) -> Dict[str, float]:
        p = self.portfolio_config
        return {
            "total_balance": p.total_balance,
            "available_balance": p.available_balance,
            "in_orders": p.in_orders,
            "total_pnl_pct": p.total_pnl_pct,
        }
