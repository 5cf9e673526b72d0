"""Built-in news and education catalog served when no live source is configured."""

from __future__ import annotations

from typing import List, Optional

from marketpulse.market.models import EducationItem, NewsItem

NEWS_CATALOG: List[NewsItem] = [
    NewsItem(
        id="news-1",
        title="Bitcoin Reaches New All-Time High Above $43,000",
        summary="Bitcoin surges to new heights as institutional adoption continues to grow.",
        source="CryptoDaily",
        sentiment="positive",
        published_at="2024-01-15T14:30:00Z",
        related_assets=("BTC",),
    ),
    NewsItem(
        id="news-2",
        title="Ethereum Layer 2 Solutions See Massive Growth",
        summary="Layer 2 scaling solutions for Ethereum are experiencing unprecedented adoption.",
        source="BlockchainWeekly",
        sentiment="positive",
        published_at="2024-01-15T12:00:00Z",
        related_assets=("ETH",),
    ),
    NewsItem(
        id="news-3",
        title="Regulators Publish Draft Rules for Stablecoin Reserves",
        summary="The consultation sets disclosure requirements for fiat-backed issuers.",
        source="MarketWire",
        sentiment="neutral",
        published_at="2024-01-14T09:15:00Z",
        related_assets=("USDT", "USDC"),
    ),
    NewsItem(
        id="news-4",
        title="Solana Network Briefly Halts Block Production",
        summary="Validators coordinated a restart after a consensus stall of roughly five hours.",
        source="ChainReport",
        sentiment="negative",
        published_at="2024-01-13T18:40:00Z",
        related_assets=("SOL",),
    ),
]

EDUCATION_CATALOG: List[EducationItem] = [
    EducationItem(
        id="edu-1",
        title="Introduction to Cryptocurrency Trading",
        description="Learn the basics of crypto trading, from market analysis to risk management.",
        kind="course",
        level="beginner",
        category="Trading",
        duration_minutes=45,
    ),
    EducationItem(
        id="edu-2",
        title="Reading an Order Book",
        description="Bids, asks, spread and depth: what the ladder tells you before you place an order.",
        kind="article",
        level="beginner",
        category="Trading",
        duration_minutes=12,
    ),
    EducationItem(
        id="edu-3",
        title="Position Sizing and Risk per Trade",
        description="Fixed-fraction sizing, stop distance and why risk is set before entry.",
        kind="video",
        level="intermediate",
        category="Risk",
        duration_minutes=25,
    ),
    EducationItem(
        id="edu-4",
        title="Understanding Market Dominance Metrics",
        description="How BTC and ETH dominance shift across market cycles.",
        kind="article",
        level="advanced",
        category="Markets",
        duration_minutes=18,
    ),
]


def news(limit: int = 20, offset: int = 0) -> List[NewsItem]:
    return NEWS_CATALOG[offset:offset + limit]


def education(category: Optional[str] = None, level: Optional[str] = None) -> List[EducationItem]:
    items = EDUCATION_CATALOG
    if category:
        items = [i for i in items if i.category.lower() == category.lower()]
    if level:
        items = [i for i in items if i.level == level.lower()]
    return list(items)
