"""Competitive price search.

Runs a three-tier waterfall against the Browse API for one listing:

1. ``gtin``: exact product code match;
2. ``title_category``: title keywords restricted to the listing category;
3. ``title_only``: title keywords alone.

The first tier that yields at least ``MIN_SAMPLES`` competitor prices wins.
The surviving samples are stripped of the seller's own listings and of price
outliers, and summarised into a :class:`MarketAnalysis`. Market data is an
optional enrichment, so any failure degrades to a ``no_matches`` analysis,
except a rejected token: :class:`BrowseAuthError` reaches the caller, which
owns the token and can replace it.
"""

from __future__ import annotations

import re
import statistics
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Awaitable, Callable, Dict, List, Optional

from repricer.services.ebay_api_client import BrowseAuthError, CompetitorListing, search_item_summaries
from repricer.utils.logger import logger


TIER_GTIN = "gtin"
TIER_TITLE_CATEGORY = "title_category"
TIER_TITLE_ONLY = "title_only"
TIER_NO_MATCHES = "no_matches"

MIN_SAMPLES = 5
MAX_KEYWORDS = 5
OUTLIER_MIN_SAMPLES = 3
OUTLIER_LOW_FACTOR = Decimal("0.3")
OUTLIER_HIGH_FACTOR = Decimal("3")

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by from new used free
    shipping fast buy now get sale best top great good quality
    """.split()
)

_PUNCTUATION_RE = re.compile(r"[^\w\s]|_")
_CENT = Decimal("0.01")

SearchFn = Callable[..., Awaitable[List[CompetitorListing]]]


@dataclass
class CompetitorSample:
    price: Decimal
    seller_id: Optional[str]
    match_tier: str


@dataclass
class MarketAnalysis:
    match_tier: str
    samples: List[CompetitorSample] = field(default_factory=list)
    suggested_min_price: Optional[Decimal] = None
    average_price: Optional[Decimal] = None
    lowest_price: Optional[Decimal] = None
    highest_price: Optional[Decimal] = None
    sample_count: int = 0
    has_insufficient_data: bool = True

    def to_dict(self) -> Dict[str, Any]:
        def _f(value: Optional[Decimal]) -> Optional[float]:
            return float(value) if value is not None else None

        return {
            "match_tier": self.match_tier,
            "suggested_min_price": _f(self.suggested_min_price),
            "average_price": _f(self.average_price),
            "lowest_price": _f(self.lowest_price),
            "highest_price": _f(self.highest_price),
            "sample_count": self.sample_count,
            "has_insufficient_data": self.has_insufficient_data,
        }


def no_matches() -> MarketAnalysis:
    return MarketAnalysis(match_tier=TIER_NO_MATCHES)


def extract_keywords(title: Optional[str]) -> str:
    """Reduce a listing title to at most five meaningful search words."""
    if not title:
        return ""
    cleaned = _PUNCTUATION_RE.sub(" ", title.lower())
    words = [w for w in cleaned.split() if len(w) > 2 and w not in STOP_WORDS]
    return " ".join(words[:MAX_KEYWORDS])


def filter_own_listings(samples: List[CompetitorSample], own_seller_id: Optional[str]) -> List[CompetitorSample]:
    if not own_seller_id:
        return list(samples)
    own = own_seller_id.lower()
    return [s for s in samples if (s.seller_id or "").lower() != own]


def filter_price_outliers(samples: List[CompetitorSample]) -> List[CompetitorSample]:
    """Drop samples outside [0.3 x median, 3 x median]. Needs at least three samples."""
    if len(samples) < OUTLIER_MIN_SAMPLES:
        return list(samples)
    median = statistics.median([s.price for s in samples])
    low = median * OUTLIER_LOW_FACTOR
    high = median * OUTLIER_HIGH_FACTOR
    return [s for s in samples if low <= s.price <= high]


def summarize(match_tier: str, samples: List[CompetitorSample]) -> MarketAnalysis:
    if not samples:
        return no_matches()

    prices = [s.price for s in samples]
    total = sum(prices, Decimal("0"))
    average = (total / len(prices)).quantize(_CENT, rounding=ROUND_HALF_UP)
    lowest = min(prices).quantize(_CENT, rounding=ROUND_HALF_UP)
    highest = max(prices).quantize(_CENT, rounding=ROUND_HALF_UP)

    return MarketAnalysis(
        match_tier=match_tier,
        samples=list(samples),
        suggested_min_price=lowest,
        average_price=average,
        lowest_price=lowest,
        highest_price=highest,
        sample_count=len(samples),
        has_insufficient_data=len(samples) < MIN_SAMPLES,
    )


class CompetitivePricingService:
    def __init__(self, search_fn: Optional[SearchFn] = None):
        self._search_fn = search_fn

    async def _run_tier(
        self,
        tier: str,
        access_token: str,
        own_seller_id: Optional[str],
        **query: Any,
    ) -> List[CompetitorSample]:
        # Resolved at call time so tests can patch the module attribute.
        search_fn = self._search_fn or search_item_summaries
        listings = await search_fn(access_token, **query)
        samples = [
            CompetitorSample(price=item.price, seller_id=item.seller_id, match_tier=tier)
            for item in listings
            if item.price is not None and item.price > 0
        ]
        samples = filter_own_listings(samples, own_seller_id)
        logger.info("[pricing] tier=%s samples=%s", tier, len(samples))
        return samples

    async def search(
        self,
        listing,
        access_token: str,
        own_seller_id: Optional[str] = None,
    ) -> MarketAnalysis:
        """Run the waterfall for ``listing``.

        Only :class:`BrowseAuthError` propagates; every other failure yields
        ``no_matches``.
        """
        try:
            return await self._search(listing, access_token, own_seller_id)
        except BrowseAuthError:
            raise
        except Exception as exc:  # market data is optional
            logger.warning(
                "[pricing] competitive search failed for listing=%s: %s",
                getattr(listing, "id", None), exc,
            )
            return no_matches()

    async def _search(self, listing, access_token: str, own_seller_id: Optional[str]) -> MarketAnalysis:
        tiers: List[tuple] = []
        gtin = (getattr(listing, "gtin", None) or "").strip()
        keywords = extract_keywords(getattr(listing, "title", None))
        category_id = getattr(listing, "category_id", None)

        if gtin:
            tiers.append((TIER_GTIN, {"gtin": gtin}))
        if keywords and category_id:
            tiers.append((TIER_TITLE_CATEGORY, {"keywords": keywords, "category_id": str(category_id)}))
        if keywords:
            tiers.append((TIER_TITLE_ONLY, {"keywords": keywords}))

        chosen_tier: Optional[str] = None
        chosen: List[CompetitorSample] = []

        for tier, query in tiers:
            samples = await self._run_tier(tier, access_token, own_seller_id, **query)
            if samples:
                chosen_tier, chosen = tier, samples
            if len(samples) >= MIN_SAMPLES:
                break

        if not chosen:
            return no_matches()

        return summarize(chosen_tier, filter_price_outliers(chosen))


competitive_pricing_service = CompetitivePricingService()
