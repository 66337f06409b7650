"""Lightweight eBay Browse API client used by competitive pricing.

Exposes one function, :func:`search_item_summaries`, that queries the Buy
Browse ``item_summary/search`` endpoint either by GTIN or by keywords (with
an optional category) and returns normalised competitor listings.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import httpx

from repricer.config import settings
from repricer.services import http_retry
from repricer.utils.logger import logger


BROWSE_SEARCH_LIMIT = 50


class BrowseAuthError(Exception):
    """The Browse API rejected the bearer token (HTTP 401)."""


@dataclass
class CompetitorListing:
    """Normalized subset of a Browse API item summary."""

    item_id: str
    title: str
    price: Decimal
    currency: Optional[str]
    seller_id: Optional[str]


def _parse_price(price_obj) -> Optional[Decimal]:
    if not isinstance(price_obj, dict):
        return None
    try:
        return Decimal(str(price_obj.get("value")))
    except (InvalidOperation, TypeError, ValueError):
        return None


async def search_item_summaries(
    access_token: str,
    *,
    gtin: Optional[str] = None,
    keywords: Optional[str] = None,
    category_id: Optional[str] = None,
    limit: int = BROWSE_SEARCH_LIMIT,
    marketplace_id: str = "EBAY_US",
) -> List[CompetitorListing]:
    """Search active fixed-price listings.

    Raises :class:`BrowseAuthError` on 401 so the token owner can evict and
    replace it. Any other HTTP, transport or parsing problem is logged and yields
    an empty list.
    """

    gtin = (gtin or "").strip()
    keywords = (keywords or "").strip()
    if not access_token or not (gtin or keywords):
        return []

    base = settings.ebay_api_base_url.rstrip("/")
    url = f"{base}/buy/browse/v1/item_summary/search"

    params = {
        "limit": str(max(1, min(limit, 200))),
        "filter": "buyingOptions:{FIXED_PRICE}",
    }
    if gtin:
        params["gtin"] = gtin
    else:
        params["q"] = keywords
        if category_id:
            params["category_ids"] = category_id

    headers = {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
        "Content-Type": "application/json",
        "X-EBAY-C-MARKETPLACE-ID": marketplace_id,
    }

    await http_retry.browse_throttle.wait()
    try:
        resp = await http_retry.send_with_retry("GET", url, headers=headers, params=params, label="browse")
    except httpx.TransportError as exc:
        logger.error("[browse] request error: %s", type(exc).__name__)
        return []

    if resp.status_code == 401:
        raise BrowseAuthError("eBay Browse API token is invalid or expired")

    if resp.status_code != 200:
        logger.warning("[browse] non-success status=%s body=%s", resp.status_code, resp.text[:500])
        return []

    try:
        data = resp.json()
    except ValueError as exc:
        logger.error("[browse] failed to parse response JSON: %s", exc)
        return []

    if not isinstance(data, dict):
        return []

    summaries = data.get("itemSummaries") or []
    results: List[CompetitorListing] = []

    for item in summaries:
        price_obj = item.get("price") or {}
        price = _parse_price(price_obj)
        if price is None:
            continue

        seller = item.get("seller") or {}
        results.append(
            CompetitorListing(
                item_id=str(item.get("itemId") or item.get("legacyItemId") or ""),
                title=(item.get("title") or "").strip(),
                price=price,
                currency=price_obj.get("currency"),
                seller_id=seller.get("username"),
            )
        )

    return results
