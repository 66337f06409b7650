from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape

import httpx

from repricer.config import settings
from repricer.models_sqlalchemy.models import Listing, ListingSource
from repricer.services import http_retry
from repricer.utils.logger import logger


NS = {"e": "urn:ebay:apis:eBLBaseComponents"}

TRADING_SITE_ID = 0
TRADING_COMPATIBILITY_LEVEL = 967


class PriceUpdateError(Exception):
    def __init__(self, message: str, *, source: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.source = source
        self.status_code = status_code


def _xml_text(val: Any) -> str:
    return escape("" if val is None else str(val))


def _price_str(price: Decimal) -> str:
    return f"{Decimal(price):.2f}"


def build_revise_price_xml(*, item_id: str, new_price: Decimal, currency: str = "USD") -> str:
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<ReviseFixedPriceItemRequest xmlns="urn:ebay:apis:eBLBaseComponents">'
        "<ErrorLanguage>en_US</ErrorLanguage>"
        "<WarningLevel>High</WarningLevel>"
        "<Item>"
        f"<ItemID>{_xml_text(item_id)}</ItemID>"
        f'<StartPrice currencyID="{_xml_text(currency)}">{_price_str(new_price)}</StartPrice>'
        "</Item>"
        "</ReviseFixedPriceItemRequest>"
    )


def parse_trading_response(xml_text: str) -> Dict[str, Any]:
    """Parse a Trading API response into ack / errors / warnings."""
    out: Dict[str, Any] = {"ack": None, "item_id": None, "errors": [], "warnings": []}
    if not xml_text:
        return out

    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        out["parse_error"] = "invalid_xml"
        return out

    out["ack"] = root.findtext(".//e:Ack", default=None, namespaces=NS)
    out["item_id"] = root.findtext(".//e:ItemID", default=None, namespaces=NS)

    for err in root.findall(".//e:Errors", namespaces=NS):
        entry = {
            "code": err.findtext("e:ErrorCode", default=None, namespaces=NS),
            "severity": err.findtext("e:SeverityCode", default=None, namespaces=NS),
            "short": err.findtext("e:ShortMessage", default=None, namespaces=NS),
            "long": err.findtext("e:LongMessage", default=None, namespaces=NS),
        }
        if entry.get("severity") == "Warning":
            out["warnings"].append(entry)
        else:
            out["errors"].append(entry)

    return out


async def _send(method: str, url: str, **kwargs: Any) -> httpx.Response:
    # Price writes are not retried; a failed listing is picked up next pass.
    await http_retry.sell_throttle.wait()
    try:
        return await http_retry.send_with_retry(method, url, max_attempts=1, label="price_update", **kwargs)
    except httpx.TransportError as exc:
        raise PriceUpdateError(f"eBay request failed: {type(exc).__name__}") from exc


async def update_price_trading(access_token: str, listing: Listing, new_price: Decimal) -> Dict[str, Any]:
    if not listing.ebay_item_id:
        raise PriceUpdateError("Listing has no eBay item id for the Trading API", source=ListingSource.trading_api.value)

    headers = {
        "X-EBAY-API-CALL-NAME": "ReviseFixedPriceItem",
        "X-EBAY-API-SITEID": str(TRADING_SITE_ID),
        "X-EBAY-API-COMPATIBILITY-LEVEL": str(TRADING_COMPATIBILITY_LEVEL),
        "X-EBAY-API-IAF-TOKEN": access_token,
        "Content-Type": "text/xml; charset=utf-8",
        "Accept": "text/xml",
    }
    request_xml = build_revise_price_xml(
        item_id=listing.ebay_item_id,
        new_price=new_price,
        currency=listing.currency or "USD",
    )

    resp = await _send("POST", settings.ebay_trading_api_url, headers=headers, content=request_xml.encode("utf-8"))
    parsed = parse_trading_response(resp.text or "")

    if resp.status_code != 200 or parsed.get("ack") not in ("Success", "Warning"):
        first = (parsed.get("errors") or [{}])[0]
        message = first.get("long") or first.get("short") or f"HTTP {resp.status_code}"
        raise PriceUpdateError(
            f"ReviseFixedPriceItem failed: {message}",
            source=ListingSource.trading_api.value,
            status_code=resp.status_code,
        )

    if parsed["warnings"]:
        logger.info("[price_update] ReviseFixedPriceItem warnings item=%s: %s", listing.ebay_item_id, parsed["warnings"])
    return parsed


async def fetch_offer_id(access_token: str, sku: str) -> Optional[str]:
    url = f"{settings.ebay_api_base_url}/sell/inventory/v1/offer"
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
    }
    resp = await _send("GET", url, headers=headers, params={"sku": sku})
    if resp.status_code != 200:
        logger.warning("[price_update] offer lookup failed sku=%s status=%s", sku, resp.status_code)
        return None
    try:
        offers = (resp.json() or {}).get("offers") or []
    except ValueError:
        return None
    if not offers:
        return None
    return offers[0].get("offerId")


async def update_price_inventory(access_token: str, listing: Listing, new_price: Decimal) -> Dict[str, Any]:
    """Update via Inventory API ``bulk_update_price_quantity``.

    The offer id is looked up by SKU (and stored on the listing) when missing.
    """
    if not listing.sku:
        raise PriceUpdateError("Listing has no SKU for the Inventory API", source=ListingSource.inventory_api.value)

    if not listing.offer_id:
        listing.offer_id = await fetch_offer_id(access_token, listing.sku)
    if not listing.offer_id:
        raise PriceUpdateError(
            f"No offer found for SKU {listing.sku}",
            source=ListingSource.inventory_api.value,
        )

    body = {
        "requests": [
            {
                "sku": listing.sku,
                "shipToLocationAvailability": {"quantity": listing.quantity_available or 1},
                "offers": [
                    {
                        "offerId": listing.offer_id,
                        "price": {"value": _price_str(new_price), "currency": listing.currency or "USD"},
                    }
                ],
            }
        ]
    }
    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    url = f"{settings.ebay_api_base_url}/sell/inventory/v1/bulk_update_price_quantity"
    resp = await _send("POST", url, headers=headers, json=body)

    if resp.status_code != 200:
        raise PriceUpdateError(
            f"Inventory API error: HTTP {resp.status_code} {resp.text[:200]}",
            source=ListingSource.inventory_api.value,
            status_code=resp.status_code,
        )

    try:
        result = resp.json() or {}
    except ValueError as exc:
        raise PriceUpdateError("Inventory API returned a non-JSON body", source=ListingSource.inventory_api.value) from exc

    first = (result.get("responses") or [{}])[0]
    if first.get("statusCode") != 200:
        errors = first.get("errors") or [{}]
        raise PriceUpdateError(
            f"Inventory API: {errors[0].get('message') or 'Unknown error'}",
            source=ListingSource.inventory_api.value,
            status_code=first.get("statusCode"),
        )
    return result


async def update_listing_price(access_token: str, listing: Listing, new_price: Decimal) -> ListingSource:
    """Push ``new_price`` to eBay using the API that owns the listing.

    Listings with an unknown source try the Inventory API first, then the
    Trading API, and remember whichever worked.
    """
    if listing.source == ListingSource.inventory_api:
        await update_price_inventory(access_token, listing, new_price)
        return ListingSource.inventory_api
    if listing.source == ListingSource.trading_api:
        await update_price_trading(access_token, listing, new_price)
        return ListingSource.trading_api

    inventory_error: Optional[PriceUpdateError] = None
    if listing.sku:
        try:
            await update_price_inventory(access_token, listing, new_price)
            listing.source = ListingSource.inventory_api
            return ListingSource.inventory_api
        except PriceUpdateError as exc:
            inventory_error = exc
            logger.info("[price_update] inventory update failed for listing=%s, trying Trading API: %s", listing.id, exc)

    if listing.ebay_item_id:
        await update_price_trading(access_token, listing, new_price)
        listing.source = ListingSource.trading_api
        return ListingSource.trading_api

    if inventory_error is not None:
        raise inventory_error
    raise PriceUpdateError("Listing has neither a SKU nor an eBay item id")
