import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from repricer.config import settings
from repricer.models_sqlalchemy.models import (
    Listing,
    ListingSource,
    MarketplaceAccount,
    PriceReductionLog,
    ReductionStrategy,
)
from repricer.services.ebay_account_service import ebay_account_service
from repricer.services.price_reduction_service import prune_reduction_logs, run_reduction_pass

from conftest import connect_user, make_listing, make_user, token_response


REVISE_OK = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<ReviseFixedPriceItemResponse xmlns="urn:ebay:apis:eBLBaseComponents">'
    "<Ack>Success</Ack><ItemID>110553311111</ItemID>"
    "</ReviseFixedPriceItemResponse>"
)
REVISE_FAILURE = (
    '<?xml version="1.0" encoding="UTF-8"?>'
    '<ReviseFixedPriceItemResponse xmlns="urn:ebay:apis:eBLBaseComponents">'
    "<Ack>Failure</Ack><Errors><ShortMessage>Item ended</ShortMessage>"
    "<LongMessage>The item has already ended.</LongMessage><SeverityCode>Error</SeverityCode></Errors>"
    "</ReviseFixedPriceItemResponse>"
)


@pytest.fixture(autouse=True)
def _sequential_users(monkeypatch):
    monkeypatch.setattr(settings, "PRICE_REDUCTION_USER_CONCURRENCY", 1)
    monkeypatch.setattr(settings, "BROWSE_USE_APP_TOKEN", True)


def _ebay_handler(revise_body=REVISE_OK):
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/identity/v1/oauth2/token":
            return token_response()
        if path == "/ws/api.dll":
            return httpx.Response(200, text=revise_body)
        if path == "/sell/inventory/v1/offer":
            return httpx.Response(200, json={"offers": [{"offerId": "OFFER-42", "sku": request.url.params["sku"]}]})
        if path == "/sell/inventory/v1/bulk_update_price_quantity":
            return httpx.Response(200, json={"responses": [{"statusCode": 200, "sku": "SKU-1"}]})
        return httpx.Response(404)

    return handler


@pytest.mark.asyncio
async def test_due_listing_is_reduced_logged_and_rescheduled(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    listing = make_listing(db, user, source=ListingSource.trading_api)
    calls = ebay_http(_ebay_handler())

    summary = await run_reduction_pass(session_factory=session_factory)

    assert summary["users_processed"] == 1
    assert summary["listings_evaluated"] == 1
    assert summary["listings_reduced"] == 1
    assert summary["listings_failed"] == 0

    revise = [c for c in calls if c.url.path == "/ws/api.dll"]
    assert len(revise) == 1
    assert revise[0].headers["X-EBAY-API-CALL-NAME"] == "ReviseFixedPriceItem"
    assert revise[0].headers["X-EBAY-API-SITEID"] == "0"
    assert '<StartPrice currencyID="USD">95.00</StartPrice>' in revise[0].content.decode()

    db.expire_all()
    updated = db.get(Listing, listing.id)
    assert updated.current_price == Decimal("95.00")
    assert updated.total_reductions == 1
    assert updated.last_reduction_at is not None
    assert updated.next_reduction_at is not None

    log = db.query(PriceReductionLog).one()
    assert log.listing_id == listing.id
    assert log.original_price == Decimal("100.00")
    assert log.reduced_price == Decimal("95.00")
    assert log.reduction_amount == Decimal("5.00")
    assert log.reduction_percentage == Decimal("5.00")
    assert log.reduction_type == "scheduled"
    assert log.reason == "time trigger"


@pytest.mark.asyncio
async def test_rescheduled_listing_is_not_due_on_the_next_pass(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    make_listing(db, user, source=ListingSource.trading_api)
    ebay_http(_ebay_handler())

    await run_reduction_pass(session_factory=session_factory)
    second = await run_reduction_pass(session_factory=session_factory)

    assert second["listings_evaluated"] == 0
    assert db.query(PriceReductionLog).count() == 1


@pytest.mark.asyncio
async def test_dry_run_changes_nothing_and_never_updates_prices(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    listing = make_listing(db, user, source=ListingSource.trading_api)
    calls = ebay_http(_ebay_handler())

    summary = await run_reduction_pass(session_factory=session_factory, dry_run=True)

    assert summary["dry_run"] is True
    assert summary["listings_reduced"] == 1
    assert summary["details"][0]["new_price"] == 95.0
    assert all(c.url.path == "/identity/v1/oauth2/token" for c in calls)

    db.expire_all()
    assert db.get(Listing, listing.id).current_price == Decimal("100.00")
    assert db.query(PriceReductionLog).count() == 0


@pytest.mark.asyncio
async def test_vacation_mode_users_are_skipped(db, session_factory, ebay_http):
    user = make_user(db, vacation_mode=True)
    connect_user(db, user)
    listing = make_listing(db, user, source=ListingSource.trading_api)
    calls = ebay_http(_ebay_handler())

    summary = await run_reduction_pass(session_factory=session_factory)

    assert summary["users_skipped"] == 1
    assert summary["listings_evaluated"] == 0
    assert calls == []
    db.expire_all()
    assert db.get(Listing, listing.id).current_price == Decimal("100.00")


@pytest.mark.asyncio
async def test_token_failure_is_recorded_and_does_not_abort_other_users(db, session_factory, ebay_http):
    broken = make_user(db, email="broken@example.com")
    connect_user(db, broken)
    broken_listing = make_listing(db, broken, source=ListingSource.trading_api)

    healthy = make_user(db, email="healthy@example.com")
    healthy_account = connect_user(db, healthy)
    healthy_listing = make_listing(db, healthy, source=ListingSource.trading_api)

    # Give the broken seller a refresh token eBay will reject.
    ebay_account_service.save_authorization(db, broken.id, "v^1.1#REVOKED" + "x" * 60)

    def routing_handler(request):
        if request.url.path == "/identity/v1/oauth2/token" and "REVOKED" in request.content.decode():
            return httpx.Response(401, json={"error": "invalid_grant"})
        return _ebay_handler()(request)

    ebay_http(routing_handler)

    summary = await run_reduction_pass(session_factory=session_factory)

    assert summary["users_processed"] == 1
    assert summary["users_skipped"] == 1
    assert summary["listings_reduced"] == 1
    assert summary["errors"][0]["code"] == "EBAY_AUTH_FAILED"
    assert summary["errors"][0]["recommended_action"] == "DISCONNECT_AND_RECONNECT"

    db.expire_all()
    assert db.get(Listing, broken_listing.id).current_price == Decimal("100.00")
    assert db.get(Listing, healthy_listing.id).current_price == Decimal("95.00")
    broken_account = db.query(MarketplaceAccount).filter(MarketplaceAccount.user_id == broken.id).one()
    assert broken_account.last_error_code == "EBAY_AUTH_FAILED"
    assert healthy_account.last_error_code is None


@pytest.mark.asyncio
async def test_inventory_listing_looks_up_and_stores_offer_id(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    listing = make_listing(db, user, source=ListingSource.inventory_api, offer_id=None, quantity_available=3)
    calls = ebay_http(_ebay_handler())

    summary = await run_reduction_pass(session_factory=session_factory)

    assert summary["listings_reduced"] == 1
    bulk = [c for c in calls if c.url.path == "/sell/inventory/v1/bulk_update_price_quantity"]
    body = json.loads(bulk[0].content)
    assert body["requests"][0]["offers"][0] == {"offerId": "OFFER-42", "price": {"value": "95.00", "currency": "USD"}}
    assert body["requests"][0]["shipToLocationAvailability"] == {"quantity": 3}

    db.expire_all()
    assert db.get(Listing, listing.id).offer_id == "OFFER-42"


@pytest.mark.asyncio
async def test_unknown_source_falls_back_to_trading_and_remembers_it(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    listing = make_listing(db, user, source=None, sku=None)
    ebay_http(_ebay_handler())

    summary = await run_reduction_pass(session_factory=session_factory)

    assert summary["listings_reduced"] == 1
    db.expire_all()
    assert db.get(Listing, listing.id).source == ListingSource.trading_api


@pytest.mark.asyncio
async def test_failed_price_update_leaves_listing_untouched(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    listing = make_listing(db, user, source=ListingSource.trading_api)
    ebay_http(_ebay_handler(revise_body=REVISE_FAILURE))

    summary = await run_reduction_pass(session_factory=session_factory)

    assert summary["listings_failed"] == 1
    assert summary["errors"][0]["code"] == "PRICE_UPDATE_FAILED"
    assert "already ended" in summary["errors"][0]["message"]
    db.expire_all()
    refreshed = db.get(Listing, listing.id)
    assert refreshed.current_price == Decimal("100.00")
    assert refreshed.next_reduction_at is None
    assert db.query(PriceReductionLog).count() == 0


@pytest.mark.asyncio
async def test_disabled_ended_and_future_listings_are_not_evaluated(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    now = datetime.now(timezone.utc)
    make_listing(db, user, reduction_enabled=False)
    make_listing(db, user, end_time=now - timedelta(days=1))
    make_listing(db, user, next_reduction_at=now + timedelta(days=3))
    make_listing(db, user, listing_status="ended")
    calls = ebay_http(_ebay_handler())

    summary = await run_reduction_pass(session_factory=session_factory)

    assert summary["listings_evaluated"] == 0
    assert calls == []


def test_prune_removes_only_rows_older_than_retention(db):
    user = make_user(db)
    now = datetime.now(timezone.utc)
    for age_days in (1, 9, 11, 30):
        db.add(
            PriceReductionLog(
                user_id=user.id,
                original_price=Decimal("10"),
                reduced_price=Decimal("9"),
                reduction_amount=Decimal("1"),
                reduction_percentage=Decimal("10"),
                created_at=now - timedelta(days=age_days),
            )
        )
    db.commit()

    deleted = prune_reduction_logs(db, now=now, retention_days=10)

    assert deleted == 2
    assert db.query(PriceReductionLog).count() == 2


def _browse_handler(rejected_tokens):
    """Token endpoint hands out app-token-1, app-token-2, ...; Browse rejects ``rejected_tokens``."""
    app_tokens_issued = []
    summaries = [
        {"itemId": f"v1|{i}|0", "title": "Canon AE-1", "price": {"value": str(price), "currency": "USD"}, "seller": {"username": "camera_guy"}}
        for i, price in enumerate((90, 91, 92, 93, 94, 95))
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/identity/v1/oauth2/token":
            if "client_credentials" in request.content.decode():
                app_tokens_issued.append(f"app-token-{len(app_tokens_issued) + 1}")
                return token_response(app_tokens_issued[-1])
            return token_response()
        if path == "/buy/browse/v1/item_summary/search":
            if request.headers["Authorization"].removeprefix("Bearer ") in rejected_tokens:
                return httpx.Response(401, json={"errors": [{"errorId": 1001}]})
            return httpx.Response(200, json={"itemSummaries": summaries})
        return _ebay_handler()(request)

    return handler, app_tokens_issued


@pytest.mark.asyncio
async def test_rejected_search_token_is_replaced_and_the_search_retried(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    make_listing(db, user, strategy=ReductionStrategy.market_based, gtin="0013803001234", category_id=None)
    handler, app_tokens_issued = _browse_handler(rejected_tokens={"app-token-1"})
    ebay_http(handler)

    first = await run_reduction_pass(session_factory=session_factory, dry_run=True)
    second = await run_reduction_pass(session_factory=session_factory, dry_run=True)

    assert app_tokens_issued == ["app-token-1", "app-token-2"]
    for summary in (first, second):
        market = summary["details"][0]["market"]
        assert market["match_tier"] == "gtin"
        assert market["sample_count"] == 6


@pytest.mark.asyncio
async def test_search_token_rejected_twice_falls_back_to_percentage(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    make_listing(db, user, strategy=ReductionStrategy.market_based, gtin="0013803001234", category_id=None)
    handler, app_tokens_issued = _browse_handler(rejected_tokens={"app-token-1", "app-token-2"})
    ebay_http(handler)

    summary = await run_reduction_pass(session_factory=session_factory, dry_run=True)

    assert app_tokens_issued == ["app-token-1", "app-token-2"]
    detail = summary["details"][0]
    assert detail["market"]["match_tier"] == "no_matches"
    assert detail["new_price"] == 95.0


@pytest.mark.asyncio
async def test_unreadable_token_expiry_is_recorded_on_the_account(db, session_factory, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    make_listing(db, user, source=ListingSource.trading_api)

    def handler(request):
        if request.url.path == "/identity/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "v^1.1#tok", "expires_in": "two hours"})
        return _ebay_handler()(request)

    ebay_http(handler)

    summary = await run_reduction_pass(session_factory=session_factory)

    assert summary["users_skipped"] == 1
    assert summary["errors"][0]["code"] == "EBAY_API_ERROR"
    account = db.query(MarketplaceAccount).filter(MarketplaceAccount.user_id == user.id).one()
    db.refresh(account)
    assert account.last_error_code == "EBAY_API_ERROR"
