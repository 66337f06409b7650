import pytest
from fastapi.testclient import TestClient

from repricer.config import settings
from repricer.main import app
from repricer.models_sqlalchemy import get_db, get_session_factory
from repricer.models_sqlalchemy.models import ConnectionStatus, ListingSource
from repricer.services.ebay_account_service import ebay_account_service

from conftest import APP_ID, connect_user, make_listing, make_user, token_response


HEADERS = {"X-Internal-Api-Key": "test-internal-key"}


@pytest.fixture
def client(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", "test-internal-key")
    monkeypatch.setattr(settings, "START_BACKGROUND_WORKERS", False)

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_session_factory, None)


def test_healthz(client):
    resp = client.get("/healthz")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_internal_routes_require_the_shared_key(client):
    assert client.get("/api/internal/ebay/some-user/status").status_code == 401
    assert client.get("/api/internal/ebay/some-user/status", headers={"X-Internal-Api-Key": "nope"}).status_code == 401


def test_internal_routes_unavailable_without_configured_key(client, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", None)

    resp = client.post("/api/internal/price-reduction/run", headers=HEADERS)

    assert resp.status_code == 503
    assert resp.json()["detail"] == "internal_api_key_not_configured"


def test_status_of_user_without_credentials(client, db, monkeypatch):
    monkeypatch.setattr(settings, "EBAY_APP_ID", None)
    monkeypatch.setattr(settings, "EBAY_CERT_ID", None)
    user = make_user(db)

    resp = client.get(f"/api/internal/ebay/{user.id}/status", headers=HEADERS)

    assert resp.status_code == 200
    body = resp.json()
    assert body["connected"] is False
    assert body["has_credentials"] is False
    assert body["can_sync"] is False
    assert body["issues"] == [
        {
            "code": "CREDENTIALS_NOT_CONFIGURED",
            "message": "eBay app credentials are not configured",
            "recommended_action": "GO_TO_SETUP",
        }
    ]


def test_status_of_connected_user(client, db, ebay_http):
    user = make_user(db)
    connect_user(db, user, ebay_user_id="vintage_cameras")
    ebay_http(lambda request: token_response())

    resp = client.get(f"/api/internal/ebay/{user.id}/status", headers=HEADERS)

    body = resp.json()
    assert body["connected"] is True
    assert body["can_sync"] is True
    assert body["connection_status"] == "connected"
    assert body["ebay_user_id"] == "vintage_cameras"


def test_disconnect_clears_authorization_only(client, db):
    user = make_user(db)
    connect_user(db, user)

    resp = client.post(f"/api/internal/ebay/{user.id}/disconnect", headers=HEADERS)

    assert resp.status_code == 200
    assert resp.json() == {"user_id": user.id, "disconnected": True, "connection_status": "disconnected"}
    db.expire_all()
    account = ebay_account_service.get_account(db, user.id)
    assert account.connection_status == ConnectionStatus.disconnected
    assert account.has_refresh_token is False
    assert account.app_id == APP_ID


def test_disconnect_unknown_user_is_404(client):
    resp = client.post("/api/internal/ebay/does-not-exist/disconnect", headers=HEADERS)

    assert resp.status_code == 404


def test_manual_run_dry_run(client, db, ebay_http):
    user = make_user(db)
    connect_user(db, user)
    make_listing(db, user, source=ListingSource.trading_api)
    ebay_http(lambda request: token_response())

    resp = client.post("/api/internal/price-reduction/run", headers=HEADERS, json={"dry_run": True})

    assert resp.status_code == 200
    body = resp.json()
    assert body["dry_run"] is True
    assert body["listings_evaluated"] == 1
    assert body["listings_reduced"] == 1
    assert body["details"][0]["new_price"] == 95.0
