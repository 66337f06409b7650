import os

# Settings are read once at import time, so the environment has to be in
# place before anything from repricer is imported.
os.environ.setdefault("ENCRYPTION_KEY", "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("START_BACKGROUND_WORKERS", "false")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("EBAY_ENVIRONMENT", "production")

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Callable, List  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from repricer.config import settings  # noqa: E402
from repricer.models_sqlalchemy import Base  # noqa: E402
from repricer.models_sqlalchemy.models import Listing, ReductionStrategy, User  # noqa: E402
from repricer.services import http_retry  # noqa: E402
from repricer.services.ebay_account_service import ebay_account_service  # noqa: E402
from repricer.services.token_cache import access_token_cache  # noqa: E402


APP_ID = "MyShop-Repricer-PRD-a1b2c3d4e"
CERT_ID = "PRD-0123456789abcdef0123456789abcdef-4a5b"
REFRESH_TOKEN = "v^1.1#i^1#r^1#p^3#I^3#f^0#t^Ul4xMF8xOjY0QTk2QkY3RjM2MzBFNTJCMjAwODZBNzg4RkNDNzFCXzJfMSNFXjEyODQ="


@pytest.fixture(autouse=True)
def _fast_ebay_calls(monkeypatch):
    """No real sleeping between retries, recovery attempts or throttled calls."""
    monkeypatch.setattr(settings, "EBAY_RETRY_BASE_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "TOKEN_RECOVERY_RETRY_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "EBAY_API_MIN_INTERVAL_MS", 0)
    http_retry.browse_throttle.reset()
    http_retry.sell_throttle.reset()
    access_token_cache.clear()
    yield
    access_token_cache.clear()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def ebay_http(monkeypatch) -> Callable[[Callable[[httpx.Request], httpx.Response]], List[httpx.Request]]:
    """Route every httpx.AsyncClient through a MockTransport.

    Usage::

        calls = ebay_http(handler)

    ``handler`` receives the outgoing request and returns an httpx.Response.
    The returned list records every request that was sent.
    """
    real_client = httpx.AsyncClient

    def install(handler):
        calls: List[httpx.Request] = []

        def _recording(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return handler(request)

        transport = httpx.MockTransport(_recording)

        def _client(*args, **kwargs):
            kwargs.pop("transport", None)
            return real_client(*args, transport=transport, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", _client)
        return calls

    return install


def token_response(access_token: str = "v^1.1#access-token", expires_in: int = 7200) -> httpx.Response:
    return httpx.Response(200, json={"access_token": access_token, "expires_in": expires_in, "token_type": "User Access Token"})


def make_user(db, email: str = "seller@example.com", **kwargs) -> User:
    user = User(email=email, **kwargs)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def connect_user(db, user: User, connected_at=None, ebay_user_id: str = "my_store"):
    ebay_account_service.save_app_credentials(db, user.id, APP_ID, CERT_ID)
    account = ebay_account_service.save_authorization(db, user.id, REFRESH_TOKEN, ebay_user_id=ebay_user_id)
    if connected_at is not None:
        account.connected_at = connected_at
        db.commit()
    return account


def make_listing(db, user: User, **overrides) -> Listing:
    now = datetime.now(timezone.utc)
    values = dict(
        user_id=user.id,
        ebay_item_id="110553311111",
        sku="SKU-1",
        title="Vintage Canon AE-1 35mm Film Camera Body",
        current_price=Decimal("100.00"),
        original_price=Decimal("100.00"),
        minimum_price=Decimal("80.00"),
        reduction_enabled=True,
        strategy=ReductionStrategy.fixed_percentage,
        reduction_amount=Decimal("5"),
        interval_days=7,
        end_time=now + timedelta(days=2),
        watch_count=10,
    )
    values.update(overrides)
    listing = Listing(**values)
    db.add(listing)
    db.commit()
    db.refresh(listing)
    return listing
