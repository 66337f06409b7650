from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Enum, Boolean, Index, Numeric, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum
import uuid

from . import Base
from repricer.utils import crypto


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionStatus(str, enum.Enum):
    disconnected = "disconnected"
    connected = "connected"
    expired = "expired"


class ReductionStrategy(str, enum.Enum):
    fixed_percentage = "fixed_percentage"
    fixed_dollar = "fixed_dollar"
    time_based = "time_based"
    market_based = "market_based"


class ListingSource(str, enum.Enum):
    inventory_api = "inventory_api"
    trading_api = "trading_api"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Sellers on vacation are skipped by the scheduled reduction pass.
    vacation_mode = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    marketplace_account = relationship(
        "MarketplaceAccount", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    listings = relationship("Listing", back_populates="owner", cascade="all, delete-orphan")


class MarketplaceAccount(Base):
    """Per-user eBay connection.

    ``refresh_token`` is present iff ``connection_status == connected``. App
    credentials live independently of the authorization and survive a
    disconnect.
    """

    __tablename__ = "marketplace_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True)

    # Physical columns hold vault ciphertexts ("hex:hex"); use the properties
    # below to read/write plaintext.
    _app_id = Column("app_id", Text, nullable=True)
    _cert_id = Column("cert_id", Text, nullable=True)
    _refresh_token = Column("refresh_token", Text, nullable=True)

    connection_status = Column(
        Enum(ConnectionStatus, native_enum=False, length=20),
        nullable=False,
        default=ConnectionStatus.disconnected,
    )
    connected_at = Column(DateTime(timezone=True), nullable=True)
    ebay_user_id = Column(Text, nullable=True)

    # Last token failure recorded by the reduction pass (shown to the seller).
    last_error_code = Column(String(64), nullable=True)
    last_error_message = Column(Text, nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="marketplace_account")

    __table_args__ = (
        Index('idx_marketplace_accounts_status', 'connection_status'),
        CheckConstraint(
            "(connection_status = 'connected') = (refresh_token IS NOT NULL)",
            name='ck_marketplace_accounts_token_status',
        ),
    )

    @property
    def has_app_credentials(self) -> bool:
        return bool(self._app_id and self._cert_id)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self._refresh_token)

    # ------------------------------------------------------------------
    # Encrypted accessors. Reading raises repricer.utils.crypto.CryptoError
    # subclasses on malformed or undecryptable values.
    # ------------------------------------------------------------------
    @property
    def app_id(self) -> str | None:
        return crypto.decrypt(self._app_id)

    @app_id.setter
    def app_id(self, value: str | None) -> None:
        self._app_id = crypto.encrypt(value) if value else None

    @property
    def cert_id(self) -> str | None:
        return crypto.decrypt(self._cert_id)

    @cert_id.setter
    def cert_id(self, value: str | None) -> None:
        self._cert_id = crypto.encrypt(value) if value else None

    @property
    def refresh_token(self) -> str | None:
        return crypto.decrypt(self._refresh_token)

    @refresh_token.setter
    def refresh_token(self, value: str | None) -> None:
        self._refresh_token = crypto.encrypt(value) if value else None


class Listing(Base):
    __tablename__ = "listings"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)

    ebay_item_id = Column(String(64), nullable=True)
    sku = Column(String(100), nullable=True)
    offer_id = Column(String(64), nullable=True)
    source = Column(Enum(ListingSource, native_enum=False, length=20), nullable=True)
    listing_status = Column(String(20), nullable=False, default="active")

    title = Column(Text, nullable=True)
    category_id = Column(String(32), nullable=True)
    gtin = Column(String(32), nullable=True)

    current_price = Column(Numeric(10, 2), nullable=False)
    # Price at import; the engine never reduces below half of it.
    original_price = Column(Numeric(10, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    minimum_price = Column(Numeric(10, 2), nullable=True)
    quantity_available = Column(Integer, nullable=True)

    reduction_enabled = Column(Boolean, nullable=False, default=False)
    strategy = Column(
        Enum(ReductionStrategy, native_enum=False, length=32),
        nullable=False,
        default=ReductionStrategy.fixed_percentage,
    )
    # Percentage for percentage-style strategies, currency amount for fixed_dollar.
    reduction_amount = Column(Numeric(10, 2), nullable=False, default=5)
    interval_days = Column(Integer, nullable=False, default=7)
    time_trigger_days = Column(Integer, nullable=False, default=3)
    watch_count_threshold = Column(Integer, nullable=False, default=5)

    end_time = Column(DateTime(timezone=True), nullable=True)
    watch_count = Column(Integer, nullable=False, default=0)

    last_reduction_at = Column(DateTime(timezone=True), nullable=True)
    next_reduction_at = Column(DateTime(timezone=True), nullable=True)
    total_reductions = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    owner = relationship("User", back_populates="listings")

    __table_args__ = (
        Index('idx_listings_user_id', 'user_id'),
        Index('idx_listings_reduction_due', 'reduction_enabled', 'next_reduction_at'),
    )


class PriceReductionLog(Base):
    __tablename__ = "price_reduction_log"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    listing_id = Column(String(36), ForeignKey('listings.id', ondelete='SET NULL'), nullable=True)
    ebay_item_id = Column(String(64), nullable=True)
    sku = Column(String(100), nullable=True)
    title = Column(Text, nullable=True)

    original_price = Column(Numeric(10, 2), nullable=False)
    reduced_price = Column(Numeric(10, 2), nullable=False)
    reduction_amount = Column(Numeric(10, 2), nullable=False)
    reduction_percentage = Column(Numeric(5, 2), nullable=False)

    # scheduled | manual
    reduction_type = Column(String(20), nullable=False, default="scheduled")
    strategy = Column(String(32), nullable=True)
    reason = Column(Text, nullable=True)
    match_tier = Column(String(32), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index('idx_price_reduction_log_user_id', 'user_id'),
        Index('idx_price_reduction_log_created_at', 'created_at'),
    )
