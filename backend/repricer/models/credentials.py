"""Credential value types.

Stored credential blobs are decoded into one of three explicit variants at the
boundary (``AppCredentials``, ``RefreshTokenCredential``, ``AccessToken``)
instead of passing loosely shaped dicts around.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional


@dataclass(frozen=True)
class AppCredentials:
    app_id: str
    cert_id: str
    # "user" when read from the MarketplaceAccount row, "platform" for the
    # configured default application.
    source: Literal["user", "platform"] = "user"
    kind: Literal["app"] = "app"


@dataclass(frozen=True)
class RefreshTokenCredential:
    value: str
    kind: Literal["refresh_token"] = "refresh_token"


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: datetime
    kind: Literal["access_token"] = "access_token"

    @classmethod
    def from_expires_in(cls, value: str, expires_in: int, now: Optional[datetime] = None) -> "AccessToken":
        now = now or datetime.now(timezone.utc)
        return cls(value=value, expires_at=now + timedelta(seconds=int(expires_in)))

    def is_usable(self, margin_seconds: int, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at - now > timedelta(seconds=margin_seconds)


@dataclass(frozen=True)
class MarketplaceCredentials:
    """Decrypted credentials for one user, as returned by get_credentials()."""

    app: AppCredentials
    refresh_token: RefreshTokenCredential
    ebay_user_id: Optional[str]
    connection_status: str
    connected_at: Optional[datetime]

    @property
    def app_id(self) -> str:
        return self.app.app_id

    @property
    def cert_id(self) -> str:
        return self.app.cert_id
