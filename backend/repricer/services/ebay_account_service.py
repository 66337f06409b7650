from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from repricer.config import Settings
from repricer.models.credentials import AppCredentials
from repricer.models_sqlalchemy.models import MarketplaceAccount, ConnectionStatus, User
from repricer.utils.logger import logger


def resolve_app_credentials(account: Optional[MarketplaceAccount], settings: Settings) -> Optional[AppCredentials]:
    """Pick the application credentials used for a user's token calls.

    Precedence: the user's own stored app credentials when both are present,
    then the platform default from settings, else ``None``. Decryption errors
    on the user's stored values propagate as ``crypto.CryptoError``.
    """
    if account is not None and account.has_app_credentials:
        return AppCredentials(app_id=account.app_id, cert_id=account.cert_id, source="user")
    if settings.has_platform_app_credentials:
        return AppCredentials(app_id=settings.EBAY_APP_ID, cert_id=settings.EBAY_CERT_ID, source="platform")
    return None


class EbayAccountService:
    """Reads and writes MarketplaceAccount rows. Each write is one commit."""

    def get_account(self, db: Session, user_id: str) -> Optional[MarketplaceAccount]:
        return db.query(MarketplaceAccount).filter(MarketplaceAccount.user_id == user_id).first()

    def _get_or_create(self, db: Session, user_id: str) -> MarketplaceAccount:
        account = self.get_account(db, user_id)
        if account is None:
            account = MarketplaceAccount(user_id=user_id, connection_status=ConnectionStatus.disconnected)
            db.add(account)
        return account

    def save_app_credentials(self, db: Session, user_id: str, app_id: str, cert_id: str) -> MarketplaceAccount:
        """Store (encrypted) the user's own eBay application keys."""
        if not app_id or not cert_id:
            raise ValueError("app_id and cert_id are required")

        account = self._get_or_create(db, user_id)
        account.app_id = app_id.strip()
        account.cert_id = cert_id.strip()
        account.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(account)
        logger.info(f"Saved eBay app credentials for user {user_id}")
        return account

    def save_authorization(
        self,
        db: Session,
        user_id: str,
        refresh_token: str,
        ebay_user_id: Optional[str] = None,
    ) -> MarketplaceAccount:
        """Persist the refresh token issued by the OAuth callback and mark the account connected."""
        if not refresh_token:
            raise ValueError("refresh_token is required")

        now = datetime.now(timezone.utc)
        account = self._get_or_create(db, user_id)
        account.refresh_token = refresh_token
        account.connection_status = ConnectionStatus.connected
        account.connected_at = now
        if ebay_user_id:
            account.ebay_user_id = ebay_user_id
        account.last_error_code = None
        account.last_error_message = None
        account.last_error_at = None
        account.updated_at = now
        db.commit()
        db.refresh(account)
        logger.info(f"eBay account connected for user {user_id} (ebay_user_id={ebay_user_id})")
        return account

    def clear_connection(self, db: Session, user_id: str) -> Optional[MarketplaceAccount]:
        """Drop the authorization only. App credentials are kept for reconnecting."""
        account = self.get_account(db, user_id)
        if account is None:
            return None

        account._refresh_token = None
        account.connection_status = ConnectionStatus.disconnected
        account.connected_at = None
        account.ebay_user_id = None
        account.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(account)
        logger.info(f"eBay account disconnected for user {user_id}")
        return account

    def mark_expired(self, db: Session, user_id: str) -> Optional[MarketplaceAccount]:
        """Flag the authorization as expired.

        The refresh token is dropped as well: a token is only ever stored
        while the account is connected.
        """
        account = self.get_account(db, user_id)
        if account is None:
            return None

        account._refresh_token = None
        account.connection_status = ConnectionStatus.expired
        account.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(account)
        logger.warning(f"eBay authorization expired for user {user_id} (connected_at={account.connected_at})")
        return account

    def record_token_error(
        self,
        db: Session,
        user_id: str,
        code: str,
        message: str,
    ) -> Optional[MarketplaceAccount]:
        account = self.get_account(db, user_id)
        if account is None:
            return None

        now = datetime.now(timezone.utc)
        account.last_error_code = code
        account.last_error_message = message[:2000] if message else None
        account.last_error_at = now
        account.updated_at = now
        db.commit()
        return account

    def delete_account(self, db: Session, user_id: str) -> bool:
        account = self.get_account(db, user_id)
        if account is None:
            return False
        db.delete(account)
        db.commit()
        logger.info(f"Deleted eBay account record for user {user_id}")
        return True

    def is_vacation_mode(self, db: Session, user_id: str) -> bool:
        user = db.query(User).filter(User.id == user_id).first()
        return bool(user and user.vacation_mode)


ebay_account_service = EbayAccountService()

