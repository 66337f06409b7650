"""eBay token exchange service.

One instance is scoped to one user. It turns the user's stored (encrypted)
credentials into a short-lived access token and classifies every failure into
a :class:`TokenError`.

Usage:
    from repricer.services.ebay_token_service import EbayTokenService

    service = EbayTokenService(db, user_id)
    try:
        token = await service.get_access_token()
    except TokenError as exc:
        # exc.code / exc.action
        ...
"""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from repricer.config import settings
from repricer.models.credentials import (
    AccessToken,
    AppCredentials,
    MarketplaceCredentials,
    RefreshTokenCredential,
)
from repricer.models_sqlalchemy.models import ConnectionStatus
from repricer.services import http_retry
from repricer.services.ebay_account_service import ebay_account_service, resolve_app_credentials
from repricer.services.token_cache import AccessTokenCache, access_token_cache
from repricer.services.token_errors import (
    RecommendedAction,
    TokenError,
    TokenErrorCode,
    USER_ACTION_CODES,
    from_crypto_error,
)
from repricer.utils import crypto
from repricer.utils.logger import ebay_logger, logger
from repricer.utils.time_utils import to_utc
from repricer.utils.token_utils import compute_token_hash


# Minimum plausible lengths of the decrypted values. Anything shorter was
# stored truncated or mangled and will never work against eBay.
MIN_APP_ID_LENGTH = 10
MIN_CERT_ID_LENGTH = 32
MIN_REFRESH_TOKEN_LENGTH = 50

DEFAULT_ACCESS_TOKEN_TTL_SECONDS = 7200
APP_TOKEN_SCOPE = "https://api.ebay.com/oauth/api_scope"


def _basic_auth_header(app_id: str, cert_id: str) -> str:
    raw = f"{app_id}:{cert_id}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


def _error_payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"error": None, "error_description": response.text[:500]}
    if not isinstance(body, dict):
        return {"error": None, "error_description": str(body)[:500]}
    return body


def refresh_token_horizon_passed(connected_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when ``connected_at`` is older than the configured refresh-token lifetime."""
    if connected_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    connected_at = to_utc(connected_at)
    # Months approximated as 30 days; the horizon is a heuristic, not eBay's value.
    horizon = timedelta(days=30 * settings.REFRESH_TOKEN_VALIDITY_MONTHS)
    return now - connected_at > horizon


class EbayTokenService:
    def __init__(self, db: Session, user_id: str, cache: Optional[AccessTokenCache] = None):
        self.db = db
        self.user_id = user_id
        self.cache = cache if cache is not None else access_token_cache

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------
    def get_credentials(self) -> MarketplaceCredentials:
        account = ebay_account_service.get_account(self.db, self.user_id)

        try:
            app = resolve_app_credentials(account, settings)
        except crypto.CryptoError as exc:
            raise from_crypto_error(exc, "app credentials") from exc

        if app is None:
            raise TokenError(
                TokenErrorCode.CREDENTIALS_NOT_CONFIGURED,
                "eBay app credentials are not configured",
                RecommendedAction.GO_TO_SETUP,
            )

        if account is None or not account.has_refresh_token:
            raise TokenError(
                TokenErrorCode.NOT_CONNECTED,
                "eBay account is not connected",
                RecommendedAction.CONNECT_ACCOUNT,
            )

        try:
            refresh_token = account.refresh_token
        except crypto.CryptoError as exc:
            raise from_crypto_error(exc, "refresh token") from exc

        status = account.connection_status
        return MarketplaceCredentials(
            app=app,
            refresh_token=RefreshTokenCredential(value=refresh_token),
            ebay_user_id=account.ebay_user_id,
            connection_status=status.value if isinstance(status, ConnectionStatus) else str(status),
            connected_at=to_utc(account.connected_at),
        )

    def validate_credentials(self, creds: MarketplaceCredentials) -> None:
        action = RecommendedAction.DISCONNECT_AND_RECONNECT
        if not creds.app_id or len(creds.app_id) < MIN_APP_ID_LENGTH:
            raise TokenError(TokenErrorCode.INVALID_APP_ID, "Stored eBay App ID is malformed", action)
        if not creds.cert_id or len(creds.cert_id) < MIN_CERT_ID_LENGTH:
            raise TokenError(TokenErrorCode.INVALID_CERT_ID, "Stored eBay Cert ID is malformed", action)
        if not creds.refresh_token.value or len(creds.refresh_token.value) < MIN_REFRESH_TOKEN_LENGTH:
            raise TokenError(TokenErrorCode.INVALID_REFRESH_TOKEN, "Stored eBay refresh token is malformed", action)

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------
    async def _post_token_request(self, app: AppCredentials, form: Dict[str, str], grant: str) -> AccessToken:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Authorization": _basic_auth_header(app.app_id, app.cert_id),
        }

        try:
            response = await http_retry.send_with_retry(
                "POST",
                settings.ebay_token_url,
                headers=headers,
                data=form,
                label="token_service",
            )
        except httpx.TransportError as exc:
            logger.error("[token_service] %s exchange failed for user=%s: %s", grant, self.user_id, type(exc).__name__)
            ebay_logger.log_ebay_event(
                "token_exchange_failed",
                f"Network error during {grant} exchange",
                user_id=self.user_id,
                status="error",
                error=type(exc).__name__,
            )
            raise TokenError(
                TokenErrorCode.NETWORK_ERROR,
                f"Could not reach eBay: {type(exc).__name__}",
                RecommendedAction.TRY_AGAIN_LATER,
            ) from exc

        if response.status_code != 200:
            payload = _error_payload(response)
            error = payload.get("error")
            description = payload.get("error_description") or error or f"HTTP {response.status_code}"
            ebay_logger.log_ebay_event(
                "token_exchange_failed",
                f"eBay rejected {grant} exchange with HTTP {response.status_code}",
                user_id=self.user_id,
                response_data={"status_code": response.status_code, "error": error},
                status="error",
                error=description,
            )
            logger.warning(
                "[token_service] %s exchange rejected user=%s status=%s error=%s",
                grant, self.user_id, response.status_code, error,
            )
            if response.status_code == 401:
                raise TokenError(
                    TokenErrorCode.EBAY_AUTH_FAILED,
                    f"eBay rejected the stored credentials: {description}",
                    RecommendedAction.DISCONNECT_AND_RECONNECT,
                )
            if response.status_code == 400:
                raise TokenError(
                    TokenErrorCode.EBAY_INVALID_REQUEST,
                    f"eBay rejected the token request: {description}",
                    RecommendedAction.DISCONNECT_AND_RECONNECT,
                )
            raise TokenError(
                TokenErrorCode.EBAY_API_ERROR,
                f"eBay token endpoint returned HTTP {response.status_code}: {description}",
                RecommendedAction.TRY_AGAIN_LATER,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TokenError(
                TokenErrorCode.EBAY_API_ERROR,
                "eBay token endpoint returned a non-JSON body",
                RecommendedAction.TRY_AGAIN_LATER,
            ) from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise TokenError(
                TokenErrorCode.EBAY_API_ERROR,
                "eBay token response did not include an access_token",
                RecommendedAction.TRY_AGAIN_LATER,
            )

        expires_in = body.get("expires_in") or DEFAULT_ACCESS_TOKEN_TTL_SECONDS
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError) as exc:
            raise TokenError(
                TokenErrorCode.EBAY_API_ERROR,
                f"eBay token response had an unreadable expires_in: {expires_in!r}",
                RecommendedAction.TRY_AGAIN_LATER,
            ) from exc
        token = AccessToken.from_expires_in(access_token, expires_in)
        logger.info(
            "[token_service] %s exchange ok user=%s token_hash=%s expires_at=%s",
            grant, self.user_id, compute_token_hash(access_token), token.expires_at.isoformat(),
        )
        ebay_logger.log_ebay_event(
            "token_exchanged",
            f"{grant} exchange succeeded",
            user_id=self.user_id,
            response_data={"access_token": access_token, "expires_in": expires_in},
            status="success",
        )
        return token

    async def exchange_refresh_token(self, creds: MarketplaceCredentials) -> AccessToken:
        """Swap the refresh token for an access token and cache it under the user id."""
        token = await self._post_token_request(
            creds.app,
            {"grant_type": "refresh_token", "refresh_token": creds.refresh_token.value},
            "refresh_token",
        )
        self.cache.put(self.user_id, token)
        return token

    async def _refresh(self) -> AccessToken:
        creds = self.get_credentials()
        self.validate_credentials(creds)
        return await self.exchange_refresh_token(creds)

    async def get_access_token(self) -> str:
        token = await self.cache.get_or_refresh(self.user_id, self._refresh)
        return token.value

    async def get_search_token(self) -> str:
        """Token for Browse searches.

        With BROWSE_USE_APP_TOKEN an application token (client_credentials) is
        used and cached per app id; otherwise the user's own access token.
        """
        if not settings.BROWSE_USE_APP_TOKEN:
            return await self.get_access_token()

        app = self._search_app_credentials()

        async def _refresh_app_token() -> AccessToken:
            return await self._post_token_request(
                app,
                {"grant_type": "client_credentials", "scope": APP_TOKEN_SCOPE},
                "client_credentials",
            )

        token = await self.cache.get_or_refresh(f"app:{app.app_id}", _refresh_app_token)
        return token.value

    def _search_app_credentials(self) -> AppCredentials:
        account = ebay_account_service.get_account(self.db, self.user_id)
        try:
            app = resolve_app_credentials(account, settings)
        except crypto.CryptoError as exc:
            raise from_crypto_error(exc, "app credentials") from exc
        if app is None:
            raise TokenError(
                TokenErrorCode.CREDENTIALS_NOT_CONFIGURED,
                "eBay app credentials are not configured",
                RecommendedAction.GO_TO_SETUP,
            )
        return app

    def evict_search_token(self) -> None:
        """Drop the cached Browse token after eBay rejected it."""
        if not settings.BROWSE_USE_APP_TOKEN:
            self.cache.evict(self.user_id)
            return
        self.cache.evict(f"app:{self._search_app_credentials().app_id}")

    # ------------------------------------------------------------------
    # Status / lifecycle
    # ------------------------------------------------------------------
    def _has_app_credentials(self) -> bool:
        account = ebay_account_service.get_account(self.db, self.user_id)
        if account is not None and account.has_app_credentials:
            return True
        return settings.has_platform_app_credentials

    async def get_connection_status(self) -> Dict[str, Any]:
        """Run the full token path and summarise the outcome. Never raises."""
        account = ebay_account_service.get_account(self.db, self.user_id)
        status: Dict[str, Any] = {
            "user_id": self.user_id,
            "connected": False,
            "has_credentials": False,
            "can_sync": False,
            "connection_status": None,
            "ebay_user_id": None,
            "connected_at": None,
            "issues": [],
        }
        issues: List[Dict[str, Any]] = status["issues"]

        try:
            status["has_credentials"] = self._has_app_credentials()
            if account is not None:
                status["connection_status"] = (
                    account.connection_status.value
                    if isinstance(account.connection_status, ConnectionStatus)
                    else account.connection_status
                )
                status["ebay_user_id"] = account.ebay_user_id
                status["connected_at"] = to_utc(account.connected_at)

            await self.get_access_token()
            status["connected"] = True
            status["can_sync"] = True
        except TokenError as exc:
            issues.append(exc.to_dict())
        except Exception as exc:  # status must always be reportable
            logger.exception("[token_service] unexpected error computing status for user=%s", self.user_id)
            issues.append(
                TokenError(
                    TokenErrorCode.EBAY_API_ERROR,
                    f"Unexpected error: {type(exc).__name__}",
                    RecommendedAction.CONTACT_SUPPORT,
                ).to_dict()
            )
        return status

    def disconnect(self) -> bool:
        account = ebay_account_service.clear_connection(self.db, self.user_id)
        self.cache.evict(self.user_id)
        ebay_logger.log_ebay_event("disconnected", "eBay authorization cleared", user_id=self.user_id)
        return account is not None

    async def attempt_recovery(self, error: TokenError) -> bool:
        """Apply the single bounded recovery policy to ``error``.

        Returns True when a usable access token was obtained.
        """
        if error.code in USER_ACTION_CODES:
            return False

        if error.is_transient:
            await asyncio.sleep(settings.TOKEN_RECOVERY_RETRY_DELAY_SECONDS)
            try:
                await self.get_access_token()
            except TokenError as retry_exc:
                logger.warning(
                    "[token_service] recovery retry failed for user=%s: %s",
                    self.user_id, retry_exc.code.value,
                )
                return False
            logger.info("[token_service] recovered after retry for user=%s", self.user_id)
            return True

        if error.code == TokenErrorCode.EBAY_AUTH_FAILED:
            account = ebay_account_service.get_account(self.db, self.user_id)
            if account is not None and refresh_token_horizon_passed(account.connected_at):
                ebay_account_service.mark_expired(self.db, self.user_id)
                self.cache.evict(self.user_id)
                ebay_logger.log_ebay_event(
                    "authorization_expired",
                    "Refresh token older than its validity horizon was rejected",
                    user_id=self.user_id,
                    status="warning",
                )
        return False
