from pydantic_settings import BaseSettings
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # DATABASE_URL is injected by the platform in production (Postgres).
    # The SQLite default only exists for local runs and the test-suite.
    DATABASE_URL: str = "sqlite:///./repricer.db"

    # Secret used by the credential vault (utils/crypto.py). A 64-char hex
    # string is used directly as the AES-256 key; anything else is hashed.
    ENCRYPTION_KEY: Optional[str] = None

    EBAY_ENVIRONMENT: str = "production"

    # Platform-default application credentials. Per-user credentials stored
    # on MarketplaceAccount take precedence, see resolve_app_credentials().
    EBAY_APP_ID: Optional[str] = None
    EBAY_CERT_ID: Optional[str] = None

    # Shared secret for /api/internal/* endpoints (scheduler, admin tools).
    INTERNAL_API_KEY: Optional[str] = None

    # Access tokens are only served from cache while they have more than
    # this many seconds left.
    ACCESS_TOKEN_SAFETY_MARGIN_SECONDS: int = 60

    # Heuristic refresh-token lifetime. eBay does not return an authoritative
    # expiry we can rely on, so an auth failure on an account older than this
    # is treated as "authorization expired".
    REFRESH_TOKEN_VALIDITY_MONTHS: int = 18
    TOKEN_RECOVERY_RETRY_DELAY_SECONDS: float = 1.0

    # Outbound HTTP behaviour for eBay calls.
    EBAY_HTTP_MAX_ATTEMPTS: int = 3
    EBAY_RETRY_BASE_DELAY_SECONDS: float = 0.5
    EBAY_RETRY_MAX_DELAY_SECONDS: float = 10.0
    EBAY_REQUEST_TIMEOUT_SECONDS: float = 30.0
    EBAY_API_MIN_INTERVAL_MS: int = 200

    # Price reduction pass.
    LISTING_EVALUATION_TIMEOUT_SECONDS: float = 60.0
    PRICE_REDUCTION_INTERVAL_SECONDS: int = 3600
    PRICE_REDUCTION_USER_CONCURRENCY: int = 4
    PRICE_REDUCTION_LOG_RETENTION_DAYS: int = 10

    # Competitive search uses an application token (client_credentials)
    # rather than the seller's user token when True.
    BROWSE_USE_APP_TOKEN: bool = True

    START_BACKGROUND_WORKERS: bool = True
    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def ebay_api_base_url(self) -> str:
        if self.EBAY_ENVIRONMENT == "sandbox":
            return "https://api.sandbox.ebay.com"
        return "https://api.ebay.com"

    @property
    def ebay_token_url(self) -> str:
        return f"{self.ebay_api_base_url}/identity/v1/oauth2/token"

    @property
    def ebay_trading_api_url(self) -> str:
        return f"{self.ebay_api_base_url}/ws/api.dll"

    @property
    def has_platform_app_credentials(self) -> bool:
        return bool(self.EBAY_APP_ID and self.EBAY_CERT_ID)


settings = Settings()
