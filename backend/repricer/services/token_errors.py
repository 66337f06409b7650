"""Structured token failures.

Every failure of the token path is a :class:`TokenError` carrying a closed
``TokenErrorCode`` and the ``RecommendedAction`` the UI should offer.
"""

from __future__ import annotations

import enum
from typing import Any, Dict

from repricer.utils import crypto


class RecommendedAction(str, enum.Enum):
    GO_TO_SETUP = "GO_TO_SETUP"
    CONNECT_ACCOUNT = "CONNECT_ACCOUNT"
    DISCONNECT_AND_RECONNECT = "DISCONNECT_AND_RECONNECT"
    TRY_AGAIN_LATER = "TRY_AGAIN_LATER"
    CONTACT_SUPPORT = "CONTACT_SUPPORT"


class TokenErrorCode(str, enum.Enum):
    CREDENTIALS_NOT_CONFIGURED = "CREDENTIALS_NOT_CONFIGURED"
    NOT_CONNECTED = "NOT_CONNECTED"
    NEEDS_MIGRATION = "NEEDS_MIGRATION"
    INVALID_ENCRYPTION_FORMAT = "INVALID_ENCRYPTION_FORMAT"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"
    INVALID_APP_ID = "INVALID_APP_ID"
    INVALID_CERT_ID = "INVALID_CERT_ID"
    INVALID_REFRESH_TOKEN = "INVALID_REFRESH_TOKEN"
    EBAY_AUTH_FAILED = "EBAY_AUTH_FAILED"
    EBAY_INVALID_REQUEST = "EBAY_INVALID_REQUEST"
    EBAY_API_ERROR = "EBAY_API_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"


# Errors that only a user action can fix; recovery never retries these.
USER_ACTION_CODES = frozenset(
    {
        TokenErrorCode.CREDENTIALS_NOT_CONFIGURED,
        TokenErrorCode.NOT_CONNECTED,
        TokenErrorCode.NEEDS_MIGRATION,
        TokenErrorCode.INVALID_ENCRYPTION_FORMAT,
        TokenErrorCode.DECRYPTION_FAILED,
        TokenErrorCode.INVALID_APP_ID,
        TokenErrorCode.INVALID_CERT_ID,
        TokenErrorCode.INVALID_REFRESH_TOKEN,
        TokenErrorCode.EBAY_INVALID_REQUEST,
    }
)

TRANSIENT_CODES = frozenset({TokenErrorCode.EBAY_API_ERROR, TokenErrorCode.NETWORK_ERROR})


class TokenError(Exception):
    def __init__(self, code: TokenErrorCode, message: str, action: RecommendedAction):
        super().__init__(message)
        self.code = code
        self.message = message
        self.action = action

    @property
    def is_transient(self) -> bool:
        return self.code in TRANSIENT_CODES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "recommended_action": self.action.value,
        }

    def __repr__(self) -> str:
        return f"TokenError(code={self.code.value!r}, action={self.action.value!r}, message={self.message!r})"


def from_crypto_error(exc: crypto.CryptoError, field: str) -> TokenError:
    """Map a vault failure on ``field`` to the token error taxonomy."""
    if isinstance(exc, crypto.NeedsMigrationError):
        return TokenError(
            TokenErrorCode.NEEDS_MIGRATION,
            f"Stored {field} was saved in a legacy format and must be re-entered",
            RecommendedAction.DISCONNECT_AND_RECONNECT,
        )
    if isinstance(exc, crypto.InvalidEncryptionFormatError):
        return TokenError(
            TokenErrorCode.INVALID_ENCRYPTION_FORMAT,
            f"Stored {field} is not a valid encrypted value",
            RecommendedAction.DISCONNECT_AND_RECONNECT,
        )
    if isinstance(exc, crypto.EncryptionKeyMissingError):
        return TokenError(
            TokenErrorCode.DECRYPTION_FAILED,
            "Server encryption key is not configured",
            RecommendedAction.CONTACT_SUPPORT,
        )
    return TokenError(
        TokenErrorCode.DECRYPTION_FAILED,
        f"Stored {field} could not be decrypted",
        RecommendedAction.DISCONNECT_AND_RECONNECT,
    )
