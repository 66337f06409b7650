"""
Utilities for working with eBay tokens in logs.
"""
import hashlib
from typing import Optional


def mask_token(token: Optional[str], show_start: int = 4, show_end: int = 4) -> str:
    """
    Mask an eBay token or key for display.
    eBay tokens format: v^1.1#i^1#r^0#I^3#f^0#p^1#t^H4sI...
    """
    if not token:
        return "None"

    if len(token) <= show_start + show_end:
        return "***"

    return token[:show_start] + "..." + token[-show_end:]


def compute_token_hash(token: Optional[str]) -> str:
    """SHA256 fingerprint of a token so logs can correlate tokens without exposing them."""
    if not token:
        return "empty"
    return hashlib.sha256(token.encode()).hexdigest()[:16]
