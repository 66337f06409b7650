"""In-process access token cache with per-key single-flight refresh.

Tokens live only in memory; nothing here touches the database.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from repricer.models.credentials import AccessToken


class AccessTokenCache:
    def __init__(self, margin_seconds: Optional[int] = None):
        self._margin_seconds = margin_seconds
        self._entries: Dict[str, AccessToken] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @property
    def margin_seconds(self) -> int:
        if self._margin_seconds is not None:
            return self._margin_seconds
        from repricer.config import settings

        return settings.ACCESS_TOKEN_SAFETY_MARGIN_SECONDS

    def get(self, key: str, now: Optional[datetime] = None) -> Optional[AccessToken]:
        """Return the cached token for ``key`` if it is still usable."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_usable(self.margin_seconds, now or datetime.now(timezone.utc)):
            return None
        return entry

    def put(self, key: str, token: AccessToken) -> None:
        self._entries[key] = token

    def evict(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self._locks.clear()
        self._lock_users.clear()

    def _acquire_lock_ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        return lock

    def _release_lock_ref(self, key: str) -> None:
        # The last caller out drops the lock so idle keys do not accumulate.
        remaining = self._lock_users.get(key, 0) - 1
        if remaining > 0:
            self._lock_users[key] = remaining
        else:
            self._lock_users.pop(key, None)
            self._locks.pop(key, None)

    async def get_or_refresh(
        self,
        key: str,
        refresh: Callable[[], Awaitable[AccessToken]],
    ) -> AccessToken:
        """Return a usable token, running ``refresh`` at most once per key at a time.

        Concurrent callers for the same key wait on the in-flight refresh and
        then read its result from the cache.
        """
        cached = self.get(key)
        if cached is not None:
            return cached

        lock = self._acquire_lock_ref(key)
        try:
            async with lock:
                cached = self.get(key)
                if cached is not None:
                    return cached
                token = await refresh()
                self.put(key, token)
                return token
        finally:
            self._release_lock_ref(key)

    def __len__(self) -> int:
        return len(self._entries)


access_token_cache = AccessTokenCache()
