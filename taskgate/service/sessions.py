from __future__ import annotations

import hmac
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple, Union

from taskgate.logging import get_logger
from taskgate.storage.models import utcnow
from taskgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class SessionRegistry:
    """One live refresh token per user.

    Backed by Redis when a cache is configured, otherwise by an in-process
    dict guarded by a lock. ``store`` always overwrites, which is what revokes
    the previous token on login, refresh, and password change.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self._clock = clock or utcnow
        self._state_lock = threading.Lock()
        self._tokens: Dict[str, Tuple[str, datetime]] = {}

    async def store(self, user_id: str, token: str, ttl_seconds: int) -> None:
        if self.cache:
            await self.cache.store_refresh_token(user_id, token, ttl_seconds)
            return
        expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        with self._state_lock:
            self._tokens[user_id] = (token, expires_at)

    async def get(self, user_id: str) -> Optional[str]:
        if self.cache:
            return await self.cache.get_refresh_token(user_id)
        now = self._clock()
        with self._state_lock:
            entry = self._tokens.get(user_id)
            if not entry:
                return None
            token, expires_at = entry
            if expires_at <= now:
                self._tokens.pop(user_id, None)
                return None
            return token

    async def delete(self, user_id: str) -> None:
        if self.cache:
            await self.cache.delete_refresh_token(user_id)
        else:
            with self._state_lock:
                self._tokens.pop(user_id, None)
        logger.debug("refresh_token_revoked", user_id=user_id)

    async def matches(self, user_id: str, token: str) -> bool:
        stored = await self.get(user_id)
        if not stored or not token:
            return False
        return hmac.compare_digest(stored.encode(), token.encode())
