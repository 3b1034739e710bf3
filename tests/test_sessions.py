"""Tests for the single-refresh-token session registry."""

import threading
from unittest.mock import AsyncMock

from taskgate.service.sessions import SessionRegistry


class TestInProcessRegistry:
    """Registry without Redis."""

    async def test_store_then_get(self, clock):
        registry = SessionRegistry(clock=clock)
        await registry.store("u1", "token-a", 60)

        assert await registry.get("u1") == "token-a"
        assert await registry.matches("u1", "token-a") is True

    async def test_store_overwrites_previous_token(self, clock):
        """Only the latest refresh token is live."""
        registry = SessionRegistry(clock=clock)
        await registry.store("u1", "token-a", 60)
        await registry.store("u1", "token-b", 60)

        assert await registry.matches("u1", "token-a") is False
        assert await registry.matches("u1", "token-b") is True

    async def test_entry_expires(self, clock):
        registry = SessionRegistry(clock=clock)
        await registry.store("u1", "token-a", 60)
        clock.advance(seconds=60)

        assert await registry.get("u1") is None
        assert await registry.matches("u1", "token-a") is False

    async def test_delete_is_idempotent(self, clock):
        registry = SessionRegistry(clock=clock)
        await registry.store("u1", "token-a", 60)
        await registry.delete("u1")
        await registry.delete("u1")

        assert await registry.get("u1") is None

    async def test_users_are_isolated(self, clock):
        registry = SessionRegistry(clock=clock)
        await registry.store("u1", "token-a", 60)
        await registry.store("u2", "token-b", 60)
        await registry.delete("u1")

        assert await registry.get("u2") == "token-b"

    async def test_empty_token_never_matches(self, clock):
        registry = SessionRegistry(clock=clock)
        await registry.store("u1", "token-a", 60)

        assert await registry.matches("u1", "") is False
        assert await registry.matches("missing", "token-a") is False

    def test_concurrent_stores_leave_one_winner(self, clock):
        """Last writer wins; the registry never holds a torn value."""
        import asyncio

        registry = SessionRegistry(clock=clock)

        def _writer(idx: int) -> None:
            asyncio.run(registry.store("u1", f"token-{idx}", 60))

        threads = [threading.Thread(target=_writer, args=(i,)) for i in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stored = asyncio.run(registry.get("u1"))
        assert stored in {f"token-{i}" for i in range(10)}


class TestRedisBackedRegistry:
    """Registry delegating to the cache."""

    async def test_delegates_to_cache(self, clock):
        cache = AsyncMock()
        cache.get_refresh_token.return_value = "token-a"
        registry = SessionRegistry(cache, clock=clock)

        await registry.store("u1", "token-a", 120)
        assert await registry.matches("u1", "token-a") is True
        await registry.delete("u1")

        cache.store_refresh_token.assert_awaited_once_with("u1", "token-a", 120)
        cache.delete_refresh_token.assert_awaited_once_with("u1")
