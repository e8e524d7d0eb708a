from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager


class KeyedLocks:
    """One asyncio.Lock per (guild, user); locks are not reentrant."""

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        # Holders plus waiters per key; a key is only prunable at zero.
        self._users: dict[tuple[str, str], int] = {}

    def lock_for(self, guild_id: str, user_id: str) -> asyncio.Lock:
        key = (guild_id, user_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def known_user_ids(self, guild_id: str) -> list[str]:
        return [user_id for (key_guild_id, user_id) in self._locks if key_guild_id == guild_id]

    @asynccontextmanager
    async def hold(self, guild_id: str, user_id: str) -> AsyncIterator[None]:
        key = (guild_id, user_id)
        lock = self.lock_for(guild_id, user_id)
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users.get(key, 1) - 1
            if remaining > 0:
                self._users[key] = remaining
            else:
                self._users.pop(key, None)

    @asynccontextmanager
    async def hold_many(self, guild_id: str, user_ids: Iterable[str]) -> AsyncIterator[None]:
        # Sorted acquisition order keeps concurrent multi-user holders deadlock free.
        async with AsyncExitStack() as stack:
            for user_id in sorted(set(user_ids)):
                await stack.enter_async_context(self.hold(guild_id, user_id))
            yield

    def prune(self) -> int:
        idle_keys = [
            key for key, lock in self._locks.items() if not lock.locked() and self._users.get(key, 0) == 0
        ]
        for key in idle_keys:
            del self._locks[key]
        return len(idle_keys)
