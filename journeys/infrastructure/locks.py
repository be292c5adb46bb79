"""
Redis-based distributed lock.

Guards the driver-response timeout sweep so that, with several API
processes running, only one of them expires decisions and re-matches
waiting requests in a given cycle.

Acquire is ``SET key token NX EX ttl``; release is a Lua compare-and-delete
so a process never frees a lock that expired and was taken by another one.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockNotAcquired(RuntimeError):
    """Raised by ``async with lock`` when another holder owns the key."""


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, name: str, ttl_seconds: int = 60
    ):
        self.redis = client
        self.key = f"lock:{name}"
        self.ttl = ttl_seconds
        self.token = uuid.uuid4().hex
        self.held = False

    async def acquire(self) -> bool:
        """Try once to take the lock.  Returns True on success."""
        self.held = bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )
        return self.held

    async def release(self) -> bool:
        """Free the lock if this instance still owns it."""
        released = await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token)
        self.held = False
        return bool(released)

    async def __aenter__(self) -> "DistributedLock":
        if not await self.acquire():
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.release()
