"""
Redis-based distributed lock.

Used by the background auditor so that, with several API processes running,
only one of them sweeps driver availability and overdue invoices per
interval.  Trip transitions never take this lock; they are linearized by the
per-row compare-and-swap in the trip store.

Acquire is ``SET key token NX EX ttl``; release is an atomic
check-and-delete in Lua so an expired holder cannot drop a successor's lock.
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
    pass


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, name: str, ttl_seconds: int = 60
    ):
        self.redis = client
        self.key = f"dispatch:lock:{name}"
        self.ttl = ttl_seconds
        self.token = uuid.uuid4().hex

    async def acquire(self) -> bool:
        """Try once; True if this instance now holds the lock."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def release(self) -> bool:
        """Release only if still owned; False if it expired or was taken over."""
        return bool(await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token))

    async def __aenter__(self) -> "DistributedLock":
        if not await self.acquire():
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.release()
