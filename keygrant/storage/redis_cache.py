from __future__ import annotations

import hashlib

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper holding the seen-proof set shared by all workers."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _proof_key(key: str) -> str:
        # hashed so the raw signature material never lands in Redis keys
        return "proof:" + hashlib.sha256(key.encode()).hexdigest()

    async def claim_proof(self, key: str, ttl_seconds: int) -> bool:
        """Atomically mark ``key`` as used; False if it was already present."""
        created = await self.client.set(
            self._proof_key(key), "1", nx=True, ex=max(1, ttl_seconds)
        )
        return bool(created)

    async def close(self) -> None:
        """Close Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
