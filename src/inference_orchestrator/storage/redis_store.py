"""Redis store backend."""

from typing import Any, List, Optional

import orjson
import redis.asyncio as redis
import structlog
from redis.asyncio import ConnectionPool

from inference_orchestrator.storage.base import KeyValueStore

logger = structlog.get_logger()


class RedisStore(KeyValueStore):
    """Durable store on Redis; values are serialized with orjson."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key_prefix: str = "orch:",
        max_connections: int = 50,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.max_connections = max_connections
        self.connection_pool: Optional[ConnectionPool] = None
        self.redis_client: Optional[redis.Redis] = client

    async def connect(self) -> redis.Redis:
        if self.redis_client is None:
            if not self.redis_url:
                raise ValueError("redis_url is required when no client is supplied")
            self.connection_pool = ConnectionPool.from_url(
                self.redis_url, max_connections=self.max_connections
            )
            self.redis_client = redis.Redis(connection_pool=self.connection_pool)
            await self.redis_client.ping()
            logger.info("Connected to Redis store", url=self.redis_url)
        return self.redis_client

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Any]:
        client = await self.connect()
        data = await client.get(self._key(key))
        if data is None:
            return None
        return orjson.loads(data)

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        client = await self.connect()
        payload = orjson.dumps(value)
        if ttl:
            await client.set(self._key(key), payload, px=int(ttl * 1000))
        else:
            await client.set(self._key(key), payload)

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        client = await self.connect()
        px = int(ttl * 1000) if ttl else None
        written = await client.set(self._key(key), orjson.dumps(value), nx=True, px=px)
        return bool(written)

    async def delete(self, key: str) -> bool:
        client = await self.connect()
        return bool(await client.delete(self._key(key)))

    async def scan(self, prefix: str = "") -> List[str]:
        client = await self.connect()
        keys: List[str] = []
        strip = len(self.key_prefix)
        async for raw in client.scan_iter(match=f"{self._key(prefix)}*"):
            name = raw.decode() if isinstance(raw, bytes) else raw
            keys.append(name[strip:])
        return keys

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
        if self.connection_pool is not None:
            await self.connection_pool.disconnect()
            self.connection_pool = None
