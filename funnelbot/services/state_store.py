import json
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

import redis.asyncio as aioredis
from redis.asyncio.client import PubSub

from funnelbot.config.settings import settings


class StateStore:
    """
    Shared state on Redis: plain keys, hash counters, capped lists, sorted
    sets and a publish/subscribe channel.

    The client is created with `decode_responses=True`, so every read returns
    `str`. A client is bound to the event loop it was created on; Celery tasks
    build one per `asyncio.run`.
    """

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: Optional[str] = None) -> "StateStore":
        return cls(aioredis.from_url(url or settings.redis_url, decode_responses=True))

    async def close(self) -> None:
        await self.client.aclose()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    # Plain keys

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl)

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        return bool(await self.client.set(key, value, ex=ttl, nx=True))

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.client.get(key)
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.client.set(key, json.dumps(value), ex=ttl)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete `key` only while it still holds `value`."""
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current != value:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return True
                except aioredis.WatchError:
                    continue

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def expire(self, key: str, ttl: int) -> None:
        await self.client.expire(key, ttl)

    # Hashes

    async def hset(self, key: str, mapping: Mapping[str, Any]) -> None:
        await self.client.hset(key, mapping={k: _to_field(v) for k, v in mapping.items()})

    async def hsetnx(self, key: str, field: str, value: Any) -> bool:
        return bool(await self.client.hsetnx(key, field, _to_field(value)))

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self.client.hget(key, field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self.client.hgetall(key)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return await self.client.hincrby(key, field, amount)

    # Lists

    async def push_capped(
        self, key: str, value: Any, limit: int, ttl: Optional[int] = None
    ) -> None:
        """RPUSH then keep only the newest `limit` entries."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.rpush(key, value)
            pipe.ltrim(key, -limit, -1)
            if ttl:
                pipe.expire(key, ttl)
            await pipe.execute()

    async def lrange(self, key: str, start: int = 0, end: int = -1) -> List[str]:
        return await self.client.lrange(key, start, end)

    # Sorted sets

    async def zadd(self, key: str, member: str, score: float) -> None:
        await self.client.zadd(key, {member: score})

    async def zrem(self, key: str, member: str) -> bool:
        return bool(await self.client.zrem(key, member))

    async def zrange_by_score(
        self, key: str, min_score: float = float("-inf"), max_score: float = float("inf")
    ) -> List[str]:
        return await self.client.zrangebyscore(key, min_score, max_score)

    async def zscore(self, key: str, member: str) -> Optional[float]:
        return await self.client.zscore(key, member)

    # Pub/sub

    async def publish(self, channel: str, message: Any) -> int:
        if not isinstance(message, str):
            message = json.dumps(message)
        return await self.client.publish(channel, message)

    async def subscribe(self, channel: str) -> PubSub:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(channel)
        return pubsub

    async def listen(
        self, pubsub: PubSub, timeout: float = 1.0
    ) -> AsyncIterator[Optional[str]]:
        """Yield messages, or None every `timeout` seconds with nothing received."""
        while True:
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=timeout
            )
            yield message["data"] if message else None


def _to_field(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    return value
