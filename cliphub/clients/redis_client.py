"""
Redis client wrapper — cross-instance relay for the Realtime Notifier.

Keys / channels:
  • rt:seq:{resource}  — STRING counter, per-resource event sequence (INCR)
  • {relay channel}    — PUB/SUB channel carrying JSON change events

Every API instance publishes its events to the channel and delivers what it
receives to its own WebSocket subscribers, so a client connected to any
instance sees changes made through any other.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis

from cliphub.config import Settings

logger = logging.getLogger(__name__)

SEQ_KEY = "rt:seq:{resource}"
SEQ_TTL = 7 * 86400


async def init_redis(settings: Settings) -> aioredis.Redis:
    client = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        decode_responses=True,
    )
    await client.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)
    return client


class RedisRelay:
    def __init__(self, redis: aioredis.Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel

    async def next_seq(self, resource: str) -> int:
        key = SEQ_KEY.format(resource=resource)
        pipe = self._redis.pipeline()
        pipe.incr(key)
        pipe.expire(key, SEQ_TTL)
        seq, _ = await pipe.execute()
        return int(seq)

    async def publish(self, message: dict[str, Any]) -> None:
        await self._redis.publish(self._channel, json.dumps(message))

    async def listen(self, callback: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        """Forward every relayed message to `callback` until cancelled."""
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._channel)
        logger.info("Listening on realtime relay channel '%s'", self._channel)
        try:
            while True:
                msg: Optional[dict] = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
                if msg is None:
                    continue
                try:
                    payload = json.loads(msg["data"])
                except (TypeError, ValueError):
                    logger.warning("Dropping undecodable relay message: %r", msg.get("data"))
                    continue
                await callback(payload)
        finally:
            await pubsub.unsubscribe(self._channel)
            await pubsub.aclose()

    async def close(self) -> None:
        await self._redis.aclose()
