"""Round result broadcast over Redis pub/sub."""

import json
import logging
from typing import Any, AsyncIterator, Dict

import redis.asyncio as redis

from .settings import settings

logger = logging.getLogger(__name__)

ROUNDS_CHANNEL = "rounds"

redis_client = redis.from_url(settings.redis_url, decode_responses=True)


class RedisPubSub:
    def __init__(self, client: redis.Redis = redis_client):
        self.client = client

    async def publish(self, channel: str, data: Any) -> int:
        """Publish JSON to a channel; returns the number of receivers"""
        return await self.client.publish(channel, json.dumps(data, default=str))

    async def publish_round_result(self, result: Dict[str, Any]) -> None:
        """Broadcast a settled round so clients stop polling for it"""
        receivers = await self.publish(ROUNDS_CHANNEL, result)
        logger.debug(f"Round {result.get('round_id')} result sent to {receivers} subscribers")

    async def round_results(self) -> AsyncIterator[Dict[str, Any]]:
        """Yield settled round results as they are published"""
        pubsub = self.client.pubsub()
        await pubsub.subscribe(ROUNDS_CHANNEL)
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                yield json.loads(message["data"])
        finally:
            await pubsub.unsubscribe(ROUNDS_CHANNEL)
            await pubsub.close()

    async def close(self) -> None:
        await self.client.close()


pub_sub = RedisPubSub()
