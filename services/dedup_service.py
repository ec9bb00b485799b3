"""Redis-backed duplicate suppression for webhook deliveries.

Vonage retries webhooks it considers undelivered, so the same recording can be
announced more than once. When enabled, each delivery claims the key
`webhook:{kind}:{recording_id}` with SET NX EX; only the first claimant runs
the pipeline. A claim is released again when its run fails so that a later
redelivery can retry.

Redis errors fail open: the delivery is treated as new and processed.
"""
import os
import logging
from typing import Optional

import redis.asyncio as redis

from models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400


class WebhookDeduplicator:
    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None):
        if redis_client is None:
            redis_url = os.getenv("REDIS_URL", "redis://localhost:6379")
            redis_client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5
            )
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds or int(os.getenv("WEBHOOK_DEDUP_TTL_SECONDS", str(DEFAULT_TTL_SECONDS)))

    @staticmethod
    def key_for(event: WebhookEvent) -> str:
        return f"webhook:{event.artifact_kind.value}:{event.recording_id}"

    async def claim(self, event: WebhookEvent) -> bool:
        """Return True if this delivery is the first for its recording and kind."""
        key = self.key_for(event)
        try:
            claimed = await self.redis_client.set(
                key,
                event.received_at.isoformat(),
                nx=True,
                ex=self.ttl_seconds
            )
        except redis.RedisError as e:
            logger.warning(f"Dedup check failed, processing anyway: key={key}, error={e}")
            return True

        if not claimed:
            logger.info(f"Duplicate webhook suppressed: key={key}")
        return bool(claimed)

    async def release(self, event: WebhookEvent) -> None:
        key = self.key_for(event)
        try:
            await self.redis_client.delete(key)
            logger.info(f"Released dedup claim: key={key}")
        except redis.RedisError as e:
            logger.warning(f"Failed to release dedup claim: key={key}, error={e}")

    async def close(self) -> None:
        await self.redis_client.aclose()
