"""Redis service for export progress events and short-lived status caching."""

import json
import logging
from typing import Optional, Any
import redis

from cleandoc_export.core.config import settings

logger = logging.getLogger("cleandoc_export")

STATUS_TTL_SECONDS = 3600


class CacheService:
    """Redis-backed pub/sub and cache; every failure is non-fatal."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self._client = client

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                max_connections=100,
            )
        return self._client

    def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except redis.RedisError:
            return None
        return json.loads(raw) if raw else None

    def set_json(self, key: str, value: Any, ttl_seconds: int = STATUS_TTL_SECONDS) -> None:
        try:
            self.client.setex(key, ttl_seconds, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.warning("Cache write for %s failed: %s", key, e)

    def publish(self, channel: str, message: str) -> None:
        """Publish a message to a Redis channel."""
        try:
            self.client.publish(channel, message)
        except redis.RedisError as e:
            logger.warning("Publish to %s failed: %s", channel, e)

    def publish_export_status(self, export_id: str, status: str, message: Optional[str] = None) -> None:
        """Broadcast an export progress event on ``export:<id>`` and cache it."""
        event = {"export_id": export_id, "status": status, "message": message}
        self.set_json(f"export:status:{export_id}", event)
        self.publish(f"export:{export_id}", json.dumps(event))

    def subscribe_export(self, export_id: str) -> Optional[redis.client.PubSub]:
        """PubSub listening on ``export:<id>``, or None when Redis is unreachable."""
        try:
            pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(f"export:{export_id}")
        except redis.RedisError as e:
            logger.warning("Subscribe to export:%s failed: %s", export_id, e)
            return None
        return pubsub

    def get_export_status(self, export_id: str) -> Optional[dict]:
        return self.get_json(f"export:status:{export_id}")

    def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return self.client.ping()
        except redis.RedisError:
            return False


cache_service = CacheService()
