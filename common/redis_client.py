"""
Redis client utilities for short-lived dedup keys
"""
import redis
import logging
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, client=None):
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)

    # Payment link views
    def first_view(self, link_id: str, visitor: str, ttl_seconds: int = None) -> bool:
        """True only for the first view of a link by a visitor inside the TTL window.
        Redis being unavailable counts the view as a repeat."""
        ttl_seconds = ttl_seconds or settings.unique_view_ttl_seconds
        try:
            key = f"link_view:{link_id}:{visitor}"
            return bool(self.client.set(key, 1, nx=True, ex=ttl_seconds))
        except redis.RedisError as e:
            logger.warning(f"Failed to record link view: {e}")
            return False

redis_client = RedisClient()
