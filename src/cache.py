"""
Redis-backed cache used as an optional accelerator.

Every operation reports success instead of raising: a miss, a timeout and an
unreachable server all look the same to callers, who then recompute.
"""

import json
import logging
from typing import Any, Optional, Tuple

import redis

from config import REDIS_SOCKET_TIMEOUT, REDIS_URL

logger = logging.getLogger(__name__)


class RedisCache:
    def __init__(self, redis_url: Optional[str] = None, socket_timeout: float = REDIS_SOCKET_TIMEOUT):
        """
        Args:
            redis_url: Redis connection URL (defaults to REDIS_URL)
            socket_timeout: Seconds before a cache call is treated as failed
        """
        self.redis_url = redis_url or REDIS_URL
        self.client = redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis unavailable at {self.redis_url}: {e}")
            return False

    def try_get(self, key: str) -> Tuple[bool, Any]:
        """
        Returns:
            (True, value) on a hit, (False, None) on a miss or any failure
        """
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache get failed for {key}: {e}")
            return False, None

        if raw is None:
            return False, None

        try:
            return True, json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e}")
            return False, None

    def try_set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            self.client.set(key, json.dumps(value, default=str), ex=int(ttl_seconds))
            return True
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.warning(f"Cache set failed for {key}: {e}")
            return False

    def delete(self, *keys: str) -> bool:
        if not keys:
            return True
        try:
            self.client.delete(*keys)
            return True
        except redis.RedisError as e:
            logger.warning(f"Cache delete failed for {keys}: {e}")
            return False
