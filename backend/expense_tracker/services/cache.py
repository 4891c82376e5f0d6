"""
Per-user response cache in Redis.

Keys are namespaced as ``<prefix>:user:<user_id>:<name>`` so every entry of a
user can be dropped at once. The categorization pipeline never writes entries,
it only invalidates them after changing a user's categories.
"""
import json
import logging
from typing import Any, Optional

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_DELETE_CHUNK = 500


class ResponseCache:
    def __init__(self, connection: Redis, prefix: str = "expense-tracker", ttl: int = 300):
        self._connection = connection
        self._prefix = prefix
        self._ttl = ttl

    def _user_pattern(self, user_id: str) -> str:
        return f"{self._prefix}:user:{user_id}:*"

    def key(self, user_id: str, name: str) -> str:
        return f"{self._prefix}:user:{user_id}:{name}"

    def get_json(self, user_id: str, name: str) -> Optional[Any]:
        try:
            raw = self._connection.get(self.key(user_id, name))
        except RedisError as e:
            logger.warning(f"Cache read failed for user {user_id}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable cache entry {name} for user {user_id}")
            return None

    def set_json(self, user_id: str, name: str, value: Any) -> None:
        try:
            self._connection.set(self.key(user_id, name), json.dumps(value, default=str), ex=self._ttl)
        except RedisError as e:
            logger.warning(f"Cache write failed for user {user_id}: {e}")

    def invalidate_user(self, user_id: str) -> int:
        """
        Drop every cached entry of a user. Best-effort: Redis errors are logged
        and reported as zero deleted keys.
        """
        deleted = 0
        batch = []
        try:
            for key in self._connection.scan_iter(match=self._user_pattern(user_id), count=_DELETE_CHUNK):
                batch.append(key)
                if len(batch) >= _DELETE_CHUNK:
                    deleted += self._connection.delete(*batch)
                    batch = []
            if batch:
                deleted += self._connection.delete(*batch)
        except RedisError as e:
            logger.warning(f"Cache invalidation failed for user {user_id}: {e}")
            return deleted
        logger.debug(f"Invalidated {deleted} cache entries for user {user_id}")
        return deleted
