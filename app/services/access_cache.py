"""
Redis cache for access snapshots.

Route guards run on every gated request; caching the derived
UserAccessState for a short TTL avoids a store round trip each time. The
cached value is only ever a snapshot: the verdict is still computed fresh
from it at request time, and every billing mutation invalidates the key.
"""

import logging
from typing import Optional

import redis

from app.core.config import settings
from app.domain.schemas import UserAccessState

logger = logging.getLogger(__name__)

_redis: Optional[redis.Redis] = None

KEY_PREFIX = "access:"


def get_redis() -> redis.Redis:
    """Get or create Redis connection."""
    global _redis
    if _redis is None:
        try:
            _redis = redis.Redis.from_url(settings.redis_url, decode_responses=True)
            _redis.ping()
            logger.info("Redis connection established")
        except redis.RedisError as e:
            _redis = None
            logger.warning(f"Redis connection failed: {e}. Access caching disabled.")
            raise
    return _redis


def get_cached_state(user_id: str) -> Optional[UserAccessState]:
    """Return the cached snapshot for a user, or None on miss or any Redis error."""
    try:
        raw = get_redis().get(f"{KEY_PREFIX}{user_id}")
    except redis.RedisError as e:
        logger.warning(f"Failed to read access cache for {user_id}: {e}")
        return None
    if raw is None:
        return None
    try:
        return UserAccessState.model_validate_json(raw)
    except ValueError:
        logger.warning(f"Discarding unreadable access cache entry for {user_id}")
        invalidate(user_id)
        return None


def cache_state(user_id: str, state: UserAccessState) -> None:
    try:
        get_redis().setex(f"{KEY_PREFIX}{user_id}", settings.access_cache_ttl, state.model_dump_json())
    except redis.RedisError as e:
        logger.warning(f"Failed to cache access state for {user_id}: {e}")


def invalidate(user_id: str) -> None:
    """Drop a user's cached snapshot. Called after every billing mutation."""
    try:
        get_redis().delete(f"{KEY_PREFIX}{user_id}")
    except redis.RedisError as e:
        logger.warning(f"Failed to invalidate access cache for {user_id}: {e}")
