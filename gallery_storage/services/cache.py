"""
Cache-aside layer over Redis for gallery photo listings, resolved file URLs
and connected-provider lists.

Never authoritative: every read that misses, or that fails because Redis is
down, falls through to the database. Invalidation is synchronous; callers
invalidate before reporting a mutation as successful. Photo listings are
also stored with the version they were loaded at, so a listing whose
invalidation was lost to a Redis error is refused on the next read.
"""
import json
import logging
from collections.abc import Callable
from typing import Any

import redis

from gallery_storage.config import (
    FILE_URL_CACHE_TTL,
    PHOTOS_CACHE_TTL,
    PROVIDERS_CACHE_TTL,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

CACHE_KEY_SEP = ":"


def gallery_photos_key(gallery_id: int) -> str:
    return f"gallery{CACHE_KEY_SEP}photos{CACHE_KEY_SEP}{gallery_id}"


def file_url_key(file_id: str) -> str:
    return f"file{CACHE_KEY_SEP}url{CACHE_KEY_SEP}{file_id}"


def storage_providers_key(user_id: str) -> str:
    return f"user{CACHE_KEY_SEP}providers{CACHE_KEY_SEP}{user_id}"


def create_redis_client(url: str = REDIS_URL) -> redis.Redis:
    """Redis client with short socket timeouts so a dead cache cannot stall requests."""
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )


class CacheLayer:
    """JSON values with TTL; RedisError is logged and treated as a miss/no-op."""

    def __init__(self, client: redis.Redis):
        self.redis = client

    # --- Primitives ---

    def get(self, key: str) -> Any | None:
        try:
            value = self.redis.get(key)
        except redis.RedisError as e:
            logger.warning("Cache get unavailable for key %s: %s", key, e)
            return None
        if value is None:
            logger.debug("Cache MISS: %s", key)
            return None
        logger.debug("Cache HIT: %s", key)
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("Discarding undecodable cache entry %s", key)
            return None

    def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            self.redis.set(key, json.dumps(value), ex=ttl)
        except redis.RedisError as e:
            logger.warning("Cache set unavailable for key %s: %s", key, e)
            return False
        logger.debug("Cache SET: %s (TTL: %ss)", key, ttl)
        return True

    def delete(self, key: str) -> bool:
        try:
            self.redis.delete(key)
        except redis.RedisError as e:
            logger.warning("Cache delete unavailable for key %s: %s", key, e)
            return False
        return True

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: int) -> Any:
        """Cache-aside read: cached value, else loader() stored under key."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.set(key, value, ttl)
        return value

    # --- Gallery photos ---

    def cache_gallery_photos(
        self, gallery_id: int, photos: list[dict], version: str, ttl: int = PHOTOS_CACHE_TTL
    ) -> bool:
        return self.set(gallery_photos_key(gallery_id), {"version": version, "photos": photos}, ttl)

    def get_gallery_photos(self, gallery_id: int, version: str) -> list[dict] | None:
        """Cached listing, or None when absent or stored under another version."""
        entry = self.get(gallery_photos_key(gallery_id))
        if not isinstance(entry, dict) or entry.get("version") != version:
            return None
        return entry.get("photos")

    def invalidate_gallery_photos(self, gallery_id: int) -> bool:
        return self.delete(gallery_photos_key(gallery_id))

    # --- File URLs ---

    def cache_file_url(self, file_id: str, url: str, ttl: int = FILE_URL_CACHE_TTL) -> bool:
        return self.set(file_url_key(file_id), url, ttl)

    def get_file_url(self, file_id: str) -> str | None:
        return self.get(file_url_key(file_id))

    def invalidate_file_url(self, file_id: str) -> bool:
        return self.delete(file_url_key(file_id))

    # --- Connected providers ---

    def cache_storage_providers(self, user_id: str, providers: list[dict], ttl: int = PROVIDERS_CACHE_TTL) -> bool:
        return self.set(storage_providers_key(user_id), providers, ttl)

    def get_storage_providers(self, user_id: str) -> list[dict] | None:
        return self.get(storage_providers_key(user_id))

    def invalidate_storage_providers(self, user_id: str) -> bool:
        return self.delete(storage_providers_key(user_id))
