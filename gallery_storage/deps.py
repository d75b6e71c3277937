"""
Process-wide service singletons for the routers.

Tests replace these with app.dependency_overrides.
"""
from functools import lru_cache

from gallery_storage.database import SessionLocal
from gallery_storage.services.cache import create_redis_client
from gallery_storage.services.context import StorageContext, build_context
from gallery_storage.services.sync_engine import SyncEngine


@lru_cache
def get_context() -> StorageContext:
    return build_context(create_redis_client(), SessionLocal)


@lru_cache
def get_sync_engine() -> SyncEngine:
    return SyncEngine(get_context())
