"""
Wiring for the storage services. Routers get one StorageContext per process
through deps.get_context; tests build their own around fakes.
"""
from collections.abc import Callable
from dataclasses import dataclass

import redis
from sqlalchemy.orm import sessionmaker

from gallery_storage.providers import StorageProvider, get_provider
from gallery_storage.services.audit import AuditRecorder
from gallery_storage.services.cache import CacheLayer
from gallery_storage.services.folder_mapper import FolderMapper
from gallery_storage.services.rate_governor import RateGovernor
from gallery_storage.services.token_vault import TokenVault


@dataclass
class StorageContext:
    cache: CacheLayer
    audit: AuditRecorder
    rate_governor: RateGovernor
    token_vault: TokenVault
    folder_mapper: FolderMapper
    session_factory: sessionmaker


def build_context(
    redis_client: redis.Redis,
    session_factory: sessionmaker,
    provider_factory: Callable[..., StorageProvider] = get_provider,
) -> StorageContext:
    cache = CacheLayer(redis_client)
    audit = AuditRecorder(session_factory)
    rate_governor = RateGovernor(redis_client)
    return StorageContext(
        cache=cache,
        audit=audit,
        rate_governor=rate_governor,
        token_vault=TokenVault(cache, audit, rate_governor, provider_factory=provider_factory),
        folder_mapper=FolderMapper(rate_governor),
        session_factory=session_factory,
    )
