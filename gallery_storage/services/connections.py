"""Connected-provider queries and the rate usage snapshot."""
from sqlalchemy import select
from sqlalchemy.orm import Session

from gallery_storage.models import CONNECTION_ACTIVE, StorageConnection
from gallery_storage.providers import PROVIDER_NAMES
from gallery_storage.services.context import StorageContext


def _active_providers(db: Session, user_id: str) -> list[str]:
    return list(db.scalars(
        select(StorageConnection.provider)
        .where(StorageConnection.user_id == user_id, StorageConnection.status == CONNECTION_ACTIVE)
        .order_by(StorageConnection.created_at, StorageConnection.id)
    ))


def get_storage_providers(db: Session, ctx: StorageContext, user_id: str) -> list[dict]:
    """[{id, name}] for the user's active connections, cache-first."""
    cached = ctx.cache.get_storage_providers(user_id)
    if cached is not None:
        return cached
    providers = [
        {"id": provider, "name": PROVIDER_NAMES.get(provider, provider)}
        for provider in _active_providers(db, user_id)
    ]
    ctx.cache.cache_storage_providers(user_id, providers)
    return providers


def list_active_connections(db: Session) -> list[tuple[str, str]]:
    """(user_id, provider) for every active connection, for the sync engine."""
    rows = db.execute(
        select(StorageConnection.user_id, StorageConnection.provider)
        .where(StorageConnection.status == CONNECTION_ACTIVE)
        .order_by(StorageConnection.id)
    )
    return [(user_id, provider) for user_id, provider in rows]


def get_rate_usage(db: Session, ctx: StorageContext, user_id: str) -> dict[str, dict]:
    return ctx.rate_governor.get_rate_usage(_active_providers(db, user_id))
