"""
Data models for the storage integration layer.

Tables owned by this layer: storage_connections, root_folders,
folder_mappings, sync_state, audit_logs, share_links. galleries and photos
belong to the gallery CRUD layer; only the columns this layer reads or
writes are modelled here.
"""
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from gallery_storage.database import Base

CONNECTION_ACTIVE = "active"
CONNECTION_DISCONNECTED = "disconnected"
CONNECTION_ERROR = "error"


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on round trip; stored times are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class StorageConnection(Base):
    """
    One per (user, provider).

    - access_token / refresh_token: Fernet-encrypted; decrypted only inside
      the token vault. refresh_token may be null for providers that issue
      long-lived tokens.
    - expires_at: UTC expiry of the access token.
    - status: active | disconnected | error. Rows are never deleted;
      disconnecting flips the status.
    """
    __tablename__ = "storage_connections"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_storage_connections_user_provider"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    provider = Column(String(50), nullable=False)

    # OAuth tokens encrypted at rest (crypto.encrypt / crypto.decrypt)
    access_token = Column(String(2048), nullable=False)
    refresh_token = Column(String(2048), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(String(20), nullable=False, default=CONNECTION_ACTIVE)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class RootFolder(Base):
    """Provider-side folder anchoring a user's whole tree for one provider."""
    __tablename__ = "root_folders"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_root_folders_user_provider"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False)
    provider = Column(String(50), nullable=False)
    provider_folder_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class FolderMapping(Base):
    """Gallery -> provider folder. Created at most once per (gallery, provider)."""
    __tablename__ = "folder_mappings"
    __table_args__ = (UniqueConstraint("gallery_id", "provider", name="uq_folder_mappings_gallery_provider"),)

    id = Column(Integer, primary_key=True)
    gallery_id = Column(Integer, nullable=False, index=True)
    provider = Column(String(50), nullable=False)
    provider_folder_id = Column(String(255), nullable=False, index=True)
    parent_folder_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class SyncState(Base):
    """Change-feed checkpoint; absence means a full initial sync is needed."""
    __tablename__ = "sync_state"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_sync_state_user_provider"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False)
    provider = Column(String(50), nullable=False)
    last_sync_token = Column(Text, nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)


class AuditLog(Base):
    """Append-only. This layer never updates or deletes rows."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class Gallery(Base):
    """Gallery (album) owned by the CRUD layer; parent_id set for sub-galleries."""
    __tablename__ = "galleries"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    parent_id = Column(Integer, ForeignKey("galleries.id"), nullable=True)


class Photo(Base):
    """
    Photo row. provider + provider_file_id identify the bytes at the provider;
    provider_path is kept for providers whose delete events carry only a path.
    metadata_updated_at is stamped by local edits and drives sync conflict
    detection. updated_at moves on any write and versions cached listings.
    """
    __tablename__ = "photos"
    __table_args__ = (UniqueConstraint("provider", "provider_file_id", name="uq_photos_provider_file"),)

    id = Column(Integer, primary_key=True)
    gallery_id = Column(Integer, ForeignKey("galleries.id"), nullable=False, index=True)
    provider = Column(String(50), nullable=False)
    provider_file_id = Column(String(255), nullable=False)
    provider_path = Column(String(1024), nullable=True)
    name = Column(String(255), nullable=False)
    url = Column(String(2048), nullable=True)
    mime_type = Column(String(100), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    tags = Column(JSON, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)
    is_hidden = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    metadata_updated_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class ShareLink(Base):
    """Token-gated gallery link; optional bcrypt password and expiry."""
    __tablename__ = "share_links"

    id = Column(Integer, primary_key=True)
    gallery_id = Column(Integer, ForeignKey("galleries.id"), nullable=False, index=True)
    share_token = Column(String(255), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
