"""
Upload service: photo bytes -> provider file -> photo row.

Order of operations: validate, check gallery ownership, pick the provider,
get a valid token, resolve/create the gallery folder, upload (direct below
RESUMABLE_THRESHOLD_BYTES, resumable at or above it), persist the row,
refresh caches, audit. If the row cannot be persisted the provider file is
deleted again so no half-recorded upload remains.
"""
import io
import logging
import posixpath
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gallery_storage.config import MAX_UPLOAD_BYTES, RESUMABLE_THRESHOLD_BYTES
from gallery_storage.errors import NotFoundError, StorageError, ValidationError
from gallery_storage.models import CONNECTION_ACTIVE, Gallery, Photo, StorageConnection, utcnow
from gallery_storage.providers import FileMetadata, StorageProvider
from gallery_storage.services.context import StorageContext
from gallery_storage.services.rate_governor import OperationClass

logger = logging.getLogger(__name__)

ALLOWED_MIME_PREFIXES = ("image/", "video/")


@dataclass
class UploadResult:
    photo_id: int
    gallery_id: int
    provider: str
    file: FileMetadata
    resumable: bool

    def to_dict(self) -> dict:
        return {
            "photo_id": self.photo_id,
            "gallery_id": self.gallery_id,
            "provider": self.provider,
            "resumable": self.resumable,
            "file": self.file.to_dict(),
        }


def _validate(data: bytes, name: str, mime_type: str) -> str:
    """Returns the cleaned file name."""
    if not data:
        raise ValidationError("File is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError(f"File exceeds the {MAX_UPLOAD_BYTES // (1024 * 1024)} MiB upload limit")
    clean = posixpath.basename((name or "").replace("\\", "/")).strip()
    if not clean:
        raise ValidationError("File name is required")
    if not mime_type or not mime_type.startswith(ALLOWED_MIME_PREFIXES):
        raise ValidationError(f"Unsupported file type: {mime_type or 'unknown'}")
    return clean


def get_owned_gallery(db: Session, user_id: str, gallery_id: int) -> Gallery:
    """The gallery if user_id owns it. Someone else's gallery is reported as not found."""
    gallery = db.get(Gallery, gallery_id)
    if gallery is None or gallery.user_id != user_id:
        raise NotFoundError(f"Gallery {gallery_id} not found")
    return gallery


def default_provider(db: Session, user_id: str) -> str:
    """Oldest active connection wins when the caller does not pick a provider."""
    provider = db.scalar(
        select(StorageConnection.provider)
        .where(StorageConnection.user_id == user_id, StorageConnection.status == CONNECTION_ACTIVE)
        .order_by(StorageConnection.created_at, StorageConnection.id)
        .limit(1)
    )
    if provider is None:
        raise ValidationError("No storage provider connected")
    return provider


def _send(adapter: StorageProvider, data: bytes, name: str, mime_type: str, folder_id: str) -> FileMetadata:
    if len(data) >= RESUMABLE_THRESHOLD_BYTES:
        return adapter.upload_file_resumable(io.BytesIO(data), name, mime_type, len(data), folder_id)
    return adapter.upload_file(data, name, mime_type, folder_id)


def _persist(db: Session, gallery_id: int, provider: str, meta: FileMetadata) -> Photo:
    next_order = db.scalar(
        select(func.coalesce(func.max(Photo.sort_order), -1) + 1).where(Photo.gallery_id == gallery_id)
    )
    photo = Photo(
        gallery_id=gallery_id,
        provider=provider,
        provider_file_id=meta.id,
        provider_path=meta.path,
        name=meta.name,
        url=meta.url,
        mime_type=meta.mime_type,
        file_size=meta.size,
        tags=[],
        sort_order=next_order,
        is_hidden=False,
        created_at=utcnow(),
    )
    db.add(photo)
    db.commit()
    db.refresh(photo)
    return photo


def _compensate(adapter: StorageProvider, file_id: str) -> None:
    try:
        adapter.delete_file(file_id)
        logger.info("Removed %s file %s after failed persist", adapter.name, file_id)
    except StorageError:
        logger.exception("Could not remove orphaned %s file %s", adapter.name, file_id)


def upload_photo(
    db: Session,
    ctx: StorageContext,
    user_id: str,
    gallery_id: int,
    data: bytes,
    name: str,
    mime_type: str,
    provider: str | None = None,
    ip_address: str | None = None,
) -> UploadResult:
    context = {"gallery_id": gallery_id, "provider": provider, "name": name, "size": len(data or b"")}
    try:
        name = _validate(data, name, mime_type)
        gallery = get_owned_gallery(db, user_id, gallery_id)
        provider = provider or default_provider(db, user_id)
        context["provider"] = provider
        resumable = len(data) >= RESUMABLE_THRESHOLD_BYTES

        def run(adapter: StorageProvider) -> tuple[FileMetadata, StorageProvider]:
            folder_id = ctx.folder_mapper.resolve_gallery_folder(db, user_id, gallery, adapter)
            meta = ctx.rate_governor.execute(
                adapter.name,
                OperationClass.UPLOAD,
                lambda: _send(adapter, data, name, mime_type, folder_id),
            )
            return meta, adapter

        meta, adapter = ctx.token_vault.with_provider(db, user_id, provider, run)
    except StorageError as e:
        ctx.audit.log_error("upload_photo", e, metadata=context, user_id=user_id, ip_address=ip_address)
        raise

    try:
        photo = _persist(db, gallery_id, provider, meta)
    except SQLAlchemyError as e:
        db.rollback()
        _compensate(adapter, meta.id)
        ctx.audit.log_error("upload_photo.persist", e, metadata=context, user_id=user_id, ip_address=ip_address)
        raise

    if meta.url:
        ctx.cache.cache_file_url(meta.id, meta.url)
    ctx.cache.invalidate_gallery_photos(gallery_id)
    ctx.audit.log_file_operation(
        user_id,
        meta.id,
        "upload",
        metadata={
            "gallery_id": gallery_id,
            "photo_id": photo.id,
            "provider": provider,
            "name": meta.name,
            "size": meta.size,
            "mime_type": meta.mime_type,
            "resumable": resumable,
        },
        ip_address=ip_address,
    )
    logger.info("Uploaded %s to gallery %s via %s (%d bytes)", meta.name, gallery_id, provider, meta.size)
    return UploadResult(
        photo_id=photo.id,
        gallery_id=gallery_id,
        provider=provider,
        file=meta,
        resumable=resumable,
    )
