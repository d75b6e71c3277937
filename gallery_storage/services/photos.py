"""
Photo listing and metadata edits.

Listings are served cache-first. Every edit stamps metadata_updated_at (the
sync engine uses it to spot local-vs-remote conflicts), commits, and drops
the gallery's cached listing before returning.
"""
import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from gallery_storage.config import PHOTOS_CACHE_TTL
from gallery_storage.errors import NotFoundError, ValidationError
from gallery_storage.models import Gallery, Photo, utcnow
from gallery_storage.services.context import StorageContext
from gallery_storage.services.rate_governor import OperationClass

logger = logging.getLogger(__name__)

MAX_TAGS = 50
MAX_TAG_LENGTH = 100


def photo_to_dict(photo: Photo) -> dict:
    return {
        "id": photo.id,
        "gallery_id": photo.gallery_id,
        "name": photo.name,
        "url": photo.url,
        "mime_type": photo.mime_type,
        "file_size": photo.file_size,
        "provider": photo.provider,
        "provider_file_id": photo.provider_file_id,
        "tags": list(photo.tags or []),
        "sort_order": photo.sort_order,
        "is_hidden": photo.is_hidden,
        "created_at": photo.created_at.isoformat() if photo.created_at else None,
    }


def load_visible_photos(db: Session, gallery_id: int) -> list[dict]:
    rows = db.scalars(
        select(Photo)
        .where(
            Photo.gallery_id == gallery_id,
            Photo.deleted_at.is_(None),
            Photo.is_hidden.is_(False),
        )
        .order_by(Photo.sort_order, Photo.id)
    )
    return [photo_to_dict(p) for p in rows]


def listing_version(db: Session, gallery_id: int) -> str:
    """Changes whenever any photo of the gallery is written or added."""
    latest, count = db.execute(
        select(func.max(Photo.updated_at), func.count(Photo.id)).where(Photo.gallery_id == gallery_id)
    ).one()
    return f"{count}:{latest.isoformat() if latest else ''}"


def get_gallery_photos(db: Session, ctx: StorageContext, gallery_id: int) -> list[dict]:
    """Visible, non-deleted photos of a gallery in sort order."""
    # Version is read before the rows; a write in between only costs a reload
    version = listing_version(db, gallery_id)
    cached = ctx.cache.get_gallery_photos(gallery_id, version)
    if cached is not None:
        return cached
    listing = load_visible_photos(db, gallery_id)
    ctx.cache.cache_gallery_photos(gallery_id, listing, version, PHOTOS_CACHE_TTL)
    return listing


def _owned_photo(db: Session, user_id: str, photo_id: int) -> Photo:
    photo = db.scalar(
        select(Photo)
        .join(Gallery, Photo.gallery_id == Gallery.id)
        .where(Photo.id == photo_id, Gallery.user_id == user_id, Photo.deleted_at.is_(None))
    )
    if photo is None:
        raise NotFoundError(f"Photo {photo_id} not found")
    return photo


def _commit_edit(db: Session, ctx: StorageContext, user_id: str, photo: Photo, operation: str, details: dict) -> dict:
    photo.metadata_updated_at = utcnow()
    db.commit()
    ctx.cache.invalidate_gallery_photos(photo.gallery_id)
    ctx.audit.log_metadata_operation(
        user_id, photo.id, operation, metadata={"gallery_id": photo.gallery_id, **details}
    )
    return photo_to_dict(photo)


def update_tags(db: Session, ctx: StorageContext, user_id: str, photo_id: int, tags: list[str]) -> dict:
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise ValidationError("Tags must be a list of strings")
    cleaned = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in cleaned:
            if len(tag) > MAX_TAG_LENGTH:
                raise ValidationError(f"Tags are limited to {MAX_TAG_LENGTH} characters")
            cleaned.append(tag)
    if len(cleaned) > MAX_TAGS:
        raise ValidationError(f"At most {MAX_TAGS} tags per photo")

    photo = _owned_photo(db, user_id, photo_id)
    photo.tags = cleaned
    return _commit_edit(db, ctx, user_id, photo, "tags_updated", {"tags": cleaned})


def set_visibility(db: Session, ctx: StorageContext, user_id: str, photo_id: int, hidden: bool) -> dict:
    if not isinstance(hidden, bool):
        raise ValidationError("is_hidden must be a boolean")
    photo = _owned_photo(db, user_id, photo_id)
    photo.is_hidden = hidden
    return _commit_edit(db, ctx, user_id, photo, "visibility_changed", {"is_hidden": hidden})


def set_sort_order(db: Session, ctx: StorageContext, user_id: str, photo_id: int, sort_order: int) -> dict:
    if isinstance(sort_order, bool) or not isinstance(sort_order, int) or sort_order < 0:
        raise ValidationError("sort_order must be a non-negative integer")
    photo = _owned_photo(db, user_id, photo_id)
    photo.sort_order = sort_order
    return _commit_edit(db, ctx, user_id, photo, "sort_order_changed", {"sort_order": sort_order})


def delete_photo(db: Session, ctx: StorageContext, user_id: str, photo_id: int) -> None:
    """Soft delete; the provider file is left in place."""
    photo = _owned_photo(db, user_id, photo_id)
    photo.deleted_at = utcnow()
    _commit_edit(db, ctx, user_id, photo, "deleted", {"provider_file_id": photo.provider_file_id})
    ctx.cache.invalidate_file_url(photo.provider_file_id)


def get_file_url(db: Session, ctx: StorageContext, user_id: str, photo_id: int) -> str:
    """Cached URL, then the stored URL, then a fresh one from the provider."""
    photo = _owned_photo(db, user_id, photo_id)
    cached = ctx.cache.get_file_url(photo.provider_file_id)
    if cached:
        return cached
    url = photo.url
    if not url:
        url = ctx.token_vault.with_provider(
            db,
            user_id,
            photo.provider,
            lambda adapter: ctx.rate_governor.execute(
                adapter.name,
                OperationClass.METADATA,
                lambda: adapter.get_file_url(photo.provider_file_id),
            ),
        )
        photo.url = url
        db.commit()
    ctx.cache.cache_file_url(photo.provider_file_id, url)
    return url
