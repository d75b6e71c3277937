"""
Storage router: uploads, photo listings and edits, file URLs, rate usage
and manual sync.

Thin HTTP layer; all logic lives in services. StorageError subclasses are
turned into responses by the handlers registered in main.
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Request, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gallery_storage.config import MAX_UPLOAD_BYTES
from gallery_storage.database import get_db
from gallery_storage.deps import get_context, get_sync_engine
from gallery_storage.errors import ValidationError
from gallery_storage.security import client_ip, get_current_user_id
from gallery_storage.services import connections, photos, uploads
from gallery_storage.services.context import StorageContext
from gallery_storage.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/storage")


# --- Request models ---


class TagsBody(BaseModel):
    tags: list[str] = Field(..., max_length=photos.MAX_TAGS)


class VisibilityBody(BaseModel):
    is_hidden: bool


class SortOrderBody(BaseModel):
    sort_order: int = Field(..., ge=0)


# --- Uploads ---


@router.post("/galleries/{gallery_id}/photos", status_code=201)
def upload_photo(
    request: Request,
    gallery_id: int,
    file: UploadFile = File(...),
    provider: str | None = Form(None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    """
    Upload one photo into a gallery. Files below 10 MiB go up in a single
    request, larger ones through the provider's resumable protocol.
    """
    data = file.file.read(MAX_UPLOAD_BYTES + 1)
    if len(data) > MAX_UPLOAD_BYTES:
        raise ValidationError(f"File exceeds the {MAX_UPLOAD_BYTES // (1024 * 1024)} MiB upload limit")
    result = uploads.upload_photo(
        db,
        ctx,
        user_id,
        gallery_id,
        data,
        file.filename or "",
        file.content_type or "",
        provider=provider or None,
        ip_address=client_ip(request),
    )
    return result.to_dict()


# --- Providers and usage ---


@router.get("/providers")
def get_storage_providers(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    """Connected providers as [{id, name}]."""
    return connections.get_storage_providers(db, ctx, user_id)


@router.get("/rate-usage")
def get_rate_usage(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    return {"providers": connections.get_rate_usage(db, ctx, user_id)}


# --- Photos ---


@router.get("/galleries/{gallery_id}/photos")
def get_gallery_photos(
    gallery_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    uploads.get_owned_gallery(db, user_id, gallery_id)
    return {"gallery_id": gallery_id, "photos": photos.get_gallery_photos(db, ctx, gallery_id)}


@router.patch("/photos/{photo_id}/tags")
def update_tags(
    photo_id: int,
    body: TagsBody,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    return photos.update_tags(db, ctx, user_id, photo_id, body.tags)


@router.patch("/photos/{photo_id}/visibility")
def set_visibility(
    photo_id: int,
    body: VisibilityBody,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    return photos.set_visibility(db, ctx, user_id, photo_id, body.is_hidden)


@router.patch("/photos/{photo_id}/sort-order")
def set_sort_order(
    photo_id: int,
    body: SortOrderBody,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    return photos.set_sort_order(db, ctx, user_id, photo_id, body.sort_order)


@router.delete("/photos/{photo_id}")
def delete_photo(
    photo_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    photos.delete_photo(db, ctx, user_id, photo_id)
    return {"ok": True, "photo_id": photo_id}


@router.get("/photos/{photo_id}/url")
def get_file_url(
    photo_id: int,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    return {"photo_id": photo_id, "url": photos.get_file_url(db, ctx, user_id, photo_id)}


# --- Sync ---


def _sync_in_background(engine: SyncEngine, user_id: str, provider: str) -> None:
    # Failures are already audited by the engine; keep them out of the response cycle
    try:
        engine.sync_user(user_id, provider)
    except Exception:
        logger.exception("Manual sync failed for user %s (%s)", user_id, provider)


@router.post("/sync", status_code=202)
def trigger_sync(
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Queue a sync of each of the caller's connected providers."""
    providers = [p["id"] for p in connections.get_storage_providers(db, ctx, user_id)]
    for provider in providers:
        background_tasks.add_task(_sync_in_background, engine, user_id, provider)
    return {"queued": providers}


@router.get("/sync/status")
def sync_status(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
    engine: SyncEngine = Depends(get_sync_engine),
):
    providers = [p["id"] for p in connections.get_storage_providers(db, ctx, user_id)]
    return {provider: engine.get_phase(user_id, provider).value for provider in providers}
