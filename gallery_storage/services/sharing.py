"""
Share links: token-gated, optionally password-gated gallery access.

Independent of which provider holds the files; resolution serves the same
cached visible-photo listing as the owner view.
"""
import logging
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from gallery_storage.config import SHARE_LINK_MAX_DAYS
from gallery_storage.crypto import generate_share_token, hash_password, verify_password
from gallery_storage.errors import AuthenticationError, NotFoundError, ValidationError
from gallery_storage.models import Gallery, ShareLink, as_utc, utcnow
from gallery_storage.services.context import StorageContext
from gallery_storage.services.photos import get_gallery_photos
from gallery_storage.services.uploads import get_owned_gallery

logger = logging.getLogger(__name__)


def share_link_to_dict(link: ShareLink) -> dict:
    return {
        "id": link.id,
        "gallery_id": link.gallery_id,
        "share_token": link.share_token,
        "has_password": link.password_hash is not None,
        "expires_at": as_utc(link.expires_at).isoformat() if link.expires_at else None,
        "created_at": as_utc(link.created_at).isoformat() if link.created_at else None,
        "revoked": link.revoked_at is not None,
    }


def create_share_link(
    db: Session,
    ctx: StorageContext,
    user_id: str,
    gallery_id: int,
    password: str | None = None,
    expires_in_days: int | None = None,
    ip_address: str | None = None,
) -> ShareLink:
    if expires_in_days is not None:
        if isinstance(expires_in_days, bool) or not isinstance(expires_in_days, int):
            raise ValidationError("expires_in_days must be an integer")
        if not 1 <= expires_in_days <= SHARE_LINK_MAX_DAYS:
            raise ValidationError(f"expires_in_days must be between 1 and {SHARE_LINK_MAX_DAYS}")
    get_owned_gallery(db, user_id, gallery_id)

    link = ShareLink(
        gallery_id=gallery_id,
        share_token=generate_share_token(),
        password_hash=hash_password(password) if password else None,
        expires_at=utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
        created_by=user_id,
        created_at=utcnow(),
    )
    db.add(link)
    db.commit()
    db.refresh(link)

    ctx.audit.log_share_operation(
        user_id,
        gallery_id,
        "created",
        link.id,
        metadata={
            "has_password": link.password_hash is not None,
            "expires_at": link.expires_at.isoformat() if link.expires_at else None,
        },
        ip_address=ip_address,
    )
    return link


def revoke_share_link(
    db: Session,
    ctx: StorageContext,
    user_id: str,
    share_token: str,
    ip_address: str | None = None,
) -> ShareLink:
    """Owner-only; revoking an already revoked link is a no-op."""
    link = db.scalar(
        select(ShareLink)
        .join(Gallery, ShareLink.gallery_id == Gallery.id)
        .where(ShareLink.share_token == share_token, Gallery.user_id == user_id)
    )
    if link is None:
        raise NotFoundError("Share link not found")
    if link.revoked_at is not None:
        return link

    link.revoked_at = utcnow()
    db.commit()
    ctx.audit.log_share_operation(user_id, link.gallery_id, "revoked", link.id, ip_address=ip_address)
    return link


def resolve_share_link(
    db: Session,
    ctx: StorageContext,
    share_token: str,
    password: str | None = None,
    ip_address: str | None = None,
) -> dict:
    """
    Gallery and visible photos behind a share token. Missing, revoked and
    expired links are all NotFoundError; a missing or wrong password is an
    AuthenticationError with requires_password set.
    """
    link = db.scalar(select(ShareLink).where(ShareLink.share_token == share_token))
    if link is None or link.revoked_at is not None:
        raise NotFoundError("Share link not found, expired, or revoked")
    if link.expires_at is not None and as_utc(link.expires_at) <= utcnow():
        raise NotFoundError("Share link not found, expired, or revoked")

    if link.password_hash:
        if not password:
            raise AuthenticationError("Password required", requires_password=True)
        if not verify_password(password, link.password_hash):
            raise AuthenticationError("Incorrect password", requires_password=True)

    gallery = db.get(Gallery, link.gallery_id)
    if gallery is None:
        raise NotFoundError("Share link not found, expired, or revoked")
    photos = get_gallery_photos(db, ctx, gallery.id)

    ctx.audit.log_share_operation(None, gallery.id, "accessed", link.id, ip_address=ip_address)
    return {
        "gallery": {"id": gallery.id, "name": gallery.name, "photo_count": len(photos), "photos": photos},
        "share": {
            "expires_at": as_utc(link.expires_at).isoformat() if link.expires_at else None,
            "has_password": link.password_hash is not None,
        },
    }
