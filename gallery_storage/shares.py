"""
Share-link router. Creating and revoking need a session; resolving is
public and gated by the token (and the password, when one is set).
"""
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from gallery_storage.config import SHARE_LINK_MAX_DAYS
from gallery_storage.database import get_db
from gallery_storage.deps import get_context
from gallery_storage.security import client_ip, get_current_user_id
from gallery_storage.services import sharing
from gallery_storage.services.context import StorageContext

router = APIRouter(prefix="/shares")


class CreateShareBody(BaseModel):
    gallery_id: int
    password: str | None = Field(None, min_length=1, max_length=256)
    expires_in_days: int | None = Field(None, ge=1, le=SHARE_LINK_MAX_DAYS)


@router.post("", status_code=201)
def create_share_link(
    request: Request,
    body: CreateShareBody,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    link = sharing.create_share_link(
        db,
        ctx,
        user_id,
        body.gallery_id,
        password=body.password,
        expires_in_days=body.expires_in_days,
        ip_address=client_ip(request),
    )
    return sharing.share_link_to_dict(link)


@router.delete("/{share_token}")
def revoke_share_link(
    request: Request,
    share_token: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    link = sharing.revoke_share_link(db, ctx, user_id, share_token, ip_address=client_ip(request))
    return {"ok": True, "id": link.id}


@router.get("/{share_token}")
def resolve_share_link(
    request: Request,
    share_token: str,
    x_share_password: str | None = Header(None),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    """Gallery and visible photos; the password, if any, goes in X-Share-Password."""
    return sharing.resolve_share_link(
        db, ctx, share_token, password=x_share_password, ip_address=client_ip(request)
    )
