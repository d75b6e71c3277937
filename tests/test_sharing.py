"""Tests for share links: creation, password gate, expiry and revocation."""

from datetime import timedelta

import pytest

from gallery_storage.errors import AuthenticationError, NotFoundError, ValidationError
from gallery_storage.models import ShareLink, utcnow
from gallery_storage.services import sharing
from tests.fakes import OTHER_USER_ID, USER_ID, add_gallery, add_photo, audit_count


def test_link_resolves_to_visible_photos(db, ctx, session_factory) -> None:
    gallery = add_gallery(db)
    add_photo(db, gallery, "file-a")
    add_photo(db, gallery, "file-b", is_hidden=True)
    link = sharing.create_share_link(db, ctx, USER_ID, gallery.id)

    shared = sharing.resolve_share_link(db, ctx, link.share_token)

    assert shared["gallery"]["name"] == gallery.name
    assert shared["gallery"]["photo_count"] == 1
    assert shared["share"] == {"expires_at": None, "has_password": False}
    assert audit_count(session_factory, "share_created") == 1
    assert audit_count(session_factory, "share_accessed") == 1


def test_password_protected_link(db, ctx) -> None:
    gallery = add_gallery(db)
    link = sharing.create_share_link(db, ctx, USER_ID, gallery.id, password="s3cret")
    assert link.password_hash != "s3cret"

    with pytest.raises(AuthenticationError) as missing:
        sharing.resolve_share_link(db, ctx, link.share_token)
    assert missing.value.requires_password is True
    with pytest.raises(AuthenticationError, match="Incorrect password"):
        sharing.resolve_share_link(db, ctx, link.share_token, password="guess")

    assert sharing.resolve_share_link(db, ctx, link.share_token, password="s3cret")["share"]["has_password"]


def test_expired_link_is_not_found(db, ctx) -> None:
    gallery = add_gallery(db)
    link = sharing.create_share_link(db, ctx, USER_ID, gallery.id, expires_in_days=1)
    link.expires_at = utcnow() - timedelta(seconds=1)
    db.commit()
    with pytest.raises(NotFoundError):
        sharing.resolve_share_link(db, ctx, link.share_token)


def test_expiry_is_set_from_days(db, ctx) -> None:
    gallery = add_gallery(db)
    link = sharing.create_share_link(db, ctx, USER_ID, gallery.id, expires_in_days=7)
    data = sharing.share_link_to_dict(link)
    assert data["expires_at"] is not None
    assert data["has_password"] is False
    assert len(data["share_token"]) == 64


@pytest.mark.parametrize("days", [0, -1, 10_000, True])
def test_invalid_expiry_is_rejected(db, ctx, days) -> None:
    gallery = add_gallery(db)
    with pytest.raises(ValidationError):
        sharing.create_share_link(db, ctx, USER_ID, gallery.id, expires_in_days=days)


def test_only_owner_can_share(db, ctx) -> None:
    gallery = add_gallery(db, user_id=OTHER_USER_ID)
    with pytest.raises(NotFoundError):
        sharing.create_share_link(db, ctx, USER_ID, gallery.id)


def test_revoked_link_stops_resolving_and_revoke_is_idempotent(db, ctx, session_factory) -> None:
    gallery = add_gallery(db)
    link = sharing.create_share_link(db, ctx, USER_ID, gallery.id)

    sharing.revoke_share_link(db, ctx, USER_ID, link.share_token)
    again = sharing.revoke_share_link(db, ctx, USER_ID, link.share_token)

    assert again.revoked_at is not None
    assert audit_count(session_factory, "share_revoked") == 1
    with pytest.raises(NotFoundError):
        sharing.resolve_share_link(db, ctx, link.share_token)


def test_other_users_cannot_revoke(db, ctx) -> None:
    gallery = add_gallery(db)
    link = sharing.create_share_link(db, ctx, USER_ID, gallery.id)
    with pytest.raises(NotFoundError):
        sharing.revoke_share_link(db, ctx, OTHER_USER_ID, link.share_token)
    assert db.get(ShareLink, link.id).revoked_at is None


def test_unknown_token_is_not_found(db, ctx) -> None:
    with pytest.raises(NotFoundError):
        sharing.resolve_share_link(db, ctx, "0" * 64)
