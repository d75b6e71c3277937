"""Tests for photo metadata edits and file URL resolution."""

import pytest

from gallery_storage.errors import NotFoundError, ValidationError
from gallery_storage.models import Photo
from gallery_storage.services import photos
from tests.fakes import OTHER_USER_ID, USER_ID, add_gallery, add_photo, audit_count


def test_update_tags_strips_and_dedupes(db, ctx, session_factory) -> None:
    photo = add_photo(db, add_gallery(db))
    result = photos.update_tags(db, ctx, USER_ID, photo.id, [" beach ", "beach", "", "sunset"])
    assert result["tags"] == ["beach", "sunset"]
    assert db.get(Photo, photo.id).metadata_updated_at is not None
    assert audit_count(session_factory, "metadata_tags_updated") == 1


@pytest.mark.parametrize(
    "tags",
    [
        ["x" * (photos.MAX_TAG_LENGTH + 1)],
        [f"tag-{n}" for n in range(photos.MAX_TAGS + 1)],
        "not-a-list",
        [1, 2],
    ],
)
def test_invalid_tags_are_rejected(db, ctx, tags) -> None:
    photo = add_photo(db, add_gallery(db))
    with pytest.raises(ValidationError):
        photos.update_tags(db, ctx, USER_ID, photo.id, tags)


@pytest.mark.parametrize("sort_order", [-1, True, "3", 1.5])
def test_invalid_sort_order_is_rejected(db, ctx, sort_order) -> None:
    photo = add_photo(db, add_gallery(db))
    with pytest.raises(ValidationError):
        photos.set_sort_order(db, ctx, USER_ID, photo.id, sort_order)


def test_listing_follows_sort_order(db, ctx) -> None:
    gallery = add_gallery(db)
    first = add_photo(db, gallery, "file-a", sort_order=0)
    second = add_photo(db, gallery, "file-b", sort_order=1)
    photos.set_sort_order(db, ctx, USER_ID, first.id, 5)
    assert [p["id"] for p in photos.get_gallery_photos(db, ctx, gallery.id)] == [second.id, first.id]


def test_edits_on_someone_elses_photo_are_not_found(db, ctx) -> None:
    photo = add_photo(db, add_gallery(db, user_id=OTHER_USER_ID))
    with pytest.raises(NotFoundError):
        photos.set_visibility(db, ctx, USER_ID, photo.id, True)


def test_deleted_photo_cannot_be_edited(db, ctx) -> None:
    photo = add_photo(db, add_gallery(db))
    photos.delete_photo(db, ctx, USER_ID, photo.id)
    with pytest.raises(NotFoundError):
        photos.update_tags(db, ctx, USER_ID, photo.id, ["late"])


def test_file_url_prefers_cache_then_stored_url(db, ctx, drive) -> None:
    photo = add_photo(db, add_gallery(db), "file-a", url="https://files.example/stored")
    assert photos.get_file_url(db, ctx, USER_ID, photo.id) == "https://files.example/stored"
    ctx.cache.cache_file_url("file-a", "https://files.example/cached")
    assert photos.get_file_url(db, ctx, USER_ID, photo.id) == "https://files.example/cached"
    assert drive.calls["get_file_url"] == 0


def test_file_url_is_fetched_from_provider_when_missing(db, ctx, drive, drive_connection) -> None:
    photo = add_photo(db, add_gallery(db), "file-a", url=None)
    url = photos.get_file_url(db, ctx, USER_ID, photo.id)
    assert url == "https://files.example/fresh/file-a"
    assert db.get(Photo, photo.id).url == url
    assert ctx.cache.get_file_url("file-a") == url
