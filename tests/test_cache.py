"""Tests for CacheLayer and cache invalidation by photo edits."""

import redis
from sqlalchemy import update

from gallery_storage.models import Photo
from gallery_storage.services import photos
from gallery_storage.services.cache import CacheLayer, gallery_photos_key
from tests.fakes import USER_ID, FakeRedis, add_gallery, add_photo


def test_listing_entries_carry_their_version_with_ttl() -> None:
    fake = FakeRedis()
    cache = CacheLayer(fake)
    assert cache.cache_gallery_photos(7, [{"id": 1}], "1:2026-03-01T12:00:00", ttl=60)
    assert cache.get_gallery_photos(7, "1:2026-03-01T12:00:00") == [{"id": 1}]
    assert cache.get_gallery_photos(7, "2:2026-03-01T12:05:00") is None
    assert fake.ttls[gallery_photos_key(7)] == 60


def test_undecodable_entry_is_a_miss() -> None:
    fake = FakeRedis()
    fake.set("file:url:x", "{not json")
    assert CacheLayer(fake).get_file_url("x") is None


def test_get_or_load_only_loads_on_miss() -> None:
    cache = CacheLayer(FakeRedis())
    loads = []

    def loader():
        loads.append(1)
        return ["a"]

    assert cache.get_or_load("k", loader, 60) == ["a"]
    assert cache.get_or_load("k", loader, 60) == ["a"]
    assert len(loads) == 1


def test_redis_down_degrades_to_loader() -> None:
    fake = FakeRedis()
    fake.down = True
    cache = CacheLayer(fake)
    assert cache.get_or_load("k", lambda: [1, 2], 60) == [1, 2]
    assert cache.set("k", 1, 60) is False
    assert cache.delete("k") is False


def test_listing_is_served_from_cache_until_photos_change(db, ctx, fake_redis) -> None:
    gallery = add_gallery(db)
    photo = add_photo(db, gallery, "file-a", tags=["old"])
    assert photos.get_gallery_photos(db, ctx, gallery.id)[0]["tags"] == ["old"]
    cached = fake_redis.get(gallery_photos_key(gallery.id))
    assert photos.get_gallery_photos(db, ctx, gallery.id)[0]["tags"] == ["old"]
    assert fake_redis.get(gallery_photos_key(gallery.id)) == cached

    # A write that bypasses the service still moves the listing version
    photo.name = "renamed-behind-the-cache.jpg"
    db.commit()
    assert photos.get_gallery_photos(db, ctx, gallery.id)[0]["name"] == "renamed-behind-the-cache.jpg"

    photos.update_tags(db, ctx, USER_ID, photo.id, ["new"])
    listing = photos.get_gallery_photos(db, ctx, gallery.id)
    assert listing[0]["tags"] == ["new"]


def test_lost_invalidation_does_not_serve_stale_listing(db, ctx, fake_redis, monkeypatch) -> None:
    gallery = add_gallery(db)
    photo = add_photo(db, gallery, "file-a", tags=["old"])
    assert photos.get_gallery_photos(db, ctx, gallery.id)[0]["tags"] == ["old"]

    def refuse_delete(*keys):
        raise redis.TimeoutError("Timeout reading from socket")

    monkeypatch.setattr(fake_redis, "delete", refuse_delete)
    photos.update_tags(db, ctx, USER_ID, photo.id, ["new"])
    # The old entry survived the edit but is no longer served
    assert fake_redis.get(gallery_photos_key(gallery.id)) is not None
    assert photos.get_gallery_photos(db, ctx, gallery.id)[0]["tags"] == ["new"]


def test_sync_style_update_invalidates_by_version(db, ctx) -> None:
    gallery = add_gallery(db)
    photo = add_photo(db, gallery, "file-a")
    assert photos.get_gallery_photos(db, ctx, gallery.id)[0]["name"] == "file-a.jpg"
    db.execute(update(Photo).where(Photo.id == photo.id).values(name="remote-name.jpg"))
    db.commit()
    assert photos.get_gallery_photos(db, ctx, gallery.id)[0]["name"] == "remote-name.jpg"


def test_visibility_and_delete_drop_photos_from_listing(db, ctx) -> None:
    gallery = add_gallery(db)
    shown = add_photo(db, gallery, "file-a")
    hidden = add_photo(db, gallery, "file-b")
    assert len(photos.get_gallery_photos(db, ctx, gallery.id)) == 2

    photos.set_visibility(db, ctx, USER_ID, hidden.id, True)
    assert [p["id"] for p in photos.get_gallery_photos(db, ctx, gallery.id)] == [shown.id]

    photos.delete_photo(db, ctx, USER_ID, shown.id)
    assert photos.get_gallery_photos(db, ctx, gallery.id) == []


def test_listing_works_with_redis_down(db, ctx, fake_redis) -> None:
    gallery = add_gallery(db)
    add_photo(db, gallery, "file-a")
    fake_redis.down = True
    assert len(photos.get_gallery_photos(db, ctx, gallery.id)) == 1
