"""Tests for TokenVault: storage, refresh margin, rejected refreshes, reconnects."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from gallery_storage.config import TOKEN_REFRESH_MARGIN_SECONDS
from gallery_storage.crypto import decrypt
from gallery_storage.errors import (
    AuthenticationError,
    TokenExpiredError,
    TransientNetworkError,
)
from gallery_storage.models import (
    CONNECTION_ACTIVE,
    CONNECTION_DISCONNECTED,
    CONNECTION_ERROR,
    StorageConnection,
)
from tests.fakes import USER_ID, audit_count, connect


def _connection(db) -> StorageConnection:
    db.expire_all()
    return db.scalar(select(StorageConnection).where(StorageConnection.user_id == USER_ID))


def test_tokens_are_encrypted_at_rest(db, ctx) -> None:
    connect(db, ctx, USER_ID, "google-drive")
    conn = _connection(db)
    assert conn.access_token != "access-google-drive"
    assert decrypt(conn.access_token) == "access-google-drive"
    assert decrypt(conn.refresh_token) == "refresh-token"


@pytest.mark.parametrize("minutes", [6, 30, 60 * 24])
def test_tokens_outside_margin_are_not_refreshed(db, ctx, drive, minutes) -> None:
    assert minutes * 60 > TOKEN_REFRESH_MARGIN_SECONDS
    connect(db, ctx, USER_ID, "google-drive", expires_in=timedelta(minutes=minutes))
    assert ctx.token_vault.get_valid_token(db, USER_ID, "google-drive") == "access-google-drive"
    assert drive.calls["refresh_access_token"] == 0


@pytest.mark.parametrize("expires_in", [timedelta(minutes=4), timedelta(seconds=1), timedelta(minutes=-10)])
def test_tokens_inside_margin_or_expired_are_refreshed(db, ctx, drive, session_factory, expires_in) -> None:
    connect(db, ctx, USER_ID, "google-drive", expires_in=expires_in)
    token = ctx.token_vault.get_valid_token(db, USER_ID, "google-drive")
    assert token == "fresh-token-1"
    conn = _connection(db)
    assert decrypt(conn.access_token) == "fresh-token-1"
    # The provider issued no new refresh token, so the old one is kept
    assert decrypt(conn.refresh_token) == "refresh-token"
    assert audit_count(session_factory, "storage_refreshed") == 1


def test_rejected_refresh_with_expired_token_disconnects(db, ctx, drive, fake_redis) -> None:
    drive.refresh_error = AuthenticationError("invalid_grant", provider="google-drive")
    connect(db, ctx, USER_ID, "google-drive", expires_in=timedelta(minutes=-1))
    fake_redis.set(f"user:providers:{USER_ID}", "[]")

    with pytest.raises(TokenExpiredError):
        ctx.token_vault.get_valid_token(db, USER_ID, "google-drive")

    conn = _connection(db)
    assert conn.status == CONNECTION_DISCONNECTED
    assert "invalid_grant" in conn.last_error
    assert fake_redis.get(f"user:providers:{USER_ID}") is None


def test_rejected_refresh_keeps_still_valid_token(db, ctx, drive) -> None:
    drive.refresh_error = AuthenticationError("invalid_grant", provider="google-drive")
    connect(db, ctx, USER_ID, "google-drive", expires_in=timedelta(minutes=2))
    assert ctx.token_vault.get_valid_token(db, USER_ID, "google-drive") == "access-google-drive"
    assert _connection(db).status == CONNECTION_ACTIVE


def test_transient_refresh_failure_records_error_but_stays_connected(db, ctx, drive) -> None:
    drive.refresh_error = TransientNetworkError("timeout", provider="google-drive")
    connect(db, ctx, USER_ID, "google-drive", expires_in=timedelta(minutes=-1))
    with pytest.raises(TransientNetworkError):
        ctx.token_vault.get_valid_token(db, USER_ID, "google-drive")
    conn = _connection(db)
    assert conn.status == CONNECTION_ACTIVE
    assert conn.last_error.startswith("TransientNetworkError")


def test_expired_token_without_refresh_token_disconnects(db, ctx) -> None:
    connect(db, ctx, USER_ID, "dropbox", expires_in=timedelta(minutes=-1), refresh_token=None)
    with pytest.raises(TokenExpiredError):
        ctx.token_vault.get_valid_token(db, USER_ID, "dropbox")
    assert _connection(db).status == CONNECTION_DISCONNECTED


def test_unreadable_tokens_mark_connection_error(db, ctx) -> None:
    connect(db, ctx, USER_ID, "google-drive")
    conn = _connection(db)
    conn.access_token = "not-a-fernet-token"
    db.commit()
    with pytest.raises(AuthenticationError):
        ctx.token_vault.get_decrypted_tokens(db, USER_ID, "google-drive")
    assert _connection(db).status == CONNECTION_ERROR


def test_disconnected_connection_cannot_be_used(db, ctx) -> None:
    connect(db, ctx, USER_ID, "google-drive")
    ctx.token_vault.invalidate_connection(db, USER_ID, "google-drive", "Disconnected by user")
    with pytest.raises(AuthenticationError):
        ctx.token_vault.get_valid_token(db, USER_ID, "google-drive")


def test_reconnect_replaces_tokens_and_reactivates(db, ctx, session_factory) -> None:
    connect(db, ctx, USER_ID, "google-drive")
    ctx.token_vault.invalidate_connection(db, USER_ID, "google-drive", "Disconnected by user")
    connect(db, ctx, USER_ID, "google-drive", refresh_token=None)

    rows = list(db.scalars(select(StorageConnection)))
    assert len(rows) == 1
    conn = _connection(db)
    assert conn.status == CONNECTION_ACTIVE
    assert conn.last_error is None
    assert decrypt(conn.refresh_token) == "refresh-token"
    assert audit_count(session_factory, "storage_connected") == 2
    assert audit_count(session_factory, "storage_disconnected") == 1


def test_with_provider_does_not_retry_twice(db, ctx, drive, drive_connection) -> None:
    """A second rejection after the forced refresh propagates."""
    calls = []

    def always_rejected(adapter):
        calls.append(adapter.access_token)
        raise AuthenticationError("401", provider="google-drive")

    with pytest.raises(AuthenticationError):
        ctx.token_vault.with_provider(db, USER_ID, "google-drive", always_rejected)
    assert calls == ["access-google-drive", "fresh-token-1"]
