"""Pytest configuration and fixtures for gallery_storage.

Environment is set before anything from gallery_storage is imported, since
config validates secrets at import time. Every test gets a fresh in-memory
SQLite database, a fake Redis and one fake provider per back-end.
"""

import base64
import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", base64.urlsafe_b64encode(b"k" * 32).decode())
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SKIP_DB_INIT", "true")
os.environ.setdefault("SYNC_ENABLED", "false")
os.environ.setdefault("RETRY_INITIAL_DELAY", "0")
os.environ.setdefault("RETRY_MAX_DELAY", "0")

from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from gallery_storage import models  # noqa: E402,F401
from gallery_storage.config import JWT_COOKIE_NAME  # noqa: E402
from gallery_storage.database import Base, get_db  # noqa: E402
from gallery_storage.deps import get_context, get_sync_engine  # noqa: E402
from gallery_storage.security import create_jwt  # noqa: E402
from gallery_storage.services.context import build_context  # noqa: E402
from gallery_storage.services.sync_engine import SyncEngine  # noqa: E402
from tests.fakes import FakeProvider, FakeRedis, ProviderFactory, USER_ID, connect  # noqa: E402


@pytest.fixture
def engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def drive() -> FakeProvider:
    return FakeProvider(name="google-drive")


@pytest.fixture
def dropbox() -> FakeProvider:
    return FakeProvider(name="dropbox")


@pytest.fixture
def ctx(fake_redis, session_factory, drive, dropbox):
    """Service wiring around the fakes; adapters come from the shared fake providers."""
    return build_context(fake_redis, session_factory, provider_factory=ProviderFactory(drive, dropbox))


@pytest.fixture
def sync_engine(ctx) -> SyncEngine:
    return SyncEngine(ctx)


@pytest.fixture
def drive_connection(db, ctx):
    """USER_ID connected to google-drive with a token valid for an hour."""
    return connect(db, ctx, USER_ID, "google-drive", expires_in=timedelta(hours=1))


@pytest.fixture
def client(session_factory, ctx, sync_engine) -> TestClient:
    """TestClient with DB and service overrides and a session cookie for USER_ID."""
    from gallery_storage.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_context] = lambda: ctx
    app.dependency_overrides[get_sync_engine] = lambda: sync_engine
    test_client = TestClient(app)
    test_client.cookies.set(JWT_COOKIE_NAME, create_jwt(USER_ID))
    yield test_client
    app.dependency_overrides.clear()
