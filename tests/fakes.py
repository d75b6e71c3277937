"""In-memory stand-ins for Redis and a storage provider, plus row builders for tests."""
import json
from collections import Counter
from datetime import UTC, datetime, timedelta

import redis
import requests
from sqlalchemy import func, select

from gallery_storage.errors import ConflictError, NotFoundError, TransientNetworkError
from gallery_storage.models import AuditLog, Gallery, Photo, utcnow
from gallery_storage.providers import (
    ChangeList,
    FileMetadata,
    Folder,
    StorageProvider,
    TokenResponse,
    UploadSession,
)
from gallery_storage.retry import RetryPolicy

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0, multiplier=1)

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class FakeRedis:
    """The subset of redis.Redis (decode_responses=True) the services use."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.down = False
        self.pipelines: list["FakePipeline"] = []

    def _check(self):
        if self.down:
            raise redis.ConnectionError("redis is down")

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.data[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    def incr(self, key):
        self._check()
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = str(value)
        return value

    def expire(self, key, seconds):
        self._check()
        if key not in self.data:
            return False
        self.ttls[key] = seconds
        return True

    def pipeline(self, transaction=True):
        pipe = FakePipeline(self)
        self.pipelines.append(pipe)
        return pipe


class FakePipeline:
    """Queues commands and runs them against the FakeRedis on execute()."""

    def __init__(self, redis_client):
        self.redis = redis_client
        self.commands = []
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.commands = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.commands.append((name, args, kwargs))
            return self

        return queue

    def execute(self):
        self.redis._check()
        commands, self.commands = self.commands, []
        self.executed.append([name for name, _, _ in commands])
        return [getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in commands]


class FakeProvider(StorageProvider):
    """
    Provider double. Folders and files live in dicts; every public call is
    counted in self.calls. Resumable sessions keep the bytes they have
    acknowledged so tests can check nothing is sent twice.
    """

    def __init__(self, access_token=None, *, name="google-drive", chunk_size=4):
        super().__init__(access_token, retry_policy=NO_WAIT)
        self.name = name
        self.chunk_size = chunk_size
        self.calls: Counter = Counter()
        self.folders: dict[str, Folder] = {}
        self.files: dict[str, FileMetadata] = {}
        self.contents: dict[str, bytes] = {}
        self.tokens_used: list[str | None] = []
        self._seq = 0

        # Behaviour knobs
        self.on_create_folder = None
        self.refresh_error: Exception | None = None
        self.upload_errors: list[Exception] = []
        self.refresh_expires_in = timedelta(hours=1)
        # chunk offset -> "before" (fail, nothing stored) or "after" (store, then fail)
        self.chunk_failures: dict[int, str] = {}
        self.sessions: dict[str, bytearray] = {}
        self.stored_chunks: list[tuple[int, int]] = []
        # continuation token -> ChangeList (None key is the full listing)
        self.feed: dict[str | None, ChangeList] = {}
        self.poll_tokens: list[str | None] = []

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}-{self._seq}"

    # --- Folders ---

    def create_folder(self, name, parent_id=None):
        self.calls["create_folder"] += 1
        folder = Folder(id=self._next_id("folder"), name=name, parent_id=parent_id)
        self.folders[folder.id] = folder
        if self.on_create_folder is not None:
            hook, self.on_create_folder = self.on_create_folder, None
            hook(folder)
        return folder

    def get_folder(self, folder_id):
        self.calls["get_folder"] += 1
        if folder_id not in self.folders:
            raise NotFoundError(folder_id, provider=self.name)
        return self.folders[folder_id]

    def list_folders(self, parent_id):
        self.calls["list_folders"] += 1
        return [f for f in self.folders.values() if f.parent_id == parent_id]

    # --- Files ---

    def _store(self, data: bytes, name: str, mime_type: str) -> FileMetadata:
        meta = FileMetadata(
            id=self._next_id("file"),
            name=name,
            mime_type=mime_type,
            size=len(data),
            url=f"https://files.example/{self._seq}",
        )
        self.files[meta.id] = meta
        self.contents[meta.id] = bytes(data)
        return meta

    def upload_file(self, data, name, mime_type, folder_id):
        self.calls["upload_file"] += 1
        self.tokens_used.append(self.access_token)
        if self.upload_errors:
            raise self.upload_errors.pop(0)
        return self._store(data, name, mime_type)

    def get_file(self, file_id):
        self.calls["get_file"] += 1
        if file_id not in self.files:
            raise NotFoundError(file_id, provider=self.name)
        return self.files[file_id]

    def delete_file(self, file_id):
        self.calls["delete_file"] += 1
        self.files.pop(file_id, None)
        self.folders.pop(file_id, None)

    def get_file_url(self, file_id):
        self.calls["get_file_url"] += 1
        return f"https://files.example/fresh/{file_id}"

    # --- Tokens and changes ---

    def refresh_access_token(self, refresh_token):
        self.calls["refresh_access_token"] += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenResponse(
            access_token=f"fresh-token-{self.calls['refresh_access_token']}",
            expires_at=datetime.now(UTC) + self.refresh_expires_in,
        )

    def poll_changes(self, continuation_token=None):
        self.calls["poll_changes"] += 1
        self.poll_tokens.append(continuation_token)
        if continuation_token not in self.feed:
            if continuation_token is None:
                return ChangeList(changes=[], next_token="token-0")
            raise NotFoundError("unknown token", provider=self.name)
        return self.feed[continuation_token]

    # --- Resumable primitives ---

    def _start_session(self, name, mime_type, size, folder_id):
        self.calls["start_session"] += 1
        self.tokens_used.append(self.access_token)
        session_id = self._next_id("session")
        self.sessions[session_id] = bytearray()
        return UploadSession(session_id=session_id, total_size=size, name=name, mime_type=mime_type, folder_id=folder_id)

    def _send_chunk(self, session, data, offset):
        self.calls["send_chunk"] += 1
        buffer = self.sessions[session.session_id]
        if offset != len(buffer):
            raise ConflictError(f"expected offset {len(buffer)}, got {offset}")
        mode = self.chunk_failures.pop(offset, None)
        if mode == "before":
            raise TransientNetworkError("connection reset", provider=self.name)
        buffer.extend(data)
        self.stored_chunks.append((offset, len(data)))
        if mode == "after":
            raise TransientNetworkError("read timeout", provider=self.name)
        return len(buffer)

    def _query_offset(self, session):
        self.calls["query_offset"] += 1
        return len(self.sessions[session.session_id])

    def _finish_session(self, session):
        self.calls["finish_session"] += 1
        data = bytes(self.sessions.pop(session.session_id))
        return self._store(data, session.name, session.mime_type)


class ProviderFactory:
    """provider_factory for TokenVault that hands out one shared FakeProvider per name."""

    def __init__(self, *providers: FakeProvider):
        self.providers = {p.name: p for p in providers}

    def __call__(self, name, access_token=None):
        provider = self.providers[name]
        provider.access_token = access_token
        return provider


# --- Row builders ---


def connect(db, ctx, user_id, provider, expires_in=timedelta(hours=1), refresh_token="refresh-token"):
    """Store a connection through the token vault, as the OAuth callback would."""
    tokens = TokenResponse(
        access_token=f"access-{provider}",
        refresh_token=refresh_token,
        expires_at=datetime.now(UTC) + expires_in,
    )
    return ctx.token_vault.store_connection(db, user_id, provider, tokens)


def add_gallery(db, user_id=USER_ID, name="Holiday", parent_id=None) -> Gallery:
    gallery = Gallery(user_id=user_id, name=name, parent_id=parent_id)
    db.add(gallery)
    db.commit()
    db.refresh(gallery)
    return gallery


def add_photo(db, gallery, file_id="file-a", provider="google-drive", **values) -> Photo:
    values.setdefault("name", f"{file_id}.jpg")
    values.setdefault("mime_type", "image/jpeg")
    values.setdefault("file_size", 10)
    values.setdefault("url", f"https://files.example/{file_id}")
    values.setdefault("tags", [])
    values.setdefault("created_at", utcnow())
    photo = Photo(gallery_id=gallery.id, provider=provider, provider_file_id=file_id, **values)
    db.add(photo)
    db.commit()
    db.refresh(photo)
    return photo


def audit_count(session_factory, action) -> int:
    with session_factory() as db:
        return db.scalar(select(func.count()).select_from(AuditLog).where(AuditLog.action == action))


def http_response(status, body=None, headers=None) -> requests.Response:
    """A requests.Response as an adapter would receive it."""
    resp = requests.Response()
    resp.status_code = status
    resp.encoding = "utf-8"
    if isinstance(body, (dict, list)):
        resp._content = json.dumps(body).encode()
        resp.headers["Content-Type"] = "application/json"
    else:
        resp._content = (body or "").encode()
    resp.headers.update(headers or {})
    return resp


class DropboxStub:
    """Side effect for requests.request: dispatches by Dropbox endpoint, records (endpoint, payload)."""

    def __init__(self, handlers):
        self.handlers = handlers
        self.calls = []

    def __call__(self, method, url, headers=None, **kwargs):
        endpoint = url.split("/2/", 1)[1]
        if "json" in kwargs:
            payload = kwargs["json"]
        else:
            payload = json.loads(headers["Dropbox-API-Arg"])
        self.calls.append((endpoint, payload))
        return self.handlers[endpoint](payload)
