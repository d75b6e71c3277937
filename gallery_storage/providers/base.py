"""
Provider capability contract and shared HTTP plumbing.

Every back-end implements StorageProvider; orchestration code only ever sees
this type. Raw HTTP/transport failures are normalised into the
gallery_storage.errors taxonomy by provider_request before they leave an
adapter. Resumable uploads are a template method here: adapters supply the
session primitives and the base class owns chunking, retry and resume.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Literal

import requests

from gallery_storage.config import PROVIDER_REQUEST_TIMEOUT, UPLOAD_CHUNK_SIZE_BYTES
from gallery_storage.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    StorageError,
    TransientNetworkError,
    ValidationError,
)
from gallery_storage.retry import DEFAULT_RETRY_POLICY, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

ChangeType = Literal["created", "modified", "deleted", "renamed", "moved"]

# Substrings in a 403/409 body that mean "slow down" rather than "forbidden"
RATE_LIMIT_MARKERS = (
    "rateLimitExceeded",
    "userRateLimitExceeded",
    "too_many_requests",
    "too_many_write_operations",
)


@dataclass
class Folder:
    id: str
    name: str
    parent_id: str | None = None


@dataclass
class FileMetadata:
    """Canonical file description returned by every adapter."""
    id: str
    name: str
    mime_type: str
    size: int
    url: str
    thumbnail_url: str | None = None
    # Provider path, for back-ends whose delete events carry no id
    path: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TokenResponse:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass
class Change:
    file_id: str
    type: ChangeType
    name: str | None = None
    parent_id: str | None = None
    path: str | None = None
    is_folder: bool = False
    file: FileMetadata | None = None
    new_name: str | None = None
    new_parent_id: str | None = None


@dataclass
class ChangeList:
    changes: list[Change]
    next_token: str | None
    has_more: bool = False


@dataclass
class UploadSession:
    session_id: str
    total_size: int
    name: str
    mime_type: str
    folder_id: str
    acknowledged: int = 0
    # Provider response for the committed file, when the last chunk returns it
    result: dict | None = None
    extra: dict[str, Any] = field(default_factory=dict)


def parse_retry_after(resp: requests.Response) -> int | None:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(0, int(float(raw)))
    except ValueError:
        return None


def error_from_response(resp: requests.Response, provider: str) -> StorageError:
    """Map an HTTP error response onto the shared taxonomy."""
    status = resp.status_code
    body = resp.text or ""
    detail = f"{provider} returned HTTP {status}"
    if status == 429 or (status in (403, 409) and any(m in body for m in RATE_LIMIT_MARKERS)):
        return RateLimitedError(detail, provider=provider, retry_after=parse_retry_after(resp))
    if status in (401, 403):
        return AuthenticationError(detail, provider=provider)
    if status == 404 or (status == 409 and "not_found" in body):
        return NotFoundError(detail, provider=provider)
    if status == 409:
        return ConflictError(f"{detail}: {body[:200]}", provider=provider)
    if status == 408 or status >= 500:
        return TransientNetworkError(detail, provider=provider)
    return ValidationError(detail, provider=provider)


def provider_request(
    method: str,
    url: str,
    access_token: str | None,
    provider: str,
    *,
    ok_statuses: tuple[int, ...] = (),
    **kwargs: Any,
) -> requests.Response:
    """
    Call a provider API with timeout and bearer auth. Statuses >= 400 that are
    not in ok_statuses raise a normalised StorageError.
    """
    headers = {}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    if "headers" in kwargs:
        headers.update(kwargs.pop("headers"))
    kwargs.setdefault("timeout", PROVIDER_REQUEST_TIMEOUT)
    try:
        resp = requests.request(method, url, headers=headers, **kwargs)
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise TransientNetworkError(f"{provider} unreachable: {type(e).__name__}", provider=provider) from e
    if resp.status_code >= 400 and resp.status_code not in ok_statuses:
        raise error_from_response(resp, provider)
    return resp


def exchange_token(url: str, data: dict, provider: str) -> dict:
    """
    POST to an OAuth token endpoint. invalid_grant and friends come back as
    400/401 and mean the user has to reconnect.
    """
    resp = provider_request(
        "POST",
        url,
        None,
        provider,
        data=data,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        ok_statuses=(400, 401),
    )
    payload = resp.json() if resp.content else {}
    if resp.status_code in (400, 401) or "error" in payload:
        raise AuthenticationError(
            f"{provider} token endpoint rejected the grant: {payload.get('error', resp.status_code)}",
            provider=provider,
        )
    if not payload.get("access_token"):
        raise AuthenticationError(f"{provider} token endpoint returned no access_token", provider=provider)
    return payload


@dataclass
class _PendingChunk:
    """Bytes read from the stream but not yet acknowledged, starting at offset."""
    offset: int
    data: bytes

    def advance_to(self, acknowledged: int) -> None:
        skip = acknowledged - self.offset
        if skip < 0 or skip > len(self.data):
            raise ConflictError(
                f"Provider acknowledged byte {acknowledged}, outside pending range "
                f"{self.offset}-{self.offset + len(self.data)}"
            )
        self.offset = acknowledged
        self.data = self.data[skip:]


class StorageProvider(ABC):
    """Capability contract shared by every storage back-end."""

    name: str = ""
    chunk_size: int = UPLOAD_CHUNK_SIZE_BYTES

    def __init__(self, access_token: str | None = None, *, retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY):
        self.access_token = access_token
        self.retry_policy = retry_policy

    def _retry(self, fn):
        return with_retry(fn, self.retry_policy)

    # --- Folders ---

    @abstractmethod
    def create_folder(self, name: str, parent_id: str | None = None) -> Folder: ...

    @abstractmethod
    def get_folder(self, folder_id: str) -> Folder: ...

    @abstractmethod
    def list_folders(self, parent_id: str) -> list[Folder]: ...

    # --- Files ---

    @abstractmethod
    def upload_file(self, data: bytes, name: str, mime_type: str, folder_id: str) -> FileMetadata:
        """Single-request upload, for payloads below the resumable threshold."""

    @abstractmethod
    def get_file(self, file_id: str) -> FileMetadata: ...

    @abstractmethod
    def delete_file(self, file_id: str) -> None: ...

    @abstractmethod
    def get_file_url(self, file_id: str) -> str: ...

    # --- Tokens and change feed ---

    @abstractmethod
    def refresh_access_token(self, refresh_token: str) -> TokenResponse: ...

    @abstractmethod
    def poll_changes(self, continuation_token: str | None = None) -> ChangeList:
        """
        Changes since continuation_token. Without a token, return the current
        state as `created` events plus a token positioned at "now".
        """

    # --- Resumable upload primitives ---

    @abstractmethod
    def _start_session(self, name: str, mime_type: str, size: int, folder_id: str) -> UploadSession: ...

    @abstractmethod
    def _send_chunk(self, session: UploadSession, data: bytes, offset: int) -> int:
        """Send data starting at offset; return the provider-acknowledged byte count."""

    @abstractmethod
    def _query_offset(self, session: UploadSession) -> int:
        """Ask the provider how many bytes of the session it has committed."""

    @abstractmethod
    def _finish_session(self, session: UploadSession) -> FileMetadata: ...

    def upload_file_resumable(
        self,
        stream: BinaryIO,
        name: str,
        mime_type: str,
        size: int,
        folder_id: str,
    ) -> FileMetadata:
        """
        Chunked upload that survives partial failures. After a failed chunk the
        acknowledged offset is re-read from the provider and only the bytes past
        it are sent again; acknowledged chunks are never re-sent.
        """
        if size <= 0:
            raise ValidationError("Resumable upload needs a positive size")
        session = self._retry(lambda: self._start_session(name, mime_type, size, folder_id))

        pending = _PendingChunk(offset=0, data=b"")
        while session.acknowledged < size:
            want = min(self.chunk_size, size - pending.offset)
            while len(pending.data) < want:
                more = stream.read(want - len(pending.data))
                if not more:
                    raise ValidationError(
                        f"Upload stream ended at byte {pending.offset + len(pending.data)} of {size}"
                    )
                pending.data += more

            def send() -> int:
                if not pending.data:
                    return pending.offset
                return self._send_chunk(session, pending.data, pending.offset)

            def resync(exc: Exception, attempt: int) -> None:
                acknowledged = self._query_offset(session)
                logger.info(
                    "Resuming %s upload %s at byte %d (attempt %d)",
                    self.name,
                    name,
                    acknowledged,
                    attempt,
                )
                pending.advance_to(acknowledged)

            acknowledged = with_retry(send, self.retry_policy, on_retry=resync)
            if acknowledged <= session.acknowledged and pending.data:
                raise TransientNetworkError(
                    f"{self.name} made no progress at byte {acknowledged}", provider=self.name
                )
            pending.advance_to(acknowledged)
            session.acknowledged = acknowledged

        return self._retry(lambda: self._finish_session(session))
