"""
Google Drive v3 adapter over plain REST (requests).

Folders and files are addressed by Drive file id. Direct uploads use a
multipart/related request; resumable uploads use Drive's session protocol
(uploadType=resumable, Content-Range chunks, 308 + Range for progress).
"""
import json
import secrets
from datetime import UTC, datetime, timedelta

from gallery_storage.config import (
    GOOGLE_DRIVE_CLIENT_ID,
    GOOGLE_DRIVE_CLIENT_SECRET,
    PROVIDER_UPLOAD_TIMEOUT,
)
from gallery_storage.errors import NotFoundError, TransientNetworkError, ValidationError
from gallery_storage.providers.base import (
    Change,
    ChangeList,
    FileMetadata,
    Folder,
    StorageProvider,
    TokenResponse,
    UploadSession,
    exchange_token,
    provider_request,
)

API_URL = "https://www.googleapis.com/drive/v3"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
TOKEN_URL = "https://oauth2.googleapis.com/token"

FOLDER_MIME = "application/vnd.google-apps.folder"
FILE_FIELDS = "id, name, mimeType, size, parents, webViewLink, webContentLink, thumbnailLink, trashed"


def _parse_range(header: str | None) -> int:
    """'bytes=0-524287' -> 524288 bytes received; no header means nothing received."""
    if not header:
        return 0
    try:
        return int(header.rsplit("-", 1)[1]) + 1
    except (IndexError, ValueError):
        raise TransientNetworkError(f"Unparseable Range header from google-drive: {header!r}")


class GoogleDriveProvider(StorageProvider):
    name = "google-drive"

    def _request(self, method: str, url: str, **kwargs):
        return provider_request(method, url, self.access_token, self.name, **kwargs)

    def _to_file(self, data: dict, fallback_mime: str = "") -> FileMetadata:
        if not data.get("id") or not data.get("name"):
            raise TransientNetworkError("Drive response missing id or name", provider=self.name)
        return FileMetadata(
            id=data["id"],
            name=data["name"],
            mime_type=data.get("mimeType") or fallback_mime,
            size=int(data.get("size") or 0),
            url=data.get("webContentLink") or data.get("webViewLink") or "",
            thumbnail_url=data.get("thumbnailLink"),
        )

    @staticmethod
    def _to_folder(data: dict) -> Folder:
        parents = data.get("parents") or []
        return Folder(id=data["id"], name=data.get("name", ""), parent_id=parents[0] if parents else None)

    # --- Folders ---

    def create_folder(self, name: str, parent_id: str | None = None) -> Folder:
        body = {"name": name, "mimeType": FOLDER_MIME}
        if parent_id:
            body["parents"] = [parent_id]

        def call():
            resp = self._request(
                "POST", f"{API_URL}/files", json=body, params={"fields": "id, name, parents"}
            )
            return self._to_folder(resp.json())

        return self._retry(call)

    def get_folder(self, folder_id: str) -> Folder:
        def call():
            resp = self._request(
                "GET",
                f"{API_URL}/files/{folder_id}",
                params={"fields": "id, name, mimeType, parents, trashed"},
            )
            data = resp.json()
            if data.get("mimeType") != FOLDER_MIME or data.get("trashed"):
                raise NotFoundError(f"{folder_id} is not a folder", provider=self.name)
            return self._to_folder(data)

        return self._retry(call)

    def list_folders(self, parent_id: str) -> list[Folder]:
        params = {
            "q": f"'{parent_id}' in parents and mimeType = '{FOLDER_MIME}' and trashed = false",
            "fields": "nextPageToken, files(id, name, parents)",
        }
        return [self._to_folder(f) for f in self._list_all(params)]

    def _list_all(self, params: dict) -> list[dict]:
        """Follow nextPageToken until the listing is exhausted."""
        files: list[dict] = []
        page_token = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            resp = self._retry(lambda: self._request("GET", f"{API_URL}/files", params=page_params))
            page = resp.json()
            files.extend(page.get("files", []))
            page_token = page.get("nextPageToken")
            if not page_token:
                return files

    # --- Files ---

    def upload_file(self, data: bytes, name: str, mime_type: str, folder_id: str) -> FileMetadata:
        boundary = f"gallery-storage-{secrets.token_hex(12)}"
        metadata = json.dumps({"name": name, "parents": [folder_id]})
        body = b"".join([
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode(),
            metadata.encode(),
            f"\r\n--{boundary}\r\nContent-Type: {mime_type}\r\n\r\n".encode(),
            data,
            f"\r\n--{boundary}--\r\n".encode(),
        ])

        def call():
            resp = self._request(
                "POST",
                UPLOAD_URL,
                params={"uploadType": "multipart", "fields": FILE_FIELDS},
                data=body,
                headers={"Content-Type": f"multipart/related; boundary={boundary}"},
                timeout=PROVIDER_UPLOAD_TIMEOUT,
            )
            return self._to_file(resp.json(), mime_type)

        return self._retry(call)

    def get_file(self, file_id: str) -> FileMetadata:
        def call():
            resp = self._request("GET", f"{API_URL}/files/{file_id}", params={"fields": FILE_FIELDS})
            return self._to_file(resp.json())

        return self._retry(call)

    def delete_file(self, file_id: str) -> None:
        self._retry(lambda: self._request("DELETE", f"{API_URL}/files/{file_id}"))

    def get_file_url(self, file_id: str) -> str:
        def call():
            resp = self._request(
                "GET",
                f"{API_URL}/files/{file_id}",
                params={"fields": "webContentLink, webViewLink"},
            )
            data = resp.json()
            return data.get("webContentLink") or data.get("webViewLink") or ""

        return self._retry(call)

    # --- Tokens ---

    def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        data = self._retry(lambda: exchange_token(
            TOKEN_URL,
            {
                "client_id": GOOGLE_DRIVE_CLIENT_ID,
                "client_secret": GOOGLE_DRIVE_CLIENT_SECRET,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            self.name,
        ))
        return TokenResponse(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.now(UTC) + timedelta(seconds=int(data.get("expires_in", 3600))),
        )

    # --- Change feed ---

    def poll_changes(self, continuation_token: str | None = None) -> ChangeList:
        if continuation_token is None:
            return self._full_listing()

        params = {
            "pageToken": continuation_token,
            "pageSize": 1000,
            "fields": f"nextPageToken, newStartPageToken, changes(fileId, removed, file({FILE_FIELDS}))",
        }
        try:
            resp = self._retry(lambda: self._request("GET", f"{API_URL}/changes", params=params))
        except ValidationError as e:
            raise NotFoundError("Drive rejected the change token", provider=self.name) from e
        data = resp.json()

        changes = []
        for item in data.get("changes", []):
            f = item.get("file") or {}
            file_id = item.get("fileId") or f.get("id")
            if not file_id:
                continue
            if item.get("removed") or f.get("trashed"):
                changes.append(Change(file_id=file_id, type="deleted"))
                continue
            changes.append(self._change_from_file(f, "modified"))

        if data.get("newStartPageToken"):
            return ChangeList(changes=changes, next_token=data["newStartPageToken"], has_more=False)
        return ChangeList(changes=changes, next_token=data.get("nextPageToken"), has_more=True)

    def _full_listing(self) -> ChangeList:
        # Take the checkpoint first so edits made during the listing are replayed
        resp = self._retry(lambda: self._request("GET", f"{API_URL}/changes/startPageToken"))
        start_token = resp.json().get("startPageToken")
        files = self._list_all({
            "q": "trashed = false",
            "pageSize": 1000,
            "fields": f"nextPageToken, files({FILE_FIELDS})",
        })
        changes = [self._change_from_file(f, "created") for f in files if f.get("id")]
        return ChangeList(changes=changes, next_token=start_token, has_more=False)

    def _change_from_file(self, f: dict, change_type: str) -> Change:
        parents = f.get("parents") or []
        is_folder = f.get("mimeType") == FOLDER_MIME
        return Change(
            file_id=f["id"],
            type=change_type,
            name=f.get("name"),
            parent_id=parents[0] if parents else None,
            is_folder=is_folder,
            file=None if is_folder else self._to_file(f),
        )

    # --- Resumable upload primitives ---

    def _start_session(self, name: str, mime_type: str, size: int, folder_id: str) -> UploadSession:
        resp = self._request(
            "POST",
            UPLOAD_URL,
            params={"uploadType": "resumable", "fields": FILE_FIELDS},
            json={"name": name, "parents": [folder_id], "mimeType": mime_type},
            headers={
                "X-Upload-Content-Type": mime_type,
                "X-Upload-Content-Length": str(size),
            },
        )
        location = resp.headers.get("Location")
        if not location:
            raise TransientNetworkError("Drive did not return a resumable session URI", provider=self.name)
        return UploadSession(
            session_id=location, total_size=size, name=name, mime_type=mime_type, folder_id=folder_id
        )

    def _send_chunk(self, session: UploadSession, data: bytes, offset: int) -> int:
        end = offset + len(data) - 1
        resp = self._request(
            "PUT",
            session.session_id,
            data=data,
            headers={
                "Content-Length": str(len(data)),
                "Content-Range": f"bytes {offset}-{end}/{session.total_size}",
            },
            timeout=PROVIDER_UPLOAD_TIMEOUT,
            ok_statuses=(308,),
        )
        return self._progress_from(session, resp)

    def _query_offset(self, session: UploadSession) -> int:
        resp = self._request(
            "PUT",
            session.session_id,
            headers={"Content-Length": "0", "Content-Range": f"bytes */{session.total_size}"},
            ok_statuses=(308,),
        )
        return self._progress_from(session, resp)

    def _progress_from(self, session: UploadSession, resp) -> int:
        if resp.status_code == 308:
            return _parse_range(resp.headers.get("Range"))
        # 200/201: the upload is complete and the body is the file resource
        session.result = resp.json()
        return session.total_size

    def _finish_session(self, session: UploadSession) -> FileMetadata:
        if session.result is None:
            self._query_offset(session)
        if session.result is None:
            raise TransientNetworkError("Drive upload session did not complete", provider=self.name)
        return self._to_file(session.result, session.mime_type)
