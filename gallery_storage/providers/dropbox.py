"""
Dropbox v2 adapter over plain REST (requests).

Dropbox addresses everything by path but also accepts "id:..." wherever a
path is expected, so folder ids stored in mappings stay valid across renames.
Creating children needs the parent's current path, which is looked up first.
Delete events in the change feed carry only a path; they are surfaced with an
empty file_id and the lowercased path.
"""
import json
import mimetypes
import posixpath
from datetime import UTC, datetime, timedelta

from gallery_storage.config import (
    DROPBOX_APP_KEY,
    DROPBOX_APP_SECRET,
    PROVIDER_UPLOAD_TIMEOUT,
)
from gallery_storage.errors import ConflictError, NotFoundError, TransientNetworkError
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

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"
TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"


def _guess_mime(name: str) -> str:
    return mimetypes.guess_type(name)[0] or "application/octet-stream"


class DropboxProvider(StorageProvider):
    name = "dropbox"

    def _rpc(self, endpoint: str, payload: dict | None, **kwargs) -> dict:
        resp = provider_request("POST", f"{API_URL}/{endpoint}", self.access_token, self.name, json=payload, **kwargs)
        return resp.json() if resp.content else {}

    def _content(self, endpoint: str, arg: dict, data: bytes = b"", **kwargs):
        kwargs.setdefault("timeout", PROVIDER_UPLOAD_TIMEOUT)
        return provider_request(
            "POST",
            f"{CONTENT_URL}/{endpoint}",
            self.access_token,
            self.name,
            data=data,
            headers={
                "Dropbox-API-Arg": json.dumps(arg),
                "Content-Type": "application/octet-stream",
            },
            **kwargs,
        )

    def _path_of(self, folder_id: str | None) -> str:
        """Current display path of a folder id; "" is the Dropbox root."""
        if not folder_id or folder_id == "/":
            return ""
        meta = self._retry(lambda: self._rpc("files/get_metadata", {"path": folder_id}))
        if meta.get(".tag") != "folder":
            raise NotFoundError(f"{folder_id} is not a folder", provider=self.name)
        return meta["path_display"]

    def _to_file(self, meta: dict, mime_type: str | None = None, url: str = "") -> FileMetadata:
        return FileMetadata(
            id=meta["id"],
            name=meta["name"],
            mime_type=mime_type or _guess_mime(meta["name"]),
            size=int(meta.get("size") or 0),
            url=url,
            path=meta.get("path_lower"),
        )

    # --- Folders ---

    def create_folder(self, name: str, parent_id: str | None = None) -> Folder:
        path = f"{self._path_of(parent_id)}/{name}"

        def call():
            try:
                result = self._rpc("files/create_folder_v2", {"path": path, "autorename": False})
                meta = result["metadata"]
            except ConflictError:
                # Folder already exists at that path; reuse it
                meta = self._rpc("files/get_metadata", {"path": path})
                if meta.get(".tag") != "folder":
                    raise
            return Folder(id=meta["id"], name=meta["name"], parent_id=parent_id)

        return self._retry(call)

    def get_folder(self, folder_id: str) -> Folder:
        meta = self._retry(lambda: self._rpc("files/get_metadata", {"path": folder_id}))
        if meta.get(".tag") != "folder":
            raise NotFoundError(f"{folder_id} is not a folder", provider=self.name)
        return Folder(id=meta["id"], name=meta["name"])

    def list_folders(self, parent_id: str) -> list[Folder]:
        entries = self._list_all({"path": parent_id, "recursive": False})
        return [
            Folder(id=e["id"], name=e["name"], parent_id=parent_id)
            for e in entries
            if e.get(".tag") == "folder"
        ]

    def _list_all(self, payload: dict) -> list[dict]:
        entries, _cursor = self._list_with_cursor(payload)
        return entries

    def _list_with_cursor(self, payload: dict) -> tuple[list[dict], str]:
        page = self._retry(lambda: self._rpc("files/list_folder", payload))
        entries = list(page.get("entries", []))
        while page.get("has_more"):
            cursor = page["cursor"]
            page = self._retry(lambda: self._rpc("files/list_folder/continue", {"cursor": cursor}))
            entries.extend(page.get("entries", []))
        return entries, page["cursor"]

    # --- Files ---

    def upload_file(self, data: bytes, name: str, mime_type: str, folder_id: str) -> FileMetadata:
        path = f"{self._path_of(folder_id)}/{name}"
        arg = {"path": path, "mode": "add", "autorename": True, "mute": False}
        meta = self._retry(lambda: self._content("files/upload", arg, data).json())
        return self._to_file(meta, mime_type, self._shared_link(meta["id"]))

    def get_file(self, file_id: str) -> FileMetadata:
        meta = self._retry(lambda: self._rpc("files/get_metadata", {"path": file_id}))
        if meta.get(".tag") != "file":
            raise NotFoundError(f"{file_id} is not a file", provider=self.name)
        return self._to_file(meta, url=self._shared_link(meta["id"]))

    def delete_file(self, file_id: str) -> None:
        self._retry(lambda: self._rpc("files/delete_v2", {"path": file_id}))

    def get_file_url(self, file_id: str) -> str:
        return self._shared_link(file_id)

    def _shared_link(self, path: str) -> str:
        def call():
            try:
                result = self._rpc("sharing/create_shared_link_with_settings", {"path": path})
                return result["url"]
            except ConflictError:
                # shared_link_already_exists: reuse the existing link
                links = self._rpc("sharing/list_shared_links", {"path": path, "direct_only": True})
                if links.get("links"):
                    return links["links"][0]["url"]
                raise NotFoundError(f"No shared link for {path}", provider=self.name)

        return self._retry(call)

    # --- Tokens ---

    def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        data = self._retry(lambda: exchange_token(
            TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": DROPBOX_APP_KEY,
                "client_secret": DROPBOX_APP_SECRET,
            },
            self.name,
        ))
        # Dropbox keeps the same refresh token; none is returned here
        return TokenResponse(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.now(UTC) + timedelta(seconds=int(data.get("expires_in", 14400))),
        )

    # --- Change feed ---

    def poll_changes(self, continuation_token: str | None = None) -> ChangeList:
        if continuation_token is None:
            entries, cursor = self._list_with_cursor({"path": "", "recursive": True, "include_deleted": False})
            return ChangeList(changes=self._changes_from(entries, "created"), next_token=cursor, has_more=False)

        try:
            page = self._retry(
                lambda: self._rpc("files/list_folder/continue", {"cursor": continuation_token})
            )
        except ConflictError as e:
            # "reset": the cursor is no longer valid and a full listing is needed
            raise NotFoundError("Dropbox cursor was reset", provider=self.name) from e
        return ChangeList(
            changes=self._changes_from(page.get("entries", []), "modified"),
            next_token=page["cursor"],
            has_more=bool(page.get("has_more")),
        )

    def _changes_from(self, entries: list[dict], change_type: str) -> list[Change]:
        # Folder ids seen in this batch, keyed by lowercased path
        known = {e["path_lower"]: e["id"] for e in entries if e.get(".tag") == "folder" and "path_lower" in e}
        changes = []
        for entry in entries:
            change = self._change_from_entry(entry, change_type, known)
            if change is not None:
                changes.append(change)
        return changes

    def _change_from_entry(self, entry: dict, change_type: str, known: dict[str, str]) -> Change | None:
        tag = entry.get(".tag")
        if tag == "deleted":
            return Change(file_id="", type="deleted", path=entry.get("path_lower"), name=entry.get("name"))
        if tag not in ("file", "folder"):
            return None
        return Change(
            file_id=entry["id"],
            type=change_type,
            name=entry["name"],
            path=entry.get("path_lower"),
            parent_id=self._parent_id(entry.get("path_lower") or "", known),
            is_folder=tag == "folder",
            file=self._to_file(entry) if tag == "file" else None,
        )

    def _parent_id(self, path_lower: str, known: dict[str, str]) -> str | None:
        parent = posixpath.dirname(path_lower)
        if parent in ("", "/"):
            return None
        if parent not in known:
            try:
                meta = self._retry(lambda: self._rpc("files/get_metadata", {"path": parent}))
            except NotFoundError:
                return None
            known[parent] = meta.get("id")
        return known[parent]

    # --- Resumable upload primitives ---

    def _start_session(self, name: str, mime_type: str, size: int, folder_id: str) -> UploadSession:
        path = f"{self._path_of(folder_id)}/{name}"
        resp = self._content("files/upload_session/start", {"close": False})
        return UploadSession(
            session_id=resp.json()["session_id"],
            total_size=size,
            name=name,
            mime_type=mime_type,
            folder_id=folder_id,
            extra={"path": path},
        )

    def _send_chunk(self, session: UploadSession, data: bytes, offset: int) -> int:
        arg = {"cursor": {"session_id": session.session_id, "offset": offset}, "close": False}
        self._content("files/upload_session/append_v2", arg, data)
        return offset + len(data)

    def _query_offset(self, session: UploadSession) -> int:
        # Dropbox has no status call; an empty append at our last known offset
        # either succeeds or reports incorrect_offset with the real one.
        arg = {"cursor": {"session_id": session.session_id, "offset": session.acknowledged}, "close": False}
        resp = self._content("files/upload_session/append_v2", arg, b"", ok_statuses=(409,))
        if resp.status_code != 409:
            return session.acknowledged
        error = (resp.json() or {}).get("error", {})
        correct = error.get("correct_offset")
        if correct is None:
            raise TransientNetworkError(
                f"Dropbox upload session error: {error.get('.tag', 'unknown')}", provider=self.name
            )
        return int(correct)

    def _finish_session(self, session: UploadSession) -> FileMetadata:
        arg = {
            "cursor": {"session_id": session.session_id, "offset": session.total_size},
            "commit": {"path": session.extra["path"], "mode": "add", "autorename": True, "mute": False},
        }
        meta = self._content("files/upload_session/finish", arg).json()
        return self._to_file(meta, session.mime_type, self._shared_link(meta["id"]))
