"""
Storage provider adapters and the registry used to build them by name.

Adding a back-end means implementing StorageProvider and registering the
class here; upload, folder and sync orchestration never import a concrete
adapter.
"""
from gallery_storage.errors import ValidationError
from gallery_storage.providers.base import (
    Change,
    ChangeList,
    FileMetadata,
    Folder,
    StorageProvider,
    TokenResponse,
    UploadSession,
)
from gallery_storage.providers.dropbox import DropboxProvider
from gallery_storage.providers.google_drive import GoogleDriveProvider

PROVIDER_CLASSES: dict[str, type[StorageProvider]] = {
    GoogleDriveProvider.name: GoogleDriveProvider,
    DropboxProvider.name: DropboxProvider,
}

PROVIDER_NAMES = {
    GoogleDriveProvider.name: "Google Drive",
    DropboxProvider.name: "Dropbox",
}


def get_provider(name: str, access_token: str | None = None) -> StorageProvider:
    """Build the adapter registered under name. Raises ValidationError for unknown names."""
    cls = PROVIDER_CLASSES.get(name)
    if cls is None:
        raise ValidationError(f"Unsupported storage provider: {name}")
    return cls(access_token)


__all__ = [
    "Change",
    "ChangeList",
    "DropboxProvider",
    "FileMetadata",
    "Folder",
    "GoogleDriveProvider",
    "PROVIDER_CLASSES",
    "PROVIDER_NAMES",
    "StorageProvider",
    "TokenResponse",
    "UploadSession",
    "get_provider",
]
