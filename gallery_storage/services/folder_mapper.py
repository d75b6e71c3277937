"""
Gallery -> provider folder mapping.

Root and gallery folders are created lazily and at most once per
(user|gallery, provider). Creation leans on the unique constraints:
create the provider folder, INSERT ... ON CONFLICT DO NOTHING, then re-read.
A caller that loses the race returns the winner's folder and deletes the
folder it created.
"""
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from gallery_storage.config import ROOT_FOLDER_NAME
from gallery_storage.database import insert_ignore
from gallery_storage.errors import NotFoundError, StorageError
from gallery_storage.models import FolderMapping, Gallery, RootFolder, utcnow
from gallery_storage.providers import Folder, StorageProvider
from gallery_storage.services.rate_governor import OperationClass, RateGovernor

logger = logging.getLogger(__name__)


class FolderMapper:
    def __init__(self, rate_governor: RateGovernor):
        self.rate_governor = rate_governor

    def _create_folder(self, adapter: StorageProvider, name: str, parent_id: str | None) -> Folder:
        return self.rate_governor.execute(
            adapter.name,
            OperationClass.FOLDER_CREATE,
            lambda: adapter.create_folder(name, parent_id),
        )

    def _discard_folder(self, adapter: StorageProvider, folder_id: str) -> None:
        try:
            adapter.delete_file(folder_id)
        except StorageError as e:
            logger.warning("Could not remove duplicate %s folder %s: %s", adapter.name, folder_id, e)

    # --- Root folder ---

    def get_root_folder(self, db: Session, user_id: str, provider: str) -> RootFolder | None:
        return db.scalar(
            select(RootFolder).where(RootFolder.user_id == user_id, RootFolder.provider == provider)
        )

    def initialize_root_folder(self, db: Session, user_id: str, adapter: StorageProvider) -> RootFolder:
        existing = self.get_root_folder(db, user_id, adapter.name)
        if existing is not None:
            return existing

        folder = self._create_folder(adapter, ROOT_FOLDER_NAME, None)
        inserted = insert_ignore(
            db,
            RootFolder,
            {
                "user_id": user_id,
                "provider": adapter.name,
                "provider_folder_id": folder.id,
                "created_at": utcnow(),
            },
            ["user_id", "provider"],
        )
        db.commit()
        root = self.get_root_folder(db, user_id, adapter.name)
        if inserted:
            logger.info("Created %s root folder %s for user %s", adapter.name, folder.id, user_id)
        elif root.provider_folder_id != folder.id:
            self._discard_folder(adapter, folder.id)
        return root

    # --- Gallery folders ---

    def find_folder_mapping(self, db: Session, gallery_id: int, provider: str) -> FolderMapping | None:
        return db.scalar(
            select(FolderMapping).where(
                FolderMapping.gallery_id == gallery_id,
                FolderMapping.provider == provider,
            )
        )

    def get_folder_mapping(self, db: Session, gallery_id: int, provider: str) -> FolderMapping:
        """The gallery's mapping for provider. Raises NotFoundError; callers create on demand."""
        mapping = self.find_folder_mapping(db, gallery_id, provider)
        if mapping is None:
            raise NotFoundError(f"No {provider} folder for gallery {gallery_id}", provider=provider)
        return mapping

    def create_gallery_folder(
        self,
        db: Session,
        user_id: str,
        gallery_id: int,
        name: str,
        adapter: StorageProvider,
    ) -> FolderMapping:
        """
        Idempotent: returns the existing mapping if there is one. Sub-galleries
        nest under their parent gallery's folder (created first if needed),
        top-level galleries under the user's root folder.
        """
        existing = self.find_folder_mapping(db, gallery_id, adapter.name)
        if existing is not None:
            return existing

        gallery = db.get(Gallery, gallery_id)
        if gallery is not None and gallery.parent_id is not None:
            parent = db.get(Gallery, gallery.parent_id)
            if parent is None:
                raise NotFoundError(f"Parent gallery {gallery.parent_id} not found")
            parent_folder_id = self.create_gallery_folder(
                db, user_id, parent.id, parent.name, adapter
            ).provider_folder_id
        else:
            parent_folder_id = self.initialize_root_folder(db, user_id, adapter).provider_folder_id

        folder = self._create_folder(adapter, name, parent_folder_id)
        inserted = insert_ignore(
            db,
            FolderMapping,
            {
                "gallery_id": gallery_id,
                "provider": adapter.name,
                "provider_folder_id": folder.id,
                "parent_folder_id": parent_folder_id,
                "created_at": utcnow(),
            },
            ["gallery_id", "provider"],
        )
        db.commit()
        mapping = self.find_folder_mapping(db, gallery_id, adapter.name)
        if inserted:
            logger.info("Created %s folder %s for gallery %s", adapter.name, folder.id, gallery_id)
        elif mapping.provider_folder_id != folder.id:
            logger.info(
                "Lost folder creation race for gallery %s on %s; using %s",
                gallery_id,
                adapter.name,
                mapping.provider_folder_id,
            )
            self._discard_folder(adapter, folder.id)
        return mapping

    def resolve_gallery_folder(self, db: Session, user_id: str, gallery: Gallery, adapter: StorageProvider) -> str:
        """Provider folder id for uploads into gallery, creating it on first use."""
        mapping = self.find_folder_mapping(db, gallery.id, adapter.name)
        if mapping is None:
            mapping = self.create_gallery_folder(db, user_id, gallery.id, gallery.name, adapter)
        return mapping.provider_folder_id
