"""
Sync engine: pulls provider change feeds into the relational store.

Per (user, provider) a run moves through needs_full_sync (no checkpoint yet)
or polling, then reconciling for each page, and ends idle. The continuation
token is persisted after every page, so a crash replays at most one page.
Every handler is a conditional update or an insert-if-absent keyed by
provider file id, which makes replaying a page harmless.

Conflict policy: provider-owned attributes (name, size, MIME type, and
whether the bytes still exist) follow the remote state. A photo whose
metadata was edited locally after the last successful sync is reported
through the audit recorder when a remote change touches it:

- remote change to a photo deleted locally since the last sync: logged as
  "deleted_locally", the local deletion is kept;
- remote deletion of a photo edited locally since the last sync: logged as
  "file_missing", the deletion is applied because the bytes are gone;
- remote rename or metadata change of a photo edited locally since the last
  sync: logged as "modified_both", the remote values are applied and the
  local tags, visibility and order are untouched.

Nothing is merged automatically.

Deletions that carry only a path (Dropbox) are applied after the rest of
their page and skip anything that reappears live in it, because a Dropbox
rename or move arrives as the old path going away.
"""
import enum
import logging
import posixpath
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from gallery_storage.database import insert_ignore
from gallery_storage.errors import NotFoundError, RateLimitedError
from gallery_storage.models import FolderMapping, Gallery, Photo, SyncState, as_utc, utcnow
from gallery_storage.providers import Change, StorageProvider
from gallery_storage.services.connections import list_active_connections
from gallery_storage.services.context import StorageContext
from gallery_storage.services.rate_governor import OperationClass
from gallery_storage.services.uploads import ALLOWED_MIME_PREFIXES

logger = logging.getLogger(__name__)


class SyncPhase(str, enum.Enum):
    NEEDS_FULL_SYNC = "needs_full_sync"
    POLLING = "polling"
    RECONCILING = "reconciling"
    IDLE = "idle"


@dataclass
class SyncResult:
    user_id: str
    provider: str
    full_sync: bool = False
    skipped: bool = False
    pages: int = 0
    files_processed: int = 0
    files_created: int = 0
    files_updated: int = 0
    files_deleted: int = 0
    conflicts: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _edited_since(photo: Photo, last_sync_at: datetime | None) -> bool:
    edited = as_utc(photo.metadata_updated_at)
    return edited is not None and last_sync_at is not None and edited > last_sync_at


def _owned_galleries(user_id: str):
    return select(Gallery.id).where(Gallery.user_id == user_id)


class SyncEngine:
    def __init__(self, ctx: StorageContext):
        self.ctx = ctx
        self._phases: dict[tuple[str, str], SyncPhase] = {}
        self._running: set[tuple[str, str]] = set()
        self._state_lock = threading.Lock()
        self._all_lock = threading.Lock()

    # --- Phase tracking ---

    def _set_phase(self, key: tuple[str, str], phase: SyncPhase) -> None:
        with self._state_lock:
            self._phases[key] = phase

    def get_phase(self, user_id: str, provider: str) -> SyncPhase:
        with self._state_lock:
            phase = self._phases.get((user_id, provider))
        if phase is not None:
            return phase
        with self.ctx.session_factory() as db:
            state = self._get_state(db, user_id, provider)
        if state is None or not state.last_sync_token:
            return SyncPhase.NEEDS_FULL_SYNC
        return SyncPhase.IDLE

    # --- Checkpoint ---

    @staticmethod
    def _get_state(db: Session, user_id: str, provider: str) -> SyncState | None:
        return db.scalar(
            select(SyncState).where(SyncState.user_id == user_id, SyncState.provider == provider)
        )

    def _save_state(self, db: Session, user_id: str, provider: str, token: str | None) -> None:
        now = utcnow()
        inserted = insert_ignore(
            db,
            SyncState,
            {"user_id": user_id, "provider": provider, "last_sync_token": token, "last_sync_at": now},
            ["user_id", "provider"],
        )
        if not inserted:
            db.execute(
                update(SyncState)
                .where(SyncState.user_id == user_id, SyncState.provider == provider)
                .values(last_sync_token=token, last_sync_at=now)
            )
        db.commit()

    # --- Runs ---

    def sync_user(self, user_id: str, provider: str) -> SyncResult:
        """Drain the change feed for one connection. Overlapping runs for the same key are skipped."""
        key = (user_id, provider)
        with self._state_lock:
            if key in self._running:
                logger.info("Sync for %s/%s already running; skipping", user_id, provider)
                return SyncResult(user_id=user_id, provider=provider, skipped=True)
            self._running.add(key)
        try:
            with self.ctx.session_factory() as db:
                return self._sync(db, user_id, provider)
        except Exception as e:
            self.ctx.audit.log_error(
                "sync_user", e, metadata={"provider": provider}, user_id=user_id
            )
            raise
        finally:
            with self._state_lock:
                self._running.discard(key)
                self._phases.pop(key, None)

    def _sync(self, db: Session, user_id: str, provider: str) -> SyncResult:
        key = (user_id, provider)
        state = self._get_state(db, user_id, provider)
        token = state.last_sync_token if state else None
        last_sync_at = as_utc(state.last_sync_at) if state else None
        result = SyncResult(user_id=user_id, provider=provider, full_sync=token is None)

        def drain(adapter: StorageProvider) -> SyncResult:
            nonlocal token
            while True:
                self._set_phase(key, SyncPhase.NEEDS_FULL_SYNC if token is None else SyncPhase.POLLING)
                try:
                    page = self.ctx.rate_governor.execute(
                        provider, OperationClass.SYNC, lambda: adapter.poll_changes(token)
                    )
                except NotFoundError:
                    if token is None:
                        raise
                    logger.warning("%s change token for user %s expired; running full sync", provider, user_id)
                    token = None
                    result.full_sync = True
                    continue
                except RateLimitedError as e:
                    # Quota kept for uploads or provider throttling: resume next tick
                    logger.info("Sync for %s/%s deferred: %s", user_id, provider, e)
                    result.skipped = result.pages == 0
                    return result

                self._set_phase(key, SyncPhase.RECONCILING)
                self._apply_page(db, user_id, provider, page.changes, last_sync_at, result)
                token = page.next_token or token
                self._save_state(db, user_id, provider, token)
                result.pages += 1
                if not page.has_more:
                    return result

        self.ctx.token_vault.with_provider(db, user_id, provider, drain)
        for conflict in result.conflicts:
            logger.warning("Sync conflict for %s/%s: %s", user_id, provider, conflict["details"])
        logger.info(
            "Synced %s/%s: %d processed, %d created, %d updated, %d deleted, %d conflicts",
            user_id,
            provider,
            result.files_processed,
            result.files_created,
            result.files_updated,
            result.files_deleted,
            len(result.conflicts),
        )
        return result

    def sync_all(self) -> list[SyncResult]:
        """Sync every active connection; one failure does not stop the rest."""
        if not self._all_lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping")
            return []
        results = []
        try:
            with self.ctx.session_factory() as db:
                connections = list_active_connections(db)
            logger.info("Starting sync for %d connections", len(connections))
            for user_id, provider in connections:
                try:
                    results.append(self.sync_user(user_id, provider))
                except Exception:
                    logger.exception("Failed to sync user %s (%s)", user_id, provider)
            logger.info("Sync completed for %d of %d connections", len(results), len(connections))
        finally:
            self._all_lock.release()
        return results

    # --- Reconciliation ---

    def _conflict(self, user_id: str, result: SyncResult, kind: str, details: str, **ids) -> None:
        conflict = {"type": kind, "details": details, "provider": result.provider, **ids}
        result.conflicts.append(conflict)
        self.ctx.audit.log_conflict(user_id, conflict)

    def _find_photo(self, db: Session, user_id: str, provider: str, file_id: str) -> Photo | None:
        return db.scalar(
            select(Photo).where(
                Photo.provider == provider,
                Photo.provider_file_id == file_id,
                Photo.gallery_id.in_(_owned_galleries(user_id)),
            )
        )

    def _apply_page(
        self,
        db: Session,
        user_id: str,
        provider: str,
        changes: list[Change],
        last_sync_at: datetime | None,
        result: SyncResult,
    ) -> None:
        """
        Apply one page. Deletions known only by path run last: Dropbox reports
        a rename or move as the old path going away plus a live entry with the
        same id, and whatever reappears live in the page is kept.
        """
        live = {c.file_id: c for c in changes if c.type != "deleted" and c.file_id}
        by_path = [c for c in changes if c.type == "deleted" and not c.file_id]
        for change in changes:
            if not (change.type == "deleted" and not change.file_id):
                self._apply(db, user_id, provider, change, last_sync_at, result)
        for change in by_path:
            self._apply(db, user_id, provider, change, last_sync_at, result, live=live)

    def _apply(
        self,
        db: Session,
        user_id: str,
        provider: str,
        change: Change,
        last_sync_at: datetime | None,
        result: SyncResult,
        live: dict[str, Change] | None = None,
    ) -> None:
        result.files_processed += 1
        if change.type == "deleted":
            result.files_deleted += self.handle_file_deleted(
                db, user_id, provider, change, last_sync_at, result, live=live
            )
            return

        if change.is_folder:
            new_parent = change.new_parent_id or change.parent_id
            if new_parent and self.handle_folder_moved(db, user_id, provider, change.file_id, new_parent):
                result.files_updated += 1
            return

        photo = self._find_photo(db, user_id, provider, change.file_id)
        if photo is not None and photo.deleted_at is not None:
            if _edited_since(photo, last_sync_at):
                self._conflict(
                    user_id,
                    result,
                    "deleted_locally",
                    f"{provider} file {change.file_id} changed remotely after local deletion",
                    gallery_id=photo.gallery_id,
                    photo_id=photo.id,
                )
            return

        edited_locally = photo is not None and _edited_since(photo, last_sync_at)
        new_name = change.new_name or change.name
        renamed = False
        if photo is not None and new_name and new_name != photo.name:
            renamed = self.handle_file_renamed(db, user_id, provider, change.file_id, new_name)
        outcome = self.handle_file_created(db, user_id, provider, change)
        if outcome == "inserted":
            result.files_created += 1
        elif renamed or outcome == "updated":
            result.files_updated += 1
            if edited_locally:
                self._conflict(
                    user_id,
                    result,
                    "modified_both",
                    f"{provider} file {change.file_id} changed remotely after local metadata edits",
                    gallery_id=photo.gallery_id,
                    photo_id=photo.id,
                )

    def handle_file_deleted(
        self,
        db: Session,
        user_id: str,
        provider: str,
        change: Change,
        last_sync_at: datetime | None = None,
        result: SyncResult | None = None,
        live: dict[str, Change] | None = None,
    ) -> int:
        """
        Soft-delete photos matching the event. Only rows with deleted_at NULL
        change, so a repeated event neither errors nor audits twice. Returns
        the number of photos newly marked deleted.

        `live` holds the page's non-deleted entries by id. A path deletion
        spares photos listed there and photos whose gallery folder (or one of
        its ancestors) is listed there, since those were renamed or moved.
        """
        result = result or SyncResult(user_id=user_id, provider=provider)
        if change.file_id:
            mapping = db.scalar(
                select(FolderMapping).where(
                    FolderMapping.provider == provider,
                    FolderMapping.provider_folder_id == change.file_id,
                    FolderMapping.gallery_id.in_(_owned_galleries(user_id)),
                )
            )
            if mapping is not None:
                self._conflict(
                    user_id,
                    result,
                    "folder_missing",
                    f"{provider} folder {change.file_id} for gallery {mapping.gallery_id} was deleted",
                    gallery_id=mapping.gallery_id,
                )
                return 0
            match = Photo.provider_file_id == change.file_id
        elif change.path:
            match = or_(
                Photo.provider_path == change.path,
                Photo.provider_path.startswith(change.path.rstrip("/") + "/", autoescape=True),
            )
        else:
            return 0

        candidates = list(db.scalars(
            select(Photo).where(
                Photo.provider == provider,
                Photo.deleted_at.is_(None),
                Photo.gallery_id.in_(_owned_galleries(user_id)),
                match,
            )
        ))
        if live and change.path:
            candidates = self._spare_relocated(db, user_id, provider, change.path, candidates, live)
        deleted = 0
        now = utcnow()
        for photo in candidates:
            updated = db.execute(
                update(Photo)
                .where(Photo.id == photo.id, Photo.deleted_at.is_(None))
                .values(deleted_at=now)
            )
            if not updated.rowcount:
                continue
            db.commit()
            deleted += 1
            if _edited_since(photo, last_sync_at):
                self._conflict(
                    user_id,
                    result,
                    "file_missing",
                    f"{provider} file {photo.provider_file_id} was deleted remotely after local edits",
                    gallery_id=photo.gallery_id,
                    photo_id=photo.id,
                )
            self.ctx.cache.invalidate_file_url(photo.provider_file_id)
            self.ctx.cache.invalidate_gallery_photos(photo.gallery_id)
            self.ctx.audit.log_file_operation(
                user_id,
                photo.provider_file_id,
                "delete",
                metadata={"source": "sync", "photo_id": photo.id, "gallery_id": photo.gallery_id},
            )
        return deleted

    def _spare_relocated(
        self,
        db: Session,
        user_id: str,
        provider: str,
        path: str,
        candidates: list[Photo],
        live: dict[str, Change],
    ) -> list[Photo]:
        """Candidates that really went away; relocated photos get their new path."""
        rows = db.execute(
            select(FolderMapping.gallery_id, FolderMapping.provider_folder_id, FolderMapping.parent_folder_id).where(
                FolderMapping.provider == provider,
                FolderMapping.gallery_id.in_(_owned_galleries(user_id)),
            )
        ).all()
        folder_of = {gallery_id: folder_id for gallery_id, folder_id, _ in rows}
        parent_of = {folder_id: parent_id for _, folder_id, parent_id in rows}

        def relocated(folder_id: str | None) -> bool:
            seen = set()
            while folder_id and folder_id not in seen:
                if folder_id in live:
                    return True
                seen.add(folder_id)
                folder_id = parent_of.get(folder_id)
            return False

        gone = []
        for photo in candidates:
            if photo.provider_file_id in live:
                continue
            folder_id = folder_of.get(photo.gallery_id)
            if not relocated(folder_id):
                gone.append(photo)
                continue
            moved_to = live.get(folder_id)
            if moved_to is not None and moved_to.path and photo.provider_path:
                db.execute(
                    update(Photo)
                    .where(Photo.id == photo.id)
                    .values(provider_path=f"{moved_to.path}/{posixpath.basename(photo.provider_path)}")
                )
                db.commit()
                self.ctx.cache.invalidate_gallery_photos(photo.gallery_id)
        if len(gone) < len(candidates):
            logger.info(
                "%s path %s went away but %d photos reappeared in the same batch",
                provider,
                path,
                len(candidates) - len(gone),
            )
        return gone

    def handle_file_renamed(self, db: Session, user_id: str, provider: str, file_id: str, new_name: str) -> bool:
        photo = self._find_photo(db, user_id, provider, file_id)
        if photo is None:
            return False
        updated = db.execute(
            update(Photo)
            .where(Photo.id == photo.id, Photo.deleted_at.is_(None), Photo.name != new_name)
            .values(name=new_name)
        )
        db.commit()
        if not updated.rowcount:
            return False
        self.ctx.cache.invalidate_gallery_photos(photo.gallery_id)
        return True

    def handle_file_created(self, db: Session, user_id: str, provider: str, change: Change) -> str | None:
        """
        Upsert provider-owned metadata. New images and videos inside a mapped
        gallery folder become photo rows. Returns "inserted", "updated" or None.
        """
        meta = change.file
        if meta is None:
            return None

        photo = self._find_photo(db, user_id, provider, change.file_id)
        if photo is not None:
            if photo.deleted_at is not None:
                return None
            values = {
                "mime_type": meta.mime_type or photo.mime_type,
                "file_size": meta.size,
                "url": meta.url or photo.url,
                "provider_path": meta.path or photo.provider_path,
            }
            if all(getattr(photo, k) == v for k, v in values.items()):
                return None
            db.execute(update(Photo).where(Photo.id == photo.id).values(**values))
            db.commit()
            self.ctx.cache.invalidate_gallery_photos(photo.gallery_id)
            self.ctx.cache.invalidate_file_url(photo.provider_file_id)
            return "updated"

        if not change.parent_id or not (meta.mime_type or "").startswith(ALLOWED_MIME_PREFIXES):
            return None
        gallery_id = db.scalar(
            select(FolderMapping.gallery_id).where(
                FolderMapping.provider == provider,
                FolderMapping.provider_folder_id == change.parent_id,
                FolderMapping.gallery_id.in_(_owned_galleries(user_id)),
            )
        )
        if gallery_id is None:
            return None

        next_order = db.scalar(
            select(func.coalesce(func.max(Photo.sort_order), -1) + 1).where(Photo.gallery_id == gallery_id)
        )
        inserted = insert_ignore(
            db,
            Photo,
            {
                "gallery_id": gallery_id,
                "provider": provider,
                "provider_file_id": meta.id,
                "provider_path": meta.path,
                "name": meta.name,
                "url": meta.url,
                "mime_type": meta.mime_type,
                "file_size": meta.size,
                "tags": [],
                "sort_order": next_order,
                "is_hidden": False,
                "created_at": utcnow(),
            },
            ["provider", "provider_file_id"],
        )
        db.commit()
        if not inserted:
            return None
        self.ctx.cache.invalidate_gallery_photos(gallery_id)
        return "inserted"

    def handle_folder_moved(self, db: Session, user_id: str, provider: str, folder_id: str, new_parent_id: str) -> bool:
        mapping = db.scalar(
            select(FolderMapping).where(
                FolderMapping.provider == provider,
                FolderMapping.provider_folder_id == folder_id,
                FolderMapping.gallery_id.in_(_owned_galleries(user_id)),
            )
        )
        if mapping is None or mapping.parent_folder_id == new_parent_id:
            return False
        db.execute(
            update(FolderMapping)
            .where(FolderMapping.id == mapping.id)
            .values(parent_folder_id=new_parent_id)
        )
        db.commit()
        self.ctx.cache.invalidate_gallery_photos(mapping.gallery_id)
        self.ctx.audit.log_gallery_operation(
            user_id, mapping.gallery_id, "folder_moved", metadata={"provider": provider, "parent_folder_id": new_parent_id}
        )
        return True
