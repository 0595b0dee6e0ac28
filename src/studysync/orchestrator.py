"""Sync state machine: decides when to push, when to pull, and when to ask.

States::

    idle -> checking -> syncing_up | syncing_down | up_to_date | conflict
                     -> error

Backups and restores share one lock, so at most one is in flight. A sign-out
bumps an epoch; operations that started before it still record their facts
(sync time, remote ids) but no longer change the visible status.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .cloud.base import AuthenticationError, AuthState, CloudAdapter, CloudStorageError, NotAuthenticatedError
from .codec import ExportCodec
from .domain import Collection, ConflictRecord, ConflictSide, Material, SyncStatus
from .events import EventChannel, SYNC_ORIGIN
from .storage import LocalStore, SyncStateStore
from .tracker import ChangeTracker
from .utils.datetime import now_ms


logger = logging.getLogger(__name__)

BACKUP_MIME_TYPE = "application/json"
NO_BACKUP_FOUND = "No database backup found"

StatusListener = Callable[[SyncStatus, Optional[str]], None]


@dataclass
class MaterialUploadResult:
    """Outcome of uploading the pending material payloads."""

    uploaded: int = 0
    skipped: int = 0
    failed_ids: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def error_count(self) -> int:
        return len(self.failed_ids)

    def record_failure(self, material_id: str, message: str):
        self.failed_ids.append(material_id)
        self.errors[material_id] = message


@dataclass
class BackupResult:
    """Outcome of one backup attempt."""

    status: SyncStatus
    uploaded: int = 0
    error_count: int = 0
    skipped: int = 0
    failed_ids: List[str] = field(default_factory=list)
    remote_id: Optional[str] = None
    synced_at: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is SyncStatus.UP_TO_DATE


class SyncOrchestrator:
    """Owns the authoritative sync status and sequences backup/restore."""

    def __init__(self, store: LocalStore, state_store: SyncStateStore, codec: ExportCodec,
                 adapter: CloudAdapter, tracker: Optional[ChangeTracker] = None,
                 backup_file_name: str = "studypal.db.json", clock_skew_ms: int = 1000,
                 embed_binary_in_backup: bool = True,
                 clock: Callable[[], int] = now_ms):
        self.store = store
        self.state_store = state_store
        self.codec = codec
        self.adapter = adapter
        self.tracker = tracker
        self.backup_file_name = backup_file_name
        self.clock_skew_ms = clock_skew_ms
        self.embed_binary_in_backup = embed_binary_in_backup
        self.clock = clock

        self.status = SyncStatus.IDLE
        self.last_error: Optional[str] = None
        self.conflict: Optional[ConflictRecord] = None

        self.status_changes: EventChannel[Tuple[SyncStatus, Optional[str]]] = EventChannel("sync-status")
        self.reloads: EventChannel[None] = EventChannel("reload")

        self._lock = asyncio.Lock()
        self._epoch = 0
        self._was_authenticated = False
        self._unsubscribe_auth: Optional[Callable[[], None]] = None
        self._tasks: Set[asyncio.Task] = set()
        self.logger = logging.getLogger(__name__)

    # Observers

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register ``listener(status, error)`` for status changes."""
        return self.status_changes.subscribe(lambda change: listener(*change))

    def on_reload(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a listener for the "reload everything" signal after a restore."""
        return self.reloads.subscribe(lambda _: listener())

    @property
    def last_sync_time(self) -> Optional[int]:
        return self.state_store.last_sync_time

    @property
    def dirty(self) -> bool:
        return self.tracker.dirty if self.tracker is not None else False

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def _set_status(self, status: SyncStatus, error: Optional[str] = None,
                    epoch: Optional[int] = None) -> bool:
        if epoch is not None and epoch != self._epoch:
            self.logger.debug(f"Ignoring late status {status.value} from a previous session")
            return False

        if status is not SyncStatus.CONFLICT:
            self.conflict = None
        changed = (status, error) != (self.status, self.last_error)
        self.status = status
        self.last_error = error
        if changed:
            self.logger.debug(f"Sync status -> {status.value}" + (f" ({error})" if error else ""))
            self.status_changes.publish((status, error))
        return True

    def _fail(self, message: str, epoch: int):
        self.logger.error(message)
        self._set_status(SyncStatus.ERROR, message, epoch=epoch)

    # Authentication

    def start(self):
        """Follow the adapter's authentication state."""
        if self._unsubscribe_auth is None:
            self._was_authenticated = self.adapter.is_authenticated
            self._unsubscribe_auth = self.adapter.auth_state.subscribe(self._on_auth_change)

    def stop(self):
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None

    def _on_auth_change(self, state: AuthState):
        if state.authenticated and not self._was_authenticated:
            self._was_authenticated = True
            self.logger.info("Signed in; checking remote backup")
            self._spawn(self.check_initial_state())
        elif not state.authenticated and self._was_authenticated:
            self._was_authenticated = False
            self._epoch += 1
            self.logger.info("Signed out; sync paused")
            if self.tracker is not None:
                self.tracker.reset()
            self._set_status(SyncStatus.IDLE)

    def _spawn(self, coro):
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            self.logger.debug("No running event loop; skipping automatic check")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self):
        """Wait for checks started by authentication changes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Initial check

    async def check_initial_state(self) -> SyncStatus:
        """Compare the remote backup with local sync history and act on it.

        Returns:
            Status after the check (and any backup it triggered) settles
        """
        if not self.adapter.is_authenticated:
            self.logger.debug("Not signed in; skipping remote check")
            return self.status

        async with self._lock:
            epoch = self._epoch
            self._set_status(SyncStatus.CHECKING, epoch=epoch)

            try:
                remote = await self.adapter.find_file(self.backup_file_name)
            except CloudStorageError as e:
                self._fail(f"Failed to check remote backup: {e}", epoch)
                return self.status

            last_sync = self.state_store.last_sync_time
            dirty = self.dirty

            if remote is None:
                if dirty:
                    self.logger.info("No remote backup and local changes pending; backing up")
                    await self._backup(epoch)
                else:
                    self.logger.info("No remote backup and nothing to upload")
                    self._set_status(SyncStatus.UP_TO_DATE, epoch=epoch)
            elif last_sync is None:
                self.logger.info("Remote backup exists but this device has never synced")
                self._raise_conflict(remote.modified_time, remote.size, dirty, last_sync, epoch)
            elif remote.modified_time is None or remote.modified_time > last_sync + self.clock_skew_ms:
                self.logger.info("Remote backup is newer than the last sync")
                self._raise_conflict(remote.modified_time, remote.size, dirty, last_sync, epoch)
            elif dirty:
                self.logger.info("Local changes pending; backing up")
                await self._backup(epoch)
            else:
                self._set_status(SyncStatus.UP_TO_DATE, epoch=epoch)

            return self.status

    def _raise_conflict(self, remote_modified: Optional[int], remote_size: Optional[int],
                        dirty: bool, last_sync: Optional[int], epoch: int):
        local_modified = self.clock() if dirty or last_sync is None else last_sync
        conflict = ConflictRecord(
            cloud=ConflictSide(modified_time=remote_modified or 0, size=remote_size),
            local=ConflictSide(modified_time=local_modified),
        )
        if self._set_status(SyncStatus.CONFLICT, epoch=epoch):
            self.conflict = conflict

    # Backup

    async def backup(self) -> BackupResult:
        """Upload pending materials, then the full snapshot. Never raises."""
        async with self._lock:
            return await self._backup(self._epoch)

    async def _backup(self, epoch: int) -> BackupResult:
        if not self.adapter.is_authenticated:
            message = f"Not signed in to {self.adapter.provider_name}"
            self._fail(message, epoch)
            return BackupResult(status=SyncStatus.ERROR, error=message)

        generation = self.tracker.generation if self.tracker is not None else 0
        self._set_status(SyncStatus.SYNCING_UP, epoch=epoch)
        result = BackupResult(status=SyncStatus.SYNCING_UP)

        try:
            materials = await self.sync_pending_materials()
            result.uploaded = materials.uploaded
            result.skipped = materials.skipped
            result.error_count = materials.error_count
            result.failed_ids = list(materials.failed_ids)

            snapshot = await self.codec.export(strip_binary_content=not self.embed_binary_in_backup)
            data = self.codec.dumps(snapshot)
            result.remote_id = await self.adapter.upload_file(
                data, self.backup_file_name, BACKUP_MIME_TYPE
            )
            result.synced_at = await self._remote_modified_time(result.remote_id)
            self.state_store.last_sync_time = result.synced_at
        except Exception as e:
            result.status = SyncStatus.ERROR
            result.error = f"Backup failed: {e}"
            self._fail(result.error, epoch)
            return result

        if result.error_count:
            result.status = SyncStatus.ERROR
            result.error = f"Failed to upload {result.error_count} material(s)"
            self.logger.warning(f"Backup uploaded with errors: {result.error}")
            self._set_status(SyncStatus.ERROR, result.error, epoch=epoch)
        else:
            result.status = SyncStatus.UP_TO_DATE
            if self.tracker is not None:
                self.tracker.mark_clean(generation)
            self.logger.info(f"Backup complete ({len(data)} bytes, {result.uploaded} material(s))")
            self._set_status(SyncStatus.UP_TO_DATE, epoch=epoch)
        return result

    async def _remote_modified_time(self, remote_id: str) -> int:
        try:
            metadata = await self.adapter.get_metadata(remote_id)
        except CloudStorageError as e:
            self.logger.warning(f"Could not read backup metadata, using local clock: {e}")
            return self.clock()
        return metadata.modified_time or self.clock()

    async def sync_pending_materials(self) -> MaterialUploadResult:
        """Upload every ``upload_pending`` material's payload.

        Each material ends ``up_to_date`` or ``error``; one failure does not
        stop the batch. Authentication failures abort it.
        """
        result = MaterialUploadResult()
        records = await self.store.get_all(Collection.MATERIALS)
        pending = [r for r in records if r.get("syncStatus") == SyncStatus.UPLOAD_PENDING.value]
        if not pending:
            return result

        chapters = {c["id"]: c for c in await self.store.get_all(Collection.CHAPTERS) if "id" in c}
        self.logger.info(f"Uploading {len(pending)} pending material(s)")

        for record in pending:
            material_id = record.get("id")
            try:
                material = Material.from_dict(record)
            except (KeyError, ValueError, TypeError) as e:
                result.record_failure(material_id, f"Invalid material record: {e}")
                await self._update_material(material_id, syncStatus=SyncStatus.ERROR.value)
                continue

            data = material.binary_data
            if not material.is_binary or data is None:
                result.skipped += 1
                await self._update_material(material.id, syncStatus=SyncStatus.UP_TO_DATE.value)
                continue

            folder_path = self._material_folder(material, chapters)
            await self._update_material(material.id, syncStatus=SyncStatus.SYNCING_UP.value)
            try:
                remote_id = await self.adapter.upload_file(
                    data, material.id, material.content.mime_type, folder_path=folder_path
                )
            except (AuthenticationError, NotAuthenticatedError):
                await self._update_material(material.id, syncStatus=SyncStatus.ERROR.value)
                raise
            except CloudStorageError as e:
                self.logger.error(f"Failed to upload material {material.id}: {e}")
                result.record_failure(material.id, str(e))
                await self._update_material(material.id, syncStatus=SyncStatus.ERROR.value)
                continue

            result.uploaded += 1
            await self._update_material(
                material.id, syncStatus=SyncStatus.UP_TO_DATE.value, remoteId=remote_id, size=len(data)
            )
            self.logger.debug(f"Uploaded material {material.id} to {folder_path}")

        return result

    @staticmethod
    def _material_folder(material: Material, chapters: Dict[str, Dict[str, Any]]) -> str:
        chapter = chapters.get(material.chapter_id)
        if chapter and chapter.get("subjectId"):
            return f"{chapter['subjectId']}/{material.chapter_id}"
        return material.chapter_id or "unfiled"

    async def _update_material(self, material_id: Optional[str], **changes):
        """Write sync fields onto the current stored record, if it still exists."""
        if material_id is None:
            return
        current = await self.store.get(Collection.MATERIALS, material_id)
        if not isinstance(current, dict):
            return
        current.update(changes)
        await self.store.set(Collection.MATERIALS, material_id, current, origin=SYNC_ORIGIN)

    # Restore

    async def restore(self) -> bool:
        """Replace local data with the remote backup.

        Returns:
            True if the backup was imported
        """
        async with self._lock:
            return await self._restore(self._epoch)

    async def _restore(self, epoch: int) -> bool:
        if not self.adapter.is_authenticated:
            self._fail(f"Not signed in to {self.adapter.provider_name}", epoch)
            return False

        generation = self.tracker.generation if self.tracker is not None else 0
        self._set_status(SyncStatus.SYNCING_DOWN, epoch=epoch)

        try:
            remote = await self.adapter.find_file(self.backup_file_name)
            if remote is None:
                self.logger.warning(NO_BACKUP_FOUND)
                self._set_status(SyncStatus.IDLE, NO_BACKUP_FOUND, epoch=epoch)
                return False

            data = await self.adapter.download_file(remote.id)
            snapshot = self.codec.loads(data)
            await self.codec.import_snapshot(snapshot, origin=SYNC_ORIGIN)
        except Exception as e:
            self._fail(f"Restore failed: {e}", epoch)
            return False

        self.state_store.last_sync_time = remote.modified_time or self.clock()
        if self.tracker is not None:
            self.tracker.mark_clean(generation)
        self.logger.info(f"Restored backup from {self.adapter.provider_name} ({len(data)} bytes)")
        self._set_status(SyncStatus.UP_TO_DATE, epoch=epoch)
        self.reloads.publish(None)
        return True
