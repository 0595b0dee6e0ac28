"""Explicit wiring of the sync components."""

import logging
from pathlib import Path
from typing import Optional

from .cloud import CloudAdapter, GoogleDriveAdapter, LocalFolderAdapter
from .codec import ExportCodec
from .config import ConfigError, ConfigModel
from .domain import SyncStatus
from .orchestrator import SyncOrchestrator
from .resolver import ConflictResolver
from .scheduler import AsyncioScheduler, Scheduler
from .storage import LocalStore, SyncStateStore
from .tracker import ChangeTracker


logger = logging.getLogger(__name__)


def create_adapter(config: ConfigModel) -> CloudAdapter:
    """Build the remote storage binding named by the configuration."""
    if config.provider == "local_folder":
        if not config.remote_folder:
            raise ConfigError("The local_folder provider requires remote_folder to be set")
        return LocalFolderAdapter(config.remote_folder, max_upload_bytes=config.max_upload_bytes)
    return GoogleDriveAdapter(
        access_token=config.google_drive_token,
        timeout=config.request_timeout,
        max_upload_bytes=config.max_upload_bytes,
    )


class SyncService:
    """Owns one instance of every sync component.

    Construct, ``await start()``, use, ``await close()``. Nothing is shared
    through module globals; callers hold the service (or its parts).
    """

    def __init__(self, config: ConfigModel, adapter: Optional[CloudAdapter] = None,
                 scheduler: Optional[Scheduler] = None):
        self.config = config
        self.store = LocalStore(config.get_database_path())
        self.state_store = SyncStateStore(config.get_sync_state_path())
        self.codec = ExportCodec(self.store)
        self.adapter = adapter or create_adapter(config)
        self.scheduler = scheduler or AsyncioScheduler()

        self.tracker = ChangeTracker(
            self.store.changes,
            self.adapter.auth_state,
            self.scheduler,
            request_backup=self._request_backup,
            is_conflict_pending=self._is_conflict_pending,
            debounce_seconds=config.debounce_seconds,
            cooldown_seconds=config.cooldown_seconds,
            state_store=self.state_store,
        )
        self.orchestrator = SyncOrchestrator(
            self.store,
            self.state_store,
            self.codec,
            self.adapter,
            tracker=self.tracker,
            backup_file_name=config.backup_file_name,
            clock_skew_ms=config.clock_skew_ms,
            embed_binary_in_backup=config.embed_binary_in_backup,
        )
        self.resolver = ConflictResolver(self.orchestrator)
        self._started = False

    async def _request_backup(self):
        return await self.orchestrator.backup()

    def _is_conflict_pending(self) -> bool:
        return self.orchestrator.status is SyncStatus.CONFLICT

    async def start(self, run_check: bool = True, connect: bool = True) -> SyncStatus:
        """Open the store, sign in if credentials are available and begin tracking.

        Args:
            run_check: Run the initial remote check once signed in
            connect: Sign in to the remote; when False, local changes are
                only recorded as pending

        Returns:
            Sync status after startup
        """
        if self._started:
            return self.orchestrator.status

        self.store.open()
        if connect and not self.adapter.is_authenticated:
            await self.adapter.sign_in()

        self.orchestrator.start()
        self.tracker.start()
        self._started = True
        logger.info(f"Sync service started with {self.adapter.provider_name}")

        if run_check and self.adapter.is_authenticated:
            await self.orchestrator.check_initial_state()
        return self.orchestrator.status

    async def close(self):
        """Stop tracking and release the store and network resources."""
        self.tracker.stop()
        await self.tracker.drain()
        await self.orchestrator.drain()
        self.orchestrator.stop()
        await self.adapter.close()
        self.store.close()
        self._started = False
        logger.debug("Sync service closed")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def database_path(self) -> Path:
        return self.store.db_path
