"""studysync - local-first study data with remote backup and conflict detection."""

__version__ = "0.1.0"
__author__ = "studysync developers"

from .codec import ExportCodec, SnapshotError
from .config import ConfigModel, load_config, save_config
from .orchestrator import BackupResult, SyncOrchestrator
from .resolver import ConflictResolver, ResolutionChoice
from .service import SyncService
from .storage import LocalStore, SyncStateStore
from .tracker import ChangeTracker

__all__ = [
    "ExportCodec",
    "SnapshotError",
    "ConfigModel",
    "load_config",
    "save_config",
    "BackupResult",
    "SyncOrchestrator",
    "ConflictResolver",
    "ResolutionChoice",
    "SyncService",
    "LocalStore",
    "SyncStateStore",
    "ChangeTracker",
]
