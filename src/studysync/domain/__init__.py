"""Domain models for studysync."""

from .models import (
    SyncStatus,
    TRANSIENT_STATUSES,
    MaterialType,
    Collection,
    SyncableRecord,
    Subject,
    Chapter,
    Material,
    MaterialContent,
    ChatSession,
    ConflictRecord,
    ConflictSide,
    RECORD_TYPES,
)

__all__ = [
    "SyncStatus",
    "TRANSIENT_STATUSES",
    "MaterialType",
    "Collection",
    "SyncableRecord",
    "Subject",
    "Chapter",
    "Material",
    "MaterialContent",
    "ChatSession",
    "ConflictRecord",
    "ConflictSide",
    "RECORD_TYPES",
]
