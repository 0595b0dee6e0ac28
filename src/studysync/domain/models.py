"""Data models for the synchronized study store.

Every stored entity embeds the SyncableRecord attributes. Records travel
through the LocalStore and snapshots as plain dictionaries using camelCase
wire names; the dataclasses here are the typed view over those dictionaries.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..utils.datetime import now_ms


class SyncStatus(str, Enum):
    """Sync status for records and for the orchestrator itself."""
    IDLE = "idle"
    CHECKING = "checking"
    SYNCING_UP = "syncing_up"
    SYNCING_DOWN = "syncing_down"
    UP_TO_DATE = "up_to_date"
    CONFLICT = "conflict"
    ERROR = "error"
    UPLOAD_PENDING = "upload_pending"
    DOWNLOAD_PENDING = "download_pending"

    @property
    def is_transient(self) -> bool:
        """True for the in-flight states that never outlive a sync attempt."""
        return self in TRANSIENT_STATUSES


TRANSIENT_STATUSES = frozenset({SyncStatus.CHECKING, SyncStatus.SYNCING_UP, SyncStatus.SYNCING_DOWN})


class MaterialType(str, Enum):
    """Kinds of study material."""
    FILE = "file"
    PDF = "pdf"
    TEXT = "text"
    WORD = "docx"
    LINK = "link"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    JUPYTER = "jupyter"


# Materials of these types never carry a binary payload
INLINE_MATERIAL_TYPES = frozenset({MaterialType.TEXT, MaterialType.LINK})


class Collection(str, Enum):
    """Named partitions of the LocalStore, in export order."""
    SETTINGS = "settings"
    SUBJECTS = "subjects"
    CHAPTERS = "chapters"
    MATERIALS = "materials"
    CHAT_SESSIONS = "chatSessions"

    @classmethod
    def parse(cls, value: Union[str, "Collection"]) -> "Collection":
        if isinstance(value, cls):
            return value
        return cls(value)


@dataclass
class SyncableRecord:
    """Attributes shared by every synchronized entity."""

    id: str
    name: str
    created_at: int = field(default_factory=now_ms)
    last_modified: int = field(default_factory=now_ms)
    remote_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.IDLE
    size: Optional[int] = None

    def touch(self, timestamp: Optional[int] = None):
        """Record a local mutation."""
        self.last_modified = timestamp if timestamp is not None else now_ms()

    def _base_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "lastModified": self.last_modified,
            "syncStatus": self.sync_status.value,
        }
        if self.remote_id is not None:
            data["remoteId"] = self.remote_id
        if self.size is not None:
            data["size"] = self.size
        return data

    @staticmethod
    def _base_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": data["id"],
            "name": data.get("name", ""),
            "created_at": int(data.get("createdAt") or 0),
            "last_modified": int(data.get("lastModified") or 0),
            "remote_id": data.get("remoteId"),
            "sync_status": SyncStatus(data.get("syncStatus", SyncStatus.IDLE.value)),
            "size": data.get("size"),
        }

    def to_dict(self) -> Dict[str, Any]:
        return self._base_dict()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncableRecord":
        return cls(**cls._base_kwargs(data))


@dataclass
class Subject(SyncableRecord):
    """Top-level grouping of study material."""

    categories: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data["categories"] = list(self.categories)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Subject":
        return cls(categories=list(data.get("categories", [])), **cls._base_kwargs(data))


@dataclass
class Chapter(SyncableRecord):
    """Ordered section of a subject."""

    subject_id: str = ""
    number: float = 0

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update({"subjectId": self.subject_id, "number": self.number})
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chapter":
        return cls(
            subject_id=data.get("subjectId", ""),
            number=data.get("number", 0),
            **cls._base_kwargs(data),
        )


@dataclass
class MaterialContent:
    """Binary payload of a material, with its MIME type.

    ``data`` is None when the payload has been stripped from a snapshot and
    still has to be fetched from the remote copy.
    """

    mime_type: str = "application/octet-stream"
    data: Optional[bytes] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"mimeType": self.mime_type}
        if self.data is not None:
            data["data"] = self.data
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MaterialContent":
        payload = data.get("data")
        if isinstance(payload, (bytearray, memoryview)):
            payload = bytes(payload)
        return cls(mime_type=data.get("mimeType") or "application/octet-stream", data=payload)


@dataclass
class Material(SyncableRecord):
    """A file, link or note belonging to a chapter."""

    chapter_id: str = ""
    type: MaterialType = MaterialType.FILE
    content: Union[str, MaterialContent, None] = None
    source_ref: Optional[str] = None
    progress: float = 0

    def __post_init__(self):
        """Keep progress inside 0-100."""
        self.progress = max(0, min(100, self.progress or 0))

    @property
    def binary_data(self) -> Optional[bytes]:
        if isinstance(self.content, MaterialContent):
            return self.content.data
        return None

    @property
    def is_binary(self) -> bool:
        """True when this material's content is (or should be) a binary payload."""
        if isinstance(self.content, MaterialContent):
            return True
        return self.content is None and self.type not in INLINE_MATERIAL_TYPES

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data.update({
            "chapterId": self.chapter_id,
            "type": self.type.value,
            "progress": self.progress,
        })
        if isinstance(self.content, MaterialContent):
            data["content"] = self.content.to_dict()
        elif self.content is not None:
            data["content"] = self.content
        if self.source_ref is not None:
            data["sourceRef"] = self.source_ref
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Material":
        content = data.get("content")
        if isinstance(content, dict):
            content = MaterialContent.from_dict(content)
        return cls(
            chapter_id=data.get("chapterId", ""),
            type=MaterialType(data.get("type", MaterialType.FILE.value)),
            content=content,
            source_ref=data.get("sourceRef"),
            progress=data.get("progress", 0),
            **cls._base_kwargs(data),
        )


@dataclass
class ChatSession(SyncableRecord):
    """Stored assistant conversation."""

    messages: List[Dict[str, Any]] = field(default_factory=list)

    def add_message(self, role: str, text: str):
        timestamp = now_ms()
        self.messages.append({"role": role, "text": text, "timestamp": timestamp})
        self.touch(timestamp)

    def to_dict(self) -> Dict[str, Any]:
        data = self._base_dict()
        data["messages"] = [dict(message) for message in self.messages]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatSession":
        return cls(messages=[dict(m) for m in data.get("messages", [])], **cls._base_kwargs(data))


RECORD_TYPES = {
    Collection.SUBJECTS: Subject,
    Collection.CHAPTERS: Chapter,
    Collection.MATERIALS: Material,
    Collection.CHAT_SESSIONS: ChatSession,
}


@dataclass(frozen=True)
class ConflictSide:
    """One replica's view in a conflict."""

    modified_time: int
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"modifiedTime": self.modified_time, "size": self.size}


@dataclass(frozen=True)
class ConflictRecord:
    """Divergent local/remote metadata awaiting an explicit resolution."""

    cloud: ConflictSide
    local: ConflictSide

    def to_dict(self) -> Dict[str, Any]:
        return {"cloud": self.cloud.to_dict(), "local": self.local.to_dict()}

    def describe(self) -> str:
        """Get human-readable description of the conflict."""
        if self.cloud.modified_time > self.local.modified_time:
            return "The remote backup was modified after the last local sync"
        return "Local data and the remote backup have both changed since the last sync"
