"""Remote blob-storage contract.

Adapters locate, upload, download and enumerate named blobs inside a private,
application-scoped area of some remote backend. The sync core only talks to
this interface; concrete bindings are swappable.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..utils.datetime import parse_timestamp_ms


logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024


class CloudStorageError(Exception):
    """Base exception for remote storage operations."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthenticationError(CloudStorageError):
    """Credentials were rejected; the adapter has already signed out."""
    pass


class NotAuthenticatedError(CloudStorageError):
    """Operation attempted before a successful sign-in."""
    pass


class NetworkError(CloudStorageError):
    """Network connectivity issues."""
    pass


class FileTooLargeError(CloudStorageError):
    """Upload exceeds the adapter's size limit."""
    pass


def _normalize_size(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric file size from remote: {value!r}")
        return None


@dataclass
class CloudFile:
    """Metadata of a remote blob, normalized to strict types."""

    id: str
    name: str
    modified_time: Optional[int] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None
    parents: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CloudFile":
        """Build from a raw metadata mapping.

        Sizes may arrive as strings or numbers and times as RFC 3339 strings
        or epoch milliseconds; both are normalized here.
        """
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            modified_time=parse_timestamp_ms(data.get("modifiedTime")),
            size=_normalize_size(data.get("size")),
            mime_type=data.get("mimeType"),
            parents=list(data.get("parents") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "modifiedTime": self.modified_time,
            "size": self.size,
            "mimeType": self.mime_type,
            "parents": list(self.parents),
        }


AuthListener = Callable[["AuthState"], None]


class AuthState:
    """Shared authentication flags with change notification.

    ``loaded`` turns true once the adapter knows whether it is signed in.
    Listeners are called synchronously, in subscription order, whenever a
    flag actually changes.
    """

    def __init__(self):
        self.loaded = False
        self.authenticated = False
        self.error: Optional[str] = None
        self._listeners: List[AuthListener] = []

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, *, loaded: Optional[bool] = None, authenticated: Optional[bool] = None,
               error: Optional[str] = None):
        """Apply new flag values and notify listeners if anything changed.

        ``error`` is kept until a new one is reported or a sign-in succeeds.
        """
        before = (self.loaded, self.authenticated, self.error)
        if loaded is not None:
            self.loaded = loaded
        if authenticated is not None:
            self.authenticated = authenticated
        if error is not None:
            self.error = error
        elif authenticated:
            self.error = None

        if (self.loaded, self.authenticated, self.error) == before:
            return

        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Auth state listener failed: {e}")


class CloudAdapter(ABC):
    """Base class for all remote storage bindings.

    Every storage operation requires a prior successful ``sign_in()`` and
    raises ``NotAuthenticatedError`` otherwise.
    """

    provider_name = "cloud"

    def __init__(self, max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES):
        self.auth_state = AuthState()
        self.max_upload_bytes = max_upload_bytes
        self.logger = logging.getLogger(__name__)

    @property
    def is_authenticated(self) -> bool:
        return self.auth_state.authenticated

    def _require_auth(self):
        if not self.auth_state.authenticated:
            raise NotAuthenticatedError(f"Not signed in to {self.provider_name}")

    def _check_upload_size(self, data: bytes, name: str):
        if len(data) > self.max_upload_bytes:
            raise FileTooLargeError(
                f"{name} is {len(data)} bytes, above the {self.max_upload_bytes} byte upload limit"
            )

    @abstractmethod
    async def sign_in(self) -> bool:
        """Establish an authenticated session.

        Returns:
            True if signed in
        """
        pass

    @abstractmethod
    async def sign_out(self):
        pass

    @abstractmethod
    async def find_file(self, name: str, folder_path: Optional[str] = None) -> Optional[CloudFile]:
        """Find a file by name, inside ``folder_path`` or the root of the app area.

        Returns:
            File metadata, or None if there is no such file
        """
        pass

    @abstractmethod
    async def upload_file(self, data: bytes, name: str, mime_type: str,
                          folder_path: Optional[str] = None) -> str:
        """Create or overwrite a named file.

        Args:
            data: File contents
            name: File name within the folder
            mime_type: Content type
            folder_path: Slash-separated folder path, created if missing

        Returns:
            Remote id of the file
        """
        pass

    @abstractmethod
    async def download_file(self, remote_id: str) -> bytes:
        pass

    @abstractmethod
    async def list_files(self, parent_id: Optional[str] = None) -> List[CloudFile]:
        pass

    @abstractmethod
    async def get_metadata(self, remote_id: str) -> CloudFile:
        pass

    @abstractmethod
    async def delete_file(self, remote_id: str) -> bool:
        pass

    async def close(self):
        """Release network resources."""
        pass
