"""Directory-backed binding for the remote storage contract.

Useful for a mounted network share or a folder kept in sync by another tool.
Remote ids are POSIX paths relative to the root directory.
"""

import logging
import mimetypes
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import List, Optional, Union

from .base import CloudAdapter, CloudFile, CloudStorageError, DEFAULT_MAX_UPLOAD_BYTES
from ..utils.datetime import parse_timestamp_ms


logger = logging.getLogger(__name__)


class LocalFolderAdapter(CloudAdapter):
    """CloudAdapter that stores blobs as files under a root directory."""

    provider_name = "local folder"

    def __init__(self, root: Union[str, Path], max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES):
        super().__init__(max_upload_bytes=max_upload_bytes)
        self.root = Path(root).expanduser()
        self.auth_state.update(loaded=True, authenticated=False)

    def is_available(self) -> bool:
        """Check if the root directory is accessible."""
        return self.root.exists() or self.root.parent.exists()

    async def sign_in(self) -> bool:
        if not self.is_available():
            self.auth_state.update(authenticated=False, error=f"Folder {self.root} is not accessible")
            return False
        self.root.mkdir(parents=True, exist_ok=True)
        self.auth_state.update(loaded=True, authenticated=True)
        self.logger.info(f"Using local folder {self.root} as remote storage")
        return True

    async def sign_out(self):
        self.auth_state.update(authenticated=False)

    def _path(self, remote_id: str) -> Path:
        relative = PurePosixPath(remote_id)
        if relative.is_absolute() or ".." in relative.parts:
            raise CloudStorageError(f"Invalid remote id: {remote_id}")
        return self.root.joinpath(*relative.parts)

    def _metadata(self, path: Path) -> CloudFile:
        stat = path.stat()
        relative = path.relative_to(self.root).as_posix()
        parent = path.parent.relative_to(self.root).as_posix()
        return CloudFile(
            id=relative,
            name=path.name,
            modified_time=parse_timestamp_ms(stat.st_mtime * 1000),
            size=None if path.is_dir() else stat.st_size,
            mime_type="inode/directory" if path.is_dir() else mimetypes.guess_type(path.name)[0],
            parents=[] if parent == "." else [parent],
        )

    async def find_file(self, name: str, folder_path: Optional[str] = None) -> Optional[CloudFile]:
        self._require_auth()
        folder = self._path(folder_path) if folder_path else self.root
        path = folder / name
        if not path.is_file():
            return None
        return self._metadata(path)

    async def upload_file(self, data: bytes, name: str, mime_type: str,
                          folder_path: Optional[str] = None) -> str:
        self._require_auth()
        self._check_upload_size(data, name)

        folder = self._path(folder_path) if folder_path else self.root
        path = folder / name
        try:
            folder.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(folder), prefix=f".{name}.")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, path)
        except OSError as e:
            raise CloudStorageError(f"Failed to write {path}: {e}") from e

        self.logger.debug(f"Wrote {len(data)} bytes to {path}")
        return path.relative_to(self.root).as_posix()

    async def download_file(self, remote_id: str) -> bytes:
        self._require_auth()
        path = self._path(remote_id)
        try:
            return path.read_bytes()
        except OSError as e:
            raise CloudStorageError(f"Failed to read {remote_id}: {e}", status_code=404) from e

    async def list_files(self, parent_id: Optional[str] = None) -> List[CloudFile]:
        self._require_auth()
        folder = self._path(parent_id) if parent_id else self.root
        if not folder.is_dir():
            return []
        entries = [p for p in folder.iterdir() if not p.name.startswith(".")]
        return [self._metadata(p) for p in sorted(entries, key=lambda p: p.name)]

    async def get_metadata(self, remote_id: str) -> CloudFile:
        self._require_auth()
        path = self._path(remote_id)
        if not path.exists():
            raise CloudStorageError(f"File not found: {remote_id}", status_code=404)
        return self._metadata(path)

    async def delete_file(self, remote_id: str) -> bool:
        self._require_auth()
        path = self._path(remote_id)
        if not path.is_file():
            return False
        path.unlink()
        return True
