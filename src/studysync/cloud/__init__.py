"""Remote storage adapters."""

from .base import (
    AuthState,
    AuthenticationError,
    CloudAdapter,
    CloudFile,
    CloudStorageError,
    DEFAULT_MAX_UPLOAD_BYTES,
    FileTooLargeError,
    NetworkError,
    NotAuthenticatedError,
)
from .google_drive import GoogleDriveAdapter, GoogleDriveAPI
from .local_folder import LocalFolderAdapter

__all__ = [
    "AuthState",
    "AuthenticationError",
    "CloudAdapter",
    "CloudFile",
    "CloudStorageError",
    "DEFAULT_MAX_UPLOAD_BYTES",
    "FileTooLargeError",
    "NetworkError",
    "NotAuthenticatedError",
    "GoogleDriveAdapter",
    "GoogleDriveAPI",
    "LocalFolderAdapter",
]
