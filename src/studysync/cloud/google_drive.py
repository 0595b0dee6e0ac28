"""Google Drive binding for the remote storage contract.

All files live in the Drive ``appDataFolder`` space, which is private to the
application. Access tokens are obtained outside this package (OAuth is not
implemented here) and handed to ``sign_in``.
"""

import httpx
import json
import logging
import os
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .base import (
    AuthenticationError,
    CloudAdapter,
    CloudFile,
    CloudStorageError,
    DEFAULT_MAX_UPLOAD_BYTES,
    NetworkError,
)


logger = logging.getLogger(__name__)

APP_DATA_FOLDER = "appDataFolder"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "id, name, mimeType, modifiedTime, size, parents"
TOKEN_ENV_VAR = "STUDYSYNC_GOOGLE_DRIVE_TOKEN"


def _quote(value: str) -> str:
    """Escape a literal for a Drive search query."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_multipart_body(metadata: Dict[str, Any], data: bytes, mime_type: str,
                         boundary: str) -> bytes:
    """Assemble a ``multipart/related`` upload body: JSON metadata, then media."""
    delimiter = f"\r\n--{boundary}\r\n".encode("ascii")
    close_delimiter = f"\r\n--{boundary}--".encode("ascii")
    return b"".join([
        delimiter,
        b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
        json.dumps(metadata).encode("utf-8"),
        delimiter,
        f"Content-Type: {mime_type}\r\n\r\n".encode("ascii"),
        data,
        close_delimiter,
    ])


class GoogleDriveAPI:
    """Drive v3 REST client over httpx."""

    BASE_URL = "https://www.googleapis.com/drive/v3/"
    UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/"

    def __init__(self, access_token: str, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0,
                 on_unauthorized: Optional[Callable[[], Awaitable[None]]] = None):
        """Initialize Drive API client.

        Args:
            access_token: OAuth bearer token with the drive.appdata scope
            client: Shared HTTP client; one is created when omitted
            timeout: Request timeout in seconds
            on_unauthorized: Coroutine run on a 401, before the error is raised
        """
        self.access_token = access_token
        self.headers = {"Authorization": f"Bearer {access_token}"}
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.on_unauthorized = on_unauthorized
        self.logger = logging.getLogger(__name__)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        if isinstance(error, str):
            return error
        return response.text or response.reason_phrase

    async def _make_request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None,
                            json_data: Optional[Dict[str, Any]] = None,
                            content: Optional[bytes] = None,
                            headers: Optional[Dict[str, str]] = None,
                            raw: bool = False) -> Any:
        """Make HTTP request to the Drive API.

        Args:
            method: HTTP method
            url: Absolute URL
            params: Query parameters
            json_data: JSON request body
            content: Raw request body
            headers: Extra headers
            raw: Return the response body as bytes instead of parsed JSON

        Returns:
            Response data

        Raises:
            AuthenticationError: If the token was rejected
            NetworkError: If the request could not be completed
            CloudStorageError: For any other error response
        """
        request_headers = dict(self.headers)
        if headers:
            request_headers.update(headers)

        try:
            response = await self.client.request(
                method, url, params=params, json=json_data, content=content, headers=request_headers
            )
        except httpx.TimeoutException:
            raise NetworkError("Google Drive request timed out")
        except httpx.RequestError as e:
            raise NetworkError(f"Google Drive request failed: {e}")

        if response.status_code == 401:
            self.logger.warning("Google Drive rejected the access token; signing out")
            if self.on_unauthorized is not None:
                await self.on_unauthorized()
            raise AuthenticationError(
                f"Google Drive authentication failed: {self._error_message(response)}",
                status_code=401,
            )
        elif response.status_code >= 400:
            raise CloudStorageError(
                f"Google Drive API error {response.status_code}: {self._error_message(response)}",
                status_code=response.status_code,
            )

        if raw:
            return response.content
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    # Files

    async def list_files(self, query: str, fields: str = FILE_FIELDS,
                         order_by: Optional[str] = None) -> List[Dict[str, Any]]:
        """List every file matching a query, following pagination."""
        files: List[Dict[str, Any]] = []
        params: Dict[str, Any] = {
            "spaces": APP_DATA_FOLDER,
            "q": query,
            "fields": f"nextPageToken, files({fields})",
        }
        if order_by:
            params["orderBy"] = order_by

        while True:
            result = await self._make_request("GET", self.BASE_URL + "files", params=params)
            files.extend(result.get("files", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return files
            params["pageToken"] = page_token

    async def create_folder(self, name: str, parent_id: str) -> Dict[str, Any]:
        metadata = {"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]}
        return await self._make_request(
            "POST", self.BASE_URL + "files", params={"fields": "id"}, json_data=metadata
        )

    async def upload(self, data: bytes, metadata: Dict[str, Any], mime_type: str,
                     file_id: Optional[str] = None) -> Dict[str, Any]:
        """Multipart upload: PATCH an existing file or POST a new one."""
        boundary = f"studysync-{uuid.uuid4().hex}"
        body = build_multipart_body(metadata, data, mime_type, boundary)
        url = self.UPLOAD_URL + "files" + (f"/{file_id}" if file_id else "")
        return await self._make_request(
            "PATCH" if file_id else "POST",
            url,
            params={"uploadType": "multipart", "fields": "id"},
            content=body,
            headers={"Content-Type": f'multipart/related; boundary="{boundary}"'},
        )

    async def get_file(self, file_id: str, fields: str = FILE_FIELDS) -> Dict[str, Any]:
        return await self._make_request("GET", self.BASE_URL + f"files/{file_id}", params={"fields": fields})

    async def get_media(self, file_id: str) -> bytes:
        return await self._make_request(
            "GET", self.BASE_URL + f"files/{file_id}", params={"alt": "media"}, raw=True
        )

    async def delete(self, file_id: str):
        await self._make_request("DELETE", self.BASE_URL + f"files/{file_id}")


class GoogleDriveAdapter(CloudAdapter):
    """CloudAdapter over the Drive application data folder."""

    provider_name = "Google Drive"

    def __init__(self, access_token: Optional[str] = None, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0, max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES):
        """Initialize the adapter.

        Args:
            access_token: Bearer token; falls back to STUDYSYNC_GOOGLE_DRIVE_TOKEN
            client: HTTP client to use for every request
            timeout: Request timeout in seconds
            max_upload_bytes: Largest accepted upload
        """
        super().__init__(max_upload_bytes=max_upload_bytes)
        self.access_token = access_token or os.environ.get(TOKEN_ENV_VAR)
        self.client = client
        self.timeout = timeout
        self.api: Optional[GoogleDriveAPI] = None
        self._folder_ids: Dict[str, str] = {}
        self.auth_state.update(loaded=True, authenticated=False)

    async def sign_in(self, access_token: Optional[str] = None) -> bool:
        """Sign in with the given (or configured) access token."""
        token = access_token or self.access_token
        if not token:
            self.auth_state.update(authenticated=False, error="No Google Drive access token configured")
            return False

        if self.api is not None:
            await self.api.aclose()
        self.access_token = token
        self.api = GoogleDriveAPI(
            token, client=self.client, timeout=self.timeout, on_unauthorized=self.sign_out
        )
        self.auth_state.update(loaded=True, authenticated=True)
        self.logger.info("Signed in to Google Drive")
        return True

    async def sign_out(self):
        self.access_token = None
        self._folder_ids.clear()
        if self.api is not None:
            await self.api.aclose()
            self.api = None
        self.auth_state.update(authenticated=False)
        self.logger.info("Signed out of Google Drive")

    async def close(self):
        """Close the HTTP client if this adapter created it."""
        if self.api is not None:
            await self.api.aclose()

    def _client(self) -> GoogleDriveAPI:
        self._require_auth()
        return self.api

    # Folders

    async def _find_in_parent(self, name: str, parent_id: str,
                              folders_only: bool = False) -> Optional[Dict[str, Any]]:
        query = f"name = '{_quote(name)}' and '{_quote(parent_id)}' in parents and trashed = false"
        if folders_only:
            query += f" and mimeType = '{FOLDER_MIME_TYPE}'"
        files = await self._client().list_files(query)
        return files[0] if files else None

    async def _resolve_folder(self, folder_path: Optional[str], create: bool) -> Optional[str]:
        """Resolve ``a/b/c`` to a folder id, segment by segment."""
        parent_id = APP_DATA_FOLDER
        if not folder_path:
            return parent_id

        walked = []
        for segment in [s for s in folder_path.split("/") if s]:
            walked.append(segment)
            key = "/".join(walked)
            if key in self._folder_ids:
                parent_id = self._folder_ids[key]
                continue

            found = await self._find_in_parent(segment, parent_id, folders_only=True)
            if found is not None:
                parent_id = found["id"]
            elif create:
                self.logger.debug(f"Creating folder '{segment}' in {parent_id}")
                parent_id = (await self._client().create_folder(segment, parent_id))["id"]
            else:
                return None
            self._folder_ids[key] = parent_id

        return parent_id

    # Files

    async def find_file(self, name: str, folder_path: Optional[str] = None) -> Optional[CloudFile]:
        self._require_auth()
        parent_id = await self._resolve_folder(folder_path, create=False)
        if parent_id is None:
            return None
        found = await self._find_in_parent(name, parent_id)
        return CloudFile.from_api(found) if found else None

    async def upload_file(self, data: bytes, name: str, mime_type: str,
                          folder_path: Optional[str] = None) -> str:
        self._require_auth()
        self._check_upload_size(data, name)

        parent_id = await self._resolve_folder(folder_path, create=True)
        existing = await self._find_in_parent(name, parent_id)

        metadata: Dict[str, Any] = {"name": name, "mimeType": mime_type}
        if existing is None:
            metadata["parents"] = [parent_id]

        self.logger.debug(f"Uploading '{name}' ({len(data)} bytes) to folder {parent_id}")
        result = await self._client().upload(
            data, metadata, mime_type, file_id=existing["id"] if existing else None
        )
        return result["id"]

    async def download_file(self, remote_id: str) -> bytes:
        return await self._client().get_media(remote_id)

    async def list_files(self, parent_id: Optional[str] = None) -> List[CloudFile]:
        query = f"'{_quote(parent_id or APP_DATA_FOLDER)}' in parents and trashed = false"
        files = await self._client().list_files(query, order_by="name")
        return [CloudFile.from_api(f) for f in files]

    async def get_metadata(self, remote_id: str) -> CloudFile:
        return CloudFile.from_api(await self._client().get_file(remote_id))

    async def delete_file(self, remote_id: str) -> bool:
        await self._client().delete(remote_id)
        return True
