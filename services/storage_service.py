"""OneDrive storage service for call artifacts (Microsoft Graph v1.0).

This module persists pipeline output into a dated folder hierarchy:

    {root_folder}/{yyyy-MM-dd}/{prefix}_{yyyyMMdd_HHmmss}_{recording_id}.{ext}

Upload algorithm:
1. Resolve the user's drive, then get-or-create the root folder and the
   date-partition subfolder. Lookup is by path; a missing folder is created
   with conflictBehavior=rename so a concurrent creator never overwrites or
   fails.
2. Files under 4 MiB go up in a single PUT. Larger files use a resumable
   upload session and are sent in 3.2 MB slices (a multiple of 320 KiB, as
   Graph requires), reporting cumulative progress after every slice.
3. The remote item id is returned.

Any failure is raised as UploadFailure carrying the Graph error code and
message. A failed resumable upload cancels its session so no partial item
is left behind.

Configuration:
- ONEDRIVE_USER_ID: UPN or object id of the drive owner
- ONEDRIVE_UPLOAD_FOLDER: root folder name (default: CallRecordings)
- HTTP_TIMEOUT_SECONDS: per-request timeout (default: 30)
"""
import os
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional
from urllib.parse import quote

import httpx

from models.pipeline import Artifact, UploadResult, UploadTarget
from services.credential_provider import CachedTokenProvider, CredentialError

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

# Graph simple upload limit
SIMPLE_UPLOAD_THRESHOLD = 4 * 1024 * 1024
# Slice size must be a multiple of 320 KiB
UPLOAD_SLICE_SIZE = 320 * 1024 * 10

DEFAULT_ROOT_FOLDER = "CallRecordings"

ProgressCallback = Callable[[int, int], None]


class UploadFailure(Exception):
    """Raised when a folder or file operation against OneDrive fails."""

    def __init__(self, message: str, code: str = "UploadFailed", status_code: Optional[int] = None):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(f"{code}: {message}")


def date_partition(timestamp: datetime) -> str:
    """Folder name for the day of the timestamp: yyyy-MM-dd."""
    return timestamp.strftime("%Y-%m-%d")


def build_file_name(prefix: str, timestamp: datetime, recording_id: str, extension: str) -> str:
    """Deterministic file name: {prefix}_{yyyyMMdd_HHmmss}_{recording_id}.{ext}"""
    safe_recording_id = recording_id.replace("/", "_").replace("\\", "_")
    return f"{prefix}_{timestamp.strftime('%Y%m%d_%H%M%S')}_{safe_recording_id}.{extension}"


def build_upload_target(
    root_folder: str,
    prefix: str,
    timestamp: datetime,
    recording_id: str,
    extension: str,
) -> UploadTarget:
    return UploadTarget(
        root_folder=root_folder,
        date_partition=date_partition(timestamp),
        file_name=build_file_name(prefix, timestamp, recording_id, extension),
    )


def _log_progress(file_name: str) -> ProgressCallback:
    def on_progress(bytes_sent: int, total: int) -> None:
        percentage = bytes_sent * 100 // total if total else 100
        logger.debug(f"Upload progress: file={file_name}, {percentage}% ({bytes_sent}/{total} bytes)")
    return on_progress


class StorageService:
    """Microsoft Graph backed OneDrive upload engine."""

    def __init__(
        self,
        credentials: CachedTokenProvider,
        client: Optional[httpx.AsyncClient] = None,
        user_id: Optional[str] = None,
        root_folder: Optional[str] = None,
        base_url: str = GRAPH_BASE_URL,
    ):
        """
        Args:
            credentials: Process-wide Graph token provider
            client: HTTP client owned by the caller
            user_id: Drive owner (defaults to ONEDRIVE_USER_ID)
            root_folder: Root folder name (defaults to ONEDRIVE_UPLOAD_FOLDER)
        """
        self.credentials = credentials
        self.user_id = user_id or os.getenv("ONEDRIVE_USER_ID")
        self.root_folder = root_folder or os.getenv("ONEDRIVE_UPLOAD_FOLDER", DEFAULT_ROOT_FOLDER)
        self.base_url = base_url.rstrip("/")
        if client is None:
            timeout = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
            client = httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self.client = client

        if not self.user_id:
            raise ValueError("ONEDRIVE_USER_ID environment variable is required")

        self._drive_id: Optional[str] = None
        self._folder_ids: Dict[str, str] = {}
        self._folder_lock = asyncio.Lock()

    # --- Graph plumbing ---

    async def _headers(self) -> dict:
        try:
            token = await self.credentials.get_token()
        except CredentialError as e:
            raise UploadFailure(str(e), code="CredentialError") from e
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers.update(await self._headers())
        try:
            return await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise UploadFailure(f"Network error: {e}", code="NetworkError") from e

    @staticmethod
    def _graph_error(response: httpx.Response, default_code: str) -> UploadFailure:
        code, message = default_code, response.text[:200]
        try:
            error = response.json().get("error", {})
            code = error.get("code") or default_code
            message = error.get("message") or message
        except (ValueError, AttributeError):
            pass
        return UploadFailure(message, code=code, status_code=response.status_code)

    @staticmethod
    def _json(response: httpx.Response, code: str, required: str = "id") -> dict:
        """Decode a successful Graph response that must carry `required`."""
        try:
            body = response.json()
        except ValueError as e:
            raise UploadFailure(
                f"Malformed Graph response: {e}", code=code, status_code=response.status_code
            ) from e
        if not isinstance(body, dict) or not body.get(required):
            raise UploadFailure(
                f"Graph response did not include '{required}'", code=code, status_code=response.status_code
            )
        return body

    async def _get_drive_id(self) -> str:
        if self._drive_id is not None:
            return self._drive_id

        response = await self._request("GET", f"{self.base_url}/users/{quote(self.user_id)}/drive")
        if response.status_code != 200:
            logger.error(f"Failed to retrieve drive: user_id={self.user_id}, status={response.status_code}")
            raise self._graph_error(response, "GetDriveFailed")

        self._drive_id = self._json(response, "GetDriveFailed")["id"]
        logger.debug(f"Retrieved drive {self._drive_id} for user {self.user_id}")
        return self._drive_id

    # --- Folders ---

    async def _get_or_create_folder(self, drive_id: str, parent_id: Optional[str], name: str) -> str:
        """Return the id of folder `name` under parent (None = drive root), creating it if missing."""
        if parent_id is None:
            lookup_url = f"{self.base_url}/drives/{drive_id}/root:/{quote(name)}"
            create_url = f"{self.base_url}/drives/{drive_id}/root/children"
        else:
            lookup_url = f"{self.base_url}/drives/{drive_id}/items/{parent_id}:/{quote(name)}"
            create_url = f"{self.base_url}/drives/{drive_id}/items/{parent_id}/children"

        response = await self._request("GET", lookup_url)
        if response.status_code == 200:
            logger.debug(f"Folder {name} already exists")
            return self._json(response, "FolderLookupFailed")["id"]
        if response.status_code != 404:
            logger.error(f"Folder lookup failed: name={name}, status={response.status_code}")
            raise self._graph_error(response, "FolderLookupFailed")

        logger.debug(f"Folder {name} not found, creating...")
        response = await self._request(
            "POST",
            create_url,
            json={
                "name": name,
                "folder": {},
                "@microsoft.graph.conflictBehavior": "rename",
            },
        )
        if response.status_code not in (200, 201):
            logger.error(f"Folder creation failed: name={name}, status={response.status_code}")
            raise self._graph_error(response, "FolderCreationFailed")

        folder_id = self._json(response, "FolderCreationFailed")["id"]

        logger.info(f"Created folder {name} with ID {folder_id}")
        return folder_id

    async def ensure_folder(self, target: UploadTarget) -> str:
        """Get or create {root_folder}/{date_partition}; returns the partition folder id.

        Folder ids are remembered for the lifetime of this instance, so two
        uploads in the same run resolve the hierarchy once.
        """
        key = f"{target.root_folder}/{target.date_partition}"
        async with self._folder_lock:
            if key in self._folder_ids:
                return self._folder_ids[key]

            drive_id = await self._get_drive_id()
            root_id = await self._get_or_create_folder(drive_id, None, target.root_folder)
            partition_id = await self._get_or_create_folder(drive_id, root_id, target.date_partition)
            self._folder_ids[key] = partition_id
            return partition_id

    # --- Uploads ---

    async def upload(
        self,
        target: UploadTarget,
        artifact: Artifact,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """
        Upload an artifact to {root}/{date}/{file_name}.

        Args:
            target: Destination folder and file name
            artifact: Fully buffered artifact
            on_progress: Called with (bytes_sent, total) after each slice of a
                resumable upload

        Returns:
            UploadResult with the remote item id

        Raises:
            UploadFailure: On any folder, session or transfer error
        """
        logger.info(f"Uploading file to OneDrive path: {target.path}, size={artifact.length_bytes} bytes")

        folder_id = await self.ensure_folder(target)
        drive_id = await self._get_drive_id()

        if artifact.length_bytes < SIMPLE_UPLOAD_THRESHOLD:
            return await self._simple_upload(drive_id, folder_id, target, artifact)
        return await self._chunked_upload(
            drive_id, folder_id, target, artifact, on_progress or _log_progress(target.file_name)
        )

    def _item_url(self, drive_id: str, folder_id: str, file_name: str) -> str:
        return f"{self.base_url}/drives/{drive_id}/items/{folder_id}:/{quote(file_name)}:"

    async def _simple_upload(
        self, drive_id: str, folder_id: str, target: UploadTarget, artifact: Artifact
    ) -> UploadResult:
        logger.info(f"Using simple upload for file {target.file_name}")

        response = await self._request(
            "PUT",
            f"{self._item_url(drive_id, folder_id, target.file_name)}/content",
            content=artifact.data,
            headers={"Content-Type": artifact.mime_hint},
        )
        if response.status_code not in (200, 201):
            logger.error(f"Simple upload failed: file={target.file_name}, status={response.status_code}")
            raise self._graph_error(response, "UploadFailed")

        return self._upload_result(response, target)

    async def _chunked_upload(
        self,
        drive_id: str,
        folder_id: str,
        target: UploadTarget,
        artifact: Artifact,
        on_progress: ProgressCallback,
    ) -> UploadResult:
        total = artifact.length_bytes
        logger.info(f"Using chunked upload for file {target.file_name} (size: {total} bytes)")

        response = await self._request(
            "POST",
            f"{self._item_url(drive_id, folder_id, target.file_name)}/createUploadSession",
            json={"item": {"@microsoft.graph.conflictBehavior": "replace"}},
        )
        if response.status_code != 200:
            logger.error(f"Upload session creation failed: file={target.file_name}, status={response.status_code}")
            raise self._graph_error(response, "UploadSessionFailed")

        upload_url = self._json(response, "UploadSessionFailed", required="uploadUrl")["uploadUrl"]

        try:
            stream = artifact.as_stream()
            sent = 0
            final_response: Optional[httpx.Response] = None
            while sent < total:
                chunk = stream.read(UPLOAD_SLICE_SIZE)
                end = sent + len(chunk) - 1
                # The upload URL is pre-authenticated; no bearer token on slices
                try:
                    slice_response = await self.client.put(
                        upload_url,
                        content=chunk,
                        headers={
                            "Content-Length": str(len(chunk)),
                            "Content-Range": f"bytes {sent}-{end}/{total}",
                        },
                    )
                except httpx.HTTPError as e:
                    raise UploadFailure(f"Network error during slice upload: {e}", code="NetworkError") from e

                if slice_response.status_code not in (200, 201, 202):
                    logger.error(
                        f"Slice upload failed: file={target.file_name}, range={sent}-{end}, "
                        f"status={slice_response.status_code}"
                    )
                    raise self._graph_error(slice_response, "ChunkedUploadError")

                sent = end + 1
                on_progress(sent, total)
                if slice_response.status_code in (200, 201):
                    final_response = slice_response

            if final_response is None:
                raise UploadFailure(
                    "Chunked upload did not complete successfully", code="ChunkedUploadFailed"
                )
        except UploadFailure:
            await self._cancel_session(upload_url, target.file_name)
            raise

        logger.info(f"Chunked upload completed: file={target.file_name}")
        return self._upload_result(final_response, target)

    async def _cancel_session(self, upload_url: str, file_name: str) -> None:
        try:
            await self.client.delete(upload_url)
            logger.info(f"Cancelled upload session: file={file_name}")
        except httpx.HTTPError as e:
            logger.warning(f"Failed to cancel upload session: file={file_name}, error={e}")

    @classmethod
    def _upload_result(cls, response: httpx.Response, target: UploadTarget) -> UploadResult:
        item = cls._json(response, "UploadFailed")
        remote_id = item["id"]

        logger.info(f"File uploaded successfully with ID: {remote_id}")
        return UploadResult(remote_id=remote_id, file_name=target.file_name, web_url=item.get("webUrl"))

    async def aclose(self) -> None:
        await self.client.aclose()
