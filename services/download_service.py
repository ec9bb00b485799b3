"""ArtifactDownloader for authenticated Vonage artifact downloads.

Vonage serves recordings and transcription documents only to requests that
carry an application JWT. The response stream does not reliably report its
length, while the storage engine needs a known length to pick an upload
strategy, so the body is always buffered fully into memory before returning.
"""
import os
import json
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from models.pipeline import Artifact
from models.transcription import TranscriptionDocument
from services.credential_provider import CachedTokenProvider, CredentialError

logger = logging.getLogger(__name__)


class DownloadFailure(Exception):
    """Raised when an artifact cannot be fetched or decoded."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ArtifactDownloader:
    """Authenticated GET of call artifacts into memory."""

    def __init__(
        self,
        credentials: CachedTokenProvider,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            credentials: Process-wide Vonage token provider
            client: HTTP client owned by the caller; a default one with the
                standard timeout is created if omitted
        """
        self.credentials = credentials
        if client is None:
            timeout = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
            client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), follow_redirects=True)
        self.client = client

    async def download(self, url: str) -> Artifact:
        """
        Download a remote resource into a seekable in-memory Artifact.

        Args:
            url: Artifact URL announced by the webhook

        Returns:
            Artifact with the complete body and its content type

        Raises:
            DownloadFailure: On token error, transport error or non-2xx status
        """
        try:
            token = await self.credentials.get_token()
        except CredentialError as e:
            logger.error(f"Token acquisition failed before download: url={url}, error={e}")
            raise DownloadFailure(f"Token acquisition failed: {e}") from e

        logger.info(f"Downloading artifact: url={url}")

        try:
            async with self.client.stream(
                "GET", url, headers={"Authorization": f"Bearer {token}"}
            ) as response:
                if not response.is_success:
                    logger.error(
                        f"Artifact download rejected: url={url}, status={response.status_code}"
                    )
                    raise DownloadFailure(
                        f"Failed to download artifact. Status: {response.status_code}",
                        status_code=response.status_code,
                    )

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                mime_hint = response.headers.get("content-type", "application/octet-stream")

        except httpx.HTTPError as e:
            logger.error(f"Network error downloading artifact: url={url}, error={type(e).__name__}: {e}")
            raise DownloadFailure(f"Network error: {e}") from e

        artifact = Artifact(data=bytes(buffer), mime_hint=mime_hint)
        logger.info(f"Artifact downloaded: url={url}, size={artifact.length_bytes} bytes")
        return artifact

    async def download_transcription(self, url: str) -> TranscriptionDocument:
        """
        Download and decode a Vonage transcription document.

        Raises:
            DownloadFailure: On download failure, empty body, invalid JSON or
                a document without channels
        """
        artifact = await self.download(url)

        if not artifact.data.strip():
            logger.error(f"Empty transcription response: url={url}")
            raise DownloadFailure("Empty transcription response received")

        try:
            document = TranscriptionDocument.model_validate(json.loads(artifact.data))
        except ValidationError as e:
            logger.error(f"Invalid transcription format: url={url}, errors={e.error_count()}")
            raise DownloadFailure(f"Invalid transcription format: {e}") from e
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError (undecodable bytes)
            logger.error(f"Transcription is not valid JSON: url={url}, error={e}")
            raise DownloadFailure(f"JSON parsing error: {e}") from e

        logger.info(f"Transcription decoded: url={url}, channels={len(document.channels)}")
        return document

    async def aclose(self) -> None:
        await self.client.aclose()
