"""Tests for authenticated artifact downloads."""
import httpx
import pytest

from conftest import StaticTokenProvider, transcription_document
from services.credential_provider import CachedTokenProvider, CredentialError
from services.download_service import ArtifactDownloader, DownloadFailure

ARTIFACT_URL = "https://api.nexmo.com/v1/files/REC-1"


def make_downloader(handler, credentials=None) -> ArtifactDownloader:
    return ArtifactDownloader(
        credentials or StaticTokenProvider("vonage-jwt"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class FailingProvider(CachedTokenProvider):
    name = "failing"

    async def _fetch_token(self):
        raise CredentialError("private key rejected")


class TestDownload:
    """Tests for the raw download."""

    @pytest.mark.asyncio
    async def test_body_is_buffered_with_bearer_token(self):
        seen_headers = []
        payload = b"\x00\x01" * 50_000

        def handler(request):
            seen_headers.append(request.headers.get("Authorization"))
            return httpx.Response(200, content=payload, headers={"Content-Type": "audio/mpeg"})

        artifact = await make_downloader(handler).download(ARTIFACT_URL)

        assert seen_headers == ["Bearer vonage-jwt"]
        assert artifact.data == payload
        assert artifact.length_bytes == len(payload)
        assert artifact.mime_hint == "audio/mpeg"
        assert artifact.as_stream().read() == payload

    @pytest.mark.asyncio
    async def test_404_raises_with_status(self):
        def handler(request):
            return httpx.Response(404, json={"title": "Not Found"})

        with pytest.raises(DownloadFailure) as exc_info:
            await make_downloader(handler).download(ARTIFACT_URL)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_401_raises(self):
        def handler(request):
            return httpx.Response(401)

        with pytest.raises(DownloadFailure) as exc_info:
            await make_downloader(handler).download(ARTIFACT_URL)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("no route to host", request=request)

        with pytest.raises(DownloadFailure) as exc_info:
            await make_downloader(handler).download(ARTIFACT_URL)

        assert exc_info.value.status_code is None
        assert "no route to host" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_token_error_raises_before_request(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200)

        with pytest.raises(DownloadFailure):
            await make_downloader(handler, credentials=FailingProvider()).download(ARTIFACT_URL)

        assert requests == []


class TestDownloadTranscription:
    """Tests for transcription document decoding."""

    @pytest.mark.asyncio
    async def test_document_is_decoded(self):
        def handler(request):
            return httpx.Response(200, json=transcription_document("Hello", "How are you?", duration=12))

        document = await make_downloader(handler).download_transcription(ARTIFACT_URL)

        assert document.extract_transcript() == "Hello\nHow are you?\n"
        assert document.duration_seconds == 12

    @pytest.mark.asyncio
    async def test_empty_body_raises(self):
        def handler(request):
            return httpx.Response(200, content=b"  ")

        with pytest.raises(DownloadFailure):
            await make_downloader(handler).download_transcription(ARTIFACT_URL)

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        def handler(request):
            return httpx.Response(200, content=b"{not json")

        with pytest.raises(DownloadFailure) as exc_info:
            await make_downloader(handler).download_transcription(ARTIFACT_URL)

        assert "JSON" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_undecodable_bytes_raise_download_failure(self):
        """Bytes that are not valid text are a decode failure, not a crash."""
        def handler(request):
            return httpx.Response(200, content=b"\xff\xfe\xfa{garbage")

        with pytest.raises(DownloadFailure) as exc_info:
            await make_downloader(handler).download_transcription(ARTIFACT_URL)

        assert "JSON parsing error" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_document_without_channels_raises(self):
        def handler(request):
            return httpx.Response(200, json={"ver": "1.0.0", "channels": []})

        with pytest.raises(DownloadFailure) as exc_info:
            await make_downloader(handler).download_transcription(ARTIFACT_URL)

        assert "Invalid transcription format" in exc_info.value.message
