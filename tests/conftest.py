"""Shared fixtures and protocol fakes for the pipeline tests.

Environment variables are set here, before any test imports main.
"""
import os
import re
import json
import time
import itertools
from typing import Dict, List, Optional, Tuple

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from services.credential_provider import AccessToken, CachedTokenProvider, reset_credential_providers

_TEST_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
TEST_PRIVATE_KEY_PEM = _TEST_KEY.private_bytes(
    serialization.Encoding.PEM,
    serialization.PrivateFormat.PKCS8,
    serialization.NoEncryption(),
).decode()
TEST_PUBLIC_KEY_PEM = _TEST_KEY.public_key().public_bytes(
    serialization.Encoding.PEM,
    serialization.PublicFormat.SubjectPublicKeyInfo,
).decode()

# Set test environment before importing app
os.environ["VONAGE_APPLICATION_ID"] = "11111111-2222-3333-4444-555555555555"
os.environ["VONAGE_PRIVATE_KEY"] = TEST_PRIVATE_KEY_PEM
os.environ["VONAGE_FROM_NUMBER"] = "15550001111"
os.environ["GRAPH_TENANT_ID"] = "tenant-test-0000"
os.environ["GRAPH_CLIENT_ID"] = "client-test-0000"
os.environ["GRAPH_CLIENT_SECRET"] = "graph-test-secret"
os.environ["ONEDRIVE_USER_ID"] = "recordings@example.com"
os.environ["WEBHOOK_DEDUP_ENABLED"] = "false"
os.environ.pop("VONAGE_SIGNATURE_SECRET", None)

GRAPH_BASE = "https://graph.microsoft.com/v1.0"
VONAGE_BASE = "https://api.nexmo.com"
MCP_URL = "http://mcp.test/mcp/"


class StaticTokenProvider(CachedTokenProvider):
    """Token provider that never leaves the process."""

    name = "static"

    def __init__(self, token: str = "test-token"):
        super().__init__()
        self.token_value = token

    async def _fetch_token(self) -> AccessToken:
        return AccessToken(token=self.token_value, expires_at=time.time() + 3600)


class FakeGraph:
    """In-memory Microsoft Graph drive answering the OneDrive calls StorageService makes."""

    UPLOAD_HOST = "https://upload.graph.test/sessions"

    def __init__(
        self,
        fail_slice_at: Optional[int] = None,
        fail_simple_upload: bool = False,
        fail_upload_prefix: Optional[str] = None,
    ):
        self.drive_id = "drive-1"
        self.folders: Dict[Tuple[str, str], str] = {}
        self.items: Dict[Tuple[str, str], dict] = {}
        self.sessions: Dict[str, dict] = {}
        self.cancelled: List[str] = []
        self.requests: List[Tuple[str, str]] = []
        self.fail_slice_at = fail_slice_at
        self.fail_simple_upload = fail_simple_upload
        self.fail_upload_prefix = fail_upload_prefix
        self._ids = itertools.count(1)
        self._slice_count = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def _new_id(self, kind: str) -> str:
        return f"{kind}-{next(self._ids)}"

    def _store(self, folder_id: str, name: str, content: bytes) -> dict:
        item_id = self._new_id("item")
        item = {
            "id": item_id,
            "name": name,
            "size": len(content),
            "webUrl": f"https://onedrive.test/{folder_id}/{name}",
            "content": content,
        }
        self.items[(folder_id, name)] = item
        return {k: v for k, v in item.items() if k != "content"}

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append((request.method, url))

        if url.startswith(self.UPLOAD_HOST):
            return self._handle_session(request, url.rsplit("/", 1)[-1])

        path = request.url.path
        if path.startswith("/v1.0"):
            path = path[len("/v1.0"):]

        if request.method == "GET" and re.fullmatch(r"/users/[^/]+/drive", path):
            return httpx.Response(200, json={"id": self.drive_id})

        match = re.fullmatch(r"/drives/[^/]+/root:/([^/:]+)", path)
        if request.method == "GET" and match:
            return self._lookup_folder("root", match.group(1))

        if request.method == "POST" and re.fullmatch(r"/drives/[^/]+/root/children", path):
            return self._create_folder("root", json.loads(request.content))

        match = re.fullmatch(r"/drives/[^/]+/items/([^/:]+):/([^/:]+)", path)
        if request.method == "GET" and match:
            return self._lookup_folder(match.group(1), match.group(2))

        match = re.fullmatch(r"/drives/[^/]+/items/([^/:]+)/children", path)
        if request.method == "POST" and match:
            return self._create_folder(match.group(1), json.loads(request.content))

        match = re.fullmatch(r"/drives/[^/]+/items/([^/:]+):/([^/:]+):/content", path)
        if request.method == "PUT" and match:
            if self.fail_simple_upload or (
                self.fail_upload_prefix and match.group(2).startswith(self.fail_upload_prefix)
            ):
                return httpx.Response(
                    507, json={"error": {"code": "quotaLimitReached", "message": "Insufficient storage"}}
                )
            return httpx.Response(201, json=self._store(match.group(1), match.group(2), request.content))

        match = re.fullmatch(r"/drives/[^/]+/items/([^/:]+):/([^/:]+):/createUploadSession", path)
        if request.method == "POST" and match:
            session_id = self._new_id("session")
            self.sessions[session_id] = {
                "folder_id": match.group(1),
                "name": match.group(2),
                "buffer": bytearray(),
            }
            return httpx.Response(200, json={"uploadUrl": f"{self.UPLOAD_HOST}/{session_id}"})

        return httpx.Response(400, json={"error": {"code": "invalidRequest", "message": f"Unhandled {path}"}})

    def _lookup_folder(self, parent_id: str, name: str) -> httpx.Response:
        folder_id = self.folders.get((parent_id, name))
        if folder_id is None:
            return httpx.Response(404, json={"error": {"code": "itemNotFound", "message": "Item not found"}})
        return httpx.Response(200, json={"id": folder_id, "name": name, "folder": {}})

    def _create_folder(self, parent_id: str, body: dict) -> httpx.Response:
        name = body["name"]
        if (parent_id, name) in self.folders:
            suffix = 1
            while (parent_id, f"{name} {suffix}") in self.folders:
                suffix += 1
            name = f"{name} {suffix}"
        folder_id = self._new_id("folder")
        self.folders[(parent_id, name)] = folder_id
        return httpx.Response(201, json={"id": folder_id, "name": name, "folder": {}})

    def _handle_session(self, request: httpx.Request, session_id: str) -> httpx.Response:
        if request.method == "DELETE":
            self.cancelled.append(session_id)
            self.sessions.pop(session_id, None)
            return httpx.Response(204)

        session = self.sessions.get(session_id)
        if session is None:
            return httpx.Response(404, json={"error": {"code": "itemNotFound", "message": "Session gone"}})

        index = self._slice_count
        self._slice_count += 1
        if self.fail_slice_at is not None and index == self.fail_slice_at:
            return httpx.Response(
                500, json={"error": {"code": "generalException", "message": "Slice rejected"}}
            )

        start, end, total = map(int, re.fullmatch(
            r"bytes (\d+)-(\d+)/(\d+)", request.headers["Content-Range"]
        ).groups())
        assert start == len(session["buffer"]), "slices must arrive in order"
        session["buffer"].extend(request.content)

        if len(session["buffer"]) < total:
            return httpx.Response(202, json={"nextExpectedRanges": [f"{end + 1}-"]})

        self.sessions.pop(session_id)
        return httpx.Response(
            201, json=self._store(session["folder_id"], session["name"], bytes(session["buffer"]))
        )

    def files(self) -> List[dict]:
        return list(self.items.values())


def transcription_document(*sentences: str, duration: int = 42) -> dict:
    """A Vonage transcription document with one channel."""
    return {
        "ver": "1.0.0",
        "request_id": "req-123",
        "channels": [
            {
                "transcript": [
                    {
                        "sentence": sentence,
                        "raw_sentence": sentence.lower(),
                        "duration": 1000,
                        "timestamp": 0,
                        "words": [],
                    }
                    for sentence in sentences
                ],
                "duration": duration,
            }
        ],
    }


class FakeVonage:
    """Vonage media, Voice and Messages endpoints."""

    def __init__(
        self,
        files: Optional[Dict[str, httpx.Response]] = None,
        calls: Optional[list] = None,
        sms_status: int = 202,
    ):
        self.files = files or {}
        self.calls = calls if calls is not None else []
        self.sms_status = sms_status
        self.sent_messages: List[dict] = []
        self.requests: List[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.startswith("/v1/files/"):
            file_id = path.rsplit("/", 1)[-1]
            response = self.files.get(file_id)
            if response is None:
                return httpx.Response(404, json={"title": "Not Found"})
            return response

        if path == "/v1/calls" and request.method == "GET":
            return httpx.Response(200, json={"count": len(self.calls), "_embedded": {"calls": self.calls}})

        if path == "/v1/messages" and request.method == "POST":
            if self.sms_status >= 400:
                return httpx.Response(self.sms_status, json={"title": "Rejected"})
            self.sent_messages.append(json.loads(request.content))
            return httpx.Response(202, json={"message_uuid": f"msg-{len(self.sent_messages)}"})

        return httpx.Response(404, json={"title": "Not Found"})


@pytest.fixture(autouse=True)
def reset_providers():
    """Process-wide credential providers must not leak between tests."""
    reset_credential_providers()
    yield
    reset_credential_providers()


@pytest.fixture
def static_credentials():
    return StaticTokenProvider()


@pytest.fixture
def fake_graph():
    return FakeGraph()


@pytest.fixture
def fake_vonage():
    return FakeVonage()
