"""TransformService client for the MCP transcript-processing tool server.

The tool server (language detection, translation, professional summary) runs
locally and answers a JSON-RPC style envelope:

    Request:  {"jsonrpc": "2.0", "id": 7, "method": "invoke",
               "params": {"tool": "process_transcript", "arguments": {"text": "..."}}}
    Success:  {"id": 7, "result": {"content": [{"type": "text", "text": "..."}]}}
    Error:    {"id": 7, "error": {"code": -32603, "message": "..."}}

A single call routinely takes 30-90 seconds (several model round trips on the
server side). This client is therefore built with its own timeout policy
(MCP_TIMEOUT_SECONDS, default 300s, 0 = unbounded) and never shares the
short default used by the other HTTP clients.

Failures are raised as TransformFailure; the pipeline treats them as a
degrade and keeps only the original transcript.
"""
import os
import logging
import itertools
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_MCP_URL = "http://localhost:5000/mcp/"
DEFAULT_TOOL_NAME = "process_transcript"
DEFAULT_TIMEOUT_SECONDS = 300.0

# Process-wide request id sequence for response correlation
_request_ids = itertools.count(1)


class TransformFailure(Exception):
    """Raised when the AI transform cannot produce a result."""

    def __init__(self, message: str, code: Optional[int] = None):
        self.message = message
        self.code = code
        super().__init__(message)


def build_transform_timeout(seconds: Optional[float] = None) -> httpx.Timeout:
    """Timeout policy for the transform client.

    0 (or a negative value) disables the read/write/pool limits entirely; the
    connect phase stays bounded so a dead server still fails fast.
    """
    if seconds is None:
        seconds = float(os.getenv("MCP_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)))
    if seconds <= 0:
        return httpx.Timeout(None, connect=10.0)
    return httpx.Timeout(seconds, connect=min(10.0, seconds))


class TransformService:
    """Client for the MCP tool server."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        endpoint: Optional[str] = None,
        tool_name: Optional[str] = None,
    ):
        self.endpoint = endpoint or os.getenv("MCP_SERVER_URL", DEFAULT_MCP_URL)
        self.tool_name = tool_name or os.getenv("MCP_TOOL_NAME", DEFAULT_TOOL_NAME)
        if client is None:
            client = httpx.AsyncClient(timeout=build_transform_timeout())
        self.client = client
        logger.info(
            f"TransformService initialized: endpoint={self.endpoint}, tool={self.tool_name}, "
            f"read_timeout={self.client.timeout.read}"
        )

    def _build_request(self, text: str) -> dict:
        return {
            "jsonrpc": "2.0",
            "id": next(_request_ids),
            "method": "invoke",
            "params": {
                "tool": self.tool_name,
                "arguments": {"text": text},
            },
        }

    async def transform(self, text: str) -> str:
        """
        Send a transcript to the tool server and return the processed text.

        Args:
            text: Transcript text

        Returns:
            result.content[0].text, or the input unchanged if content is empty

        Raises:
            TransformFailure: On transport error, timeout, non-2xx, malformed
                envelope, id mismatch or an explicit error field
        """
        request = self._build_request(text)
        request_id = request["id"]

        logger.info(
            f"Sending transcript to MCP server: request_id={request_id}, length={len(text)} chars"
        )

        try:
            response = await self.client.post(self.endpoint, json=request)
        except httpx.TimeoutException as e:
            logger.warning(f"MCP request timed out: request_id={request_id}, error={type(e).__name__}")
            raise TransformFailure(f"Timeout: {type(e).__name__}: {e}") from e
        except httpx.HTTPError as e:
            logger.warning(f"MCP server unreachable: request_id={request_id}, error={e}")
            raise TransformFailure(f"Transport error: {e}") from e

        if not response.is_success:
            logger.warning(
                f"MCP server returned error status: request_id={request_id}, "
                f"status={response.status_code}"
            )
            raise TransformFailure(
                f"MCP server returned status {response.status_code}: {response.text[:200]}"
            )

        try:
            envelope = response.json()
        except ValueError as e:
            raise TransformFailure(f"Malformed response envelope: {e}") from e

        return self._extract_text(envelope, request_id, text)

    def _extract_text(self, envelope: object, request_id: int, original: str) -> str:
        """Pull result.content[0].text out of a response envelope."""
        if not isinstance(envelope, dict):
            raise TransformFailure("Malformed response envelope: not an object")

        if envelope.get("id") != request_id:
            raise TransformFailure(
                f"Malformed response envelope: id {envelope.get('id')!r} does not match {request_id}"
            )

        error = envelope.get("error")
        if error is not None:
            if isinstance(error, dict):
                message = str(error.get("message", "Unknown error"))
                code = error.get("code")
            else:
                message, code = str(error), None
            logger.warning(f"MCP tool error: request_id={request_id}, code={code}, message={message}")
            raise TransformFailure(message, code=code if isinstance(code, int) else None)

        result = envelope.get("result")
        if not isinstance(result, dict) or not isinstance(result.get("content"), list):
            raise TransformFailure("Malformed response envelope: missing result.content")

        content = result["content"]
        if not content:
            logger.warning(
                f"MCP returned empty content, keeping original transcript: request_id={request_id}"
            )
            return original

        first = content[0]
        if not isinstance(first, dict) or not isinstance(first.get("text"), str):
            raise TransformFailure("Malformed response envelope: content[0].text missing")

        logger.info(
            f"MCP processing complete: request_id={request_id}, result_length={len(first['text'])} chars"
        )
        return first["text"]

    async def aclose(self) -> None:
        await self.client.aclose()
