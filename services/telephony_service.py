"""Vonage REST client for call metadata lookup and SMS notifications.

Both operations authenticate with the process-wide application JWT.

- get_call_metadata: GET /v1/calls?conversation_uuid=... (Voice API)
- send_sms: POST /v1/messages with channel=sms (Messages API)

Neither failure is fatal for a pipeline run: a metadata miss skips the
notification and a send error is only logged.
"""
import os
import logging
from typing import Optional

import httpx

from models.pipeline import CallMetadata
from services.credential_provider import CachedTokenProvider, CredentialError

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.nexmo.com"


class MetadataFailure(Exception):
    """Raised when call metadata cannot be resolved."""

    def __init__(self, message: str, not_found: bool = False):
        self.message = message
        self.not_found = not_found
        super().__init__(message)


class NotifyFailure(Exception):
    """Raised when an SMS cannot be sent."""
    pass


class TelephonyService:
    """Vonage Voice and Messages API operations used by the pipeline."""

    def __init__(
        self,
        credentials: CachedTokenProvider,
        client: Optional[httpx.AsyncClient] = None,
        from_number: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        self.credentials = credentials
        self.from_number = from_number or os.getenv("VONAGE_FROM_NUMBER")
        self.base_url = (base_url or os.getenv("VONAGE_API_BASE_URL", DEFAULT_API_BASE_URL)).rstrip("/")
        if client is None:
            timeout = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
            client = httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self.client = client

    async def _auth_headers(self) -> dict:
        token = await self.credentials.get_token()
        return {"Authorization": f"Bearer {token}"}

    async def get_call_metadata(self, conversation_id: str) -> CallMetadata:
        """
        Resolve the call behind a conversation.

        Args:
            conversation_id: Vonage conversation UUID

        Returns:
            CallMetadata with the destination number and duration

        Raises:
            MetadataFailure: If no call matches, the record lacks a destination
                number, or the lookup itself fails
        """
        if not conversation_id or not conversation_id.strip():
            raise MetadataFailure("Conversation UUID cannot be null or empty")

        logger.info(f"Retrieving call information: conversation_id={conversation_id}")

        try:
            response = await self.client.get(
                f"{self.base_url}/v1/calls",
                params={"conversation_uuid": conversation_id},
                headers=await self._auth_headers(),
            )
        except (httpx.HTTPError, CredentialError) as e:
            raise MetadataFailure(f"Failed to retrieve call information: {e}") from e

        if response.status_code == 404:
            raise MetadataFailure(f"No call found for conversation UUID: {conversation_id}", not_found=True)
        if not response.is_success:
            raise MetadataFailure(
                f"Call lookup failed with status {response.status_code}: {response.text[:200]}"
            )

        try:
            calls = response.json().get("_embedded", {}).get("calls") or []
        except (ValueError, AttributeError) as e:
            raise MetadataFailure(f"Malformed call lookup response: {e}") from e

        if not calls:
            logger.warning(f"No calls found: conversation_id={conversation_id}")
            raise MetadataFailure(f"No call found for conversation UUID: {conversation_id}", not_found=True)

        call = calls[0]
        if not isinstance(call, dict):
            logger.error(f"Malformed call record: conversation_id={conversation_id}, type={type(call).__name__}")
            raise MetadataFailure("Malformed call record in Vonage response")

        to_endpoint = call.get("to")
        from_endpoint = call.get("from")
        to_number = (to_endpoint.get("number") if isinstance(to_endpoint, dict) else None) or ""
        from_number = from_endpoint.get("number") if isinstance(from_endpoint, dict) else None

        # Duration arrives as a string ("30")
        try:
            duration_seconds = int(call.get("duration") or 0)
        except (TypeError, ValueError):
            duration_seconds = 0

        if not to_number:
            logger.error(f"Call found but 'to' number is missing: conversation_id={conversation_id}")
            raise MetadataFailure("Call record found but recipient phone number is missing")

        logger.info(
            f"Call information retrieved: conversation_id={conversation_id}, "
            f"to={to_number}, duration={duration_seconds}s"
        )
        return CallMetadata(to_number=to_number, from_number=from_number, duration_seconds=duration_seconds)

    async def send_sms(self, to_number: str, text: str) -> str:
        """
        Send an SMS through the Vonage Messages API.

        Returns:
            The message UUID

        Raises:
            NotifyFailure: On invalid input, missing sender number or send error
        """
        logger.info(f"Sending SMS: to={to_number}, length={len(text)} characters")

        if not to_number or not to_number.strip():
            raise NotifyFailure("Phone number cannot be null or empty")
        if not text or not text.strip():
            raise NotifyFailure("Message text cannot be null or empty")
        if not self.from_number:
            raise NotifyFailure("SMS sender number (VONAGE_FROM_NUMBER) is not configured")

        body = {
            "message_type": "text",
            "channel": "sms",
            "to": to_number,
            "from": self.from_number,
            "text": text,
        }

        try:
            response = await self.client.post(
                f"{self.base_url}/v1/messages",
                json=body,
                headers=await self._auth_headers(),
            )
        except (httpx.HTTPError, CredentialError) as e:
            raise NotifyFailure(f"Failed to send SMS: {e}") from e

        if not response.is_success:
            raise NotifyFailure(f"Failed to send SMS: status={response.status_code}, body={response.text[:200]}")

        try:
            message_id = response.json()["message_uuid"]
        except (ValueError, KeyError) as e:
            raise NotifyFailure(f"Malformed send response: {e}") from e

        logger.info(f"SMS sent successfully: to={to_number}, message_id={message_id}")
        return message_id

    async def aclose(self) -> None:
        await self.client.aclose()
