"""
Webhook Event Data Models

This module defines the Pydantic models for the Vonage callbacks received by
the webhook endpoints, and the immutable WebhookEvent that the pipeline runs on.

Vonage sends snake_case payloads (conversation_uuid, recording_uuid, ...).
The camelCase aliases (conversationId, recordingId, artifactUrl) are accepted
as well so that relays and replay tooling can post either shape.
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class ArtifactKind(str, enum.Enum):
    """Kind of call artifact announced by a webhook."""
    transcription = "transcription"
    recording = "recording"


def _require_non_blank(value: str, field_name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{field_name} cannot be empty or contain only whitespace")
    return value.strip()


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp, normalizing to UTC. Returns None if unparseable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class TranscriptionCallbackRequest(BaseModel):
    """
    Payload sent by Vonage when a transcription is completed.

    The payload only carries a URL; the transcription document itself must be
    downloaded with an application JWT.
    """
    model_config = ConfigDict(extra="ignore")

    conversation_uuid: str = Field(
        ...,
        validation_alias=AliasChoices("conversation_uuid", "conversationId"),
        description="Unique identifier for the conversation/call"
    )
    recording_uuid: str = Field(
        ...,
        validation_alias=AliasChoices("recording_uuid", "recordingId"),
        description="Unique identifier for the recording"
    )
    transcription_url: str = Field(
        ...,
        validation_alias=AliasChoices("transcription_url", "transcriptionUrl", "artifactUrl"),
        description="URL of the transcription JSON (requires JWT authentication)"
    )
    type: Optional[str] = Field(default=None, description="Event type, usually 'transcription'")
    status: Optional[str] = Field(default=None, description="Transcription status, e.g. 'completed'")

    @field_validator("conversation_uuid", "recording_uuid", "transcription_url")
    @classmethod
    def ids_must_not_be_blank(cls, v: str, info) -> str:
        return _require_non_blank(v, info.field_name)


class RecordingCallbackRequest(BaseModel):
    """
    Payload sent by Vonage when a call recording is available.

    Based on the Vonage Voice API recording webhook reference.
    """
    model_config = ConfigDict(extra="ignore")

    conversation_uuid: str = Field(
        ...,
        validation_alias=AliasChoices("conversation_uuid", "conversationId"),
    )
    recording_uuid: str = Field(
        ...,
        validation_alias=AliasChoices("recording_uuid", "recordingId"),
    )
    recording_url: str = Field(
        ...,
        validation_alias=AliasChoices("recording_url", "recordingUrl", "artifactUrl"),
    )
    start_time: Optional[str] = Field(default=None, description="Recording start (ISO 8601)")
    end_time: Optional[str] = Field(default=None, description="Recording end (ISO 8601)")
    size: Optional[int] = Field(default=None, ge=0, description="Recording size in bytes")
    timestamp: Optional[str] = Field(default=None, description="When the webhook was sent (ISO 8601)")

    @field_validator("conversation_uuid", "recording_uuid", "recording_url")
    @classmethod
    def ids_must_not_be_blank(cls, v: str, info) -> str:
        return _require_non_blank(v, info.field_name)


class WebhookEvent(BaseModel):
    """
    Immutable, parsed form of a Vonage callback.

    conversation_id and recording_id are opaque correlation ids; they are used
    as identity in every downstream call and as filename components.

    Attributes:
        conversation_id: Vonage conversation UUID
        recording_id: Vonage recording UUID
        artifact_url: URL of the transcription document or recording audio
        artifact_kind: Which artifact the URL points to
        received_at: When this service accepted the webhook (UTC)
        started_at: Recording start time reported by Vonage, if any (UTC)
    """
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    recording_id: str
    artifact_url: str
    artifact_kind: ArtifactKind
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None

    @property
    def occurred_at(self) -> datetime:
        """Timestamp used for the storage date partition and file name."""
        return self.started_at or self.received_at

    @classmethod
    def from_transcription_callback(cls, request: TranscriptionCallbackRequest) -> "WebhookEvent":
        return cls(
            conversation_id=request.conversation_uuid,
            recording_id=request.recording_uuid,
            artifact_url=request.transcription_url,
            artifact_kind=ArtifactKind.transcription,
        )

    @classmethod
    def from_recording_callback(cls, request: RecordingCallbackRequest) -> "WebhookEvent":
        return cls(
            conversation_id=request.conversation_uuid,
            recording_id=request.recording_uuid,
            artifact_url=request.recording_url,
            artifact_kind=ArtifactKind.recording,
            started_at=_parse_timestamp(request.start_time),
        )


class WebhookAck(BaseModel):
    """Immediate acknowledgment returned to Vonage."""
    status: str = Field(..., description="'accepted' or 'duplicate'")
    recording_id: str
    conversation_id: str
