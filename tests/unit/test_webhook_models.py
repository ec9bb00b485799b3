"""Tests for webhook payload validation and WebhookEvent construction."""
from datetime import datetime, timezone

import pytest
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

from models.webhook_event import (
    ArtifactKind,
    RecordingCallbackRequest,
    TranscriptionCallbackRequest,
    WebhookEvent,
)

VALID_TRANSCRIPTION = {
    "conversation_uuid": "CON-aaaa",
    "recording_uuid": "REC-bbbb",
    "transcription_url": "https://api.nexmo.com/v1/files/REC-bbbb",
    "type": "transcription",
    "status": "completed",
}


class TestTranscriptionCallback:
    """Tests for TranscriptionCallbackRequest."""

    def test_snake_case_payload(self):
        request = TranscriptionCallbackRequest(**VALID_TRANSCRIPTION)

        assert request.recording_uuid == "REC-bbbb"
        assert request.status == "completed"

    def test_camel_case_aliases(self):
        request = TranscriptionCallbackRequest(
            conversationId="CON-1", recordingId="REC-1", artifactUrl="https://example.test/a"
        )

        assert request.conversation_uuid == "CON-1"
        assert request.transcription_url == "https://example.test/a"

    def test_values_are_trimmed(self):
        request = TranscriptionCallbackRequest(**{**VALID_TRANSCRIPTION, "recording_uuid": "  REC-1  "})

        assert request.recording_uuid == "REC-1"

    @pytest.mark.parametrize("field", ["conversation_uuid", "recording_uuid", "transcription_url"])
    def test_missing_field_rejected(self, field):
        payload = {k: v for k, v in VALID_TRANSCRIPTION.items() if k != field}

        with pytest.raises(ValidationError):
            TranscriptionCallbackRequest(**payload)

    @given(
        field=st.sampled_from(["conversation_uuid", "recording_uuid", "transcription_url"]),
        blank=st.text(alphabet=" \t\n\r", max_size=10),
    )
    @settings(max_examples=100)
    def test_blank_field_rejected(self, field, blank):
        """Empty or whitespace-only ids and URLs never produce an event."""
        with pytest.raises(ValidationError):
            TranscriptionCallbackRequest(**{**VALID_TRANSCRIPTION, field: blank})

    def test_unknown_fields_ignored(self):
        request = TranscriptionCallbackRequest(**VALID_TRANSCRIPTION, extra_field="x")

        assert not hasattr(request, "extra_field")


class TestWebhookEvent:
    """Tests for the immutable event."""

    def test_from_transcription_callback(self):
        event = WebhookEvent.from_transcription_callback(
            TranscriptionCallbackRequest(**VALID_TRANSCRIPTION)
        )

        assert event.artifact_kind == ArtifactKind.transcription
        assert event.recording_id == "REC-bbbb"
        assert event.conversation_id == "CON-aaaa"
        assert event.artifact_url == VALID_TRANSCRIPTION["transcription_url"]
        assert event.received_at.tzinfo is not None
        assert event.occurred_at == event.received_at

    def test_from_recording_callback_uses_start_time(self):
        request = RecordingCallbackRequest(
            conversation_uuid="CON-1",
            recording_uuid="REC-1",
            recording_url="https://api.nexmo.com/v1/files/REC-1",
            start_time="2025-01-15T10:30:00.000Z",
            end_time="2025-01-15T10:31:35.000Z",
            size=1024,
        )

        event = WebhookEvent.from_recording_callback(request)

        assert event.artifact_kind == ArtifactKind.recording
        assert event.occurred_at == datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)

    def test_unparseable_start_time_falls_back_to_receipt(self):
        request = RecordingCallbackRequest(
            conversation_uuid="CON-1",
            recording_uuid="REC-1",
            recording_url="https://api.nexmo.com/v1/files/REC-1",
            start_time="yesterday",
        )

        event = WebhookEvent.from_recording_callback(request)

        assert event.started_at is None
        assert event.occurred_at == event.received_at

    def test_event_is_immutable(self):
        event = WebhookEvent.from_transcription_callback(
            TranscriptionCallbackRequest(**VALID_TRANSCRIPTION)
        )

        with pytest.raises(ValidationError):
            event.recording_id = "other"
