"""Data models for the call artifact pipeline."""
from .webhook_event import (
    ArtifactKind,
    TranscriptionCallbackRequest,
    RecordingCallbackRequest,
    WebhookEvent,
    WebhookAck,
)
from .transcription import (
    TranscriptionDocument,
    Channel,
    Sentence,
    Word,
)
from .pipeline import (
    PipelineState,
    PipelineContext,
    Artifact,
    UploadTarget,
    UploadResult,
    CallMetadata,
)

__all__ = [
    # Webhook models
    "ArtifactKind",
    "TranscriptionCallbackRequest",
    "RecordingCallbackRequest",
    "WebhookEvent",
    "WebhookAck",
    # Transcription document
    "TranscriptionDocument",
    "Channel",
    "Sentence",
    "Word",
    # Pipeline models
    "PipelineState",
    "PipelineContext",
    "Artifact",
    "UploadTarget",
    "UploadResult",
    "CallMetadata",
]
