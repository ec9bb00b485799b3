"""Pipeline run models.

A PipelineContext is created when the orchestrator accepts a WebhookEvent and
is discarded once the run reaches a terminal state. It is never persisted.

Run Lifecycle:
    received -> downloading -> transforming -> persisting
        -> resolving_metadata -> notifying -> completed
    downloading | persisting -> failed
"""
import enum
import io
from dataclasses import dataclass, field
from typing import List, Optional

from models.webhook_event import WebhookEvent
from models.transcription import TranscriptionDocument


class PipelineState(str, enum.Enum):
    """State of one pipeline run."""
    received = "received"
    downloading = "downloading"
    transforming = "transforming"
    persisting = "persisting"
    resolving_metadata = "resolving_metadata"
    notifying = "notifying"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.completed, PipelineState.failed)


@dataclass(frozen=True)
class Artifact:
    """Fully buffered artifact bytes with a known length."""
    data: bytes
    mime_hint: str = "application/octet-stream"

    @property
    def length_bytes(self) -> int:
        return len(self.data)

    def as_stream(self) -> io.BytesIO:
        """Fresh seekable stream positioned at the start."""
        return io.BytesIO(self.data)

    @classmethod
    def from_text(cls, text: str) -> "Artifact":
        return cls(data=text.encode("utf-8"), mime_hint="text/plain; charset=utf-8")


@dataclass(frozen=True)
class UploadTarget:
    """Where an artifact lands: {root_folder}/{date_partition}/{file_name}."""
    root_folder: str
    date_partition: str
    file_name: str

    @property
    def path(self) -> str:
        return f"{self.root_folder}/{self.date_partition}/{self.file_name}"


@dataclass(frozen=True)
class UploadResult:
    """Remote item created by one successful upload."""
    remote_id: str
    file_name: str
    web_url: Optional[str] = None


@dataclass(frozen=True)
class CallMetadata:
    """Call details resolved after upload, used for the notification only."""
    to_number: str
    duration_seconds: int
    from_number: Optional[str] = None


@dataclass
class PipelineContext:
    """Per-run mutable container for stage outputs.

    Stages write in order: raw_artifact/transcript (download),
    transformed_artifact (transform), upload_results (persist),
    call_metadata (metadata lookup).
    """
    event: WebhookEvent
    state: PipelineState = PipelineState.received
    raw_artifact: Optional[Artifact] = None
    transcript: Optional[TranscriptionDocument] = None
    transcript_text: Optional[str] = None
    transformed_text: Optional[str] = None
    transformed_artifact: Optional[Artifact] = None
    upload_results: List[UploadResult] = field(default_factory=list)
    call_metadata: Optional[CallMetadata] = None
    notification_id: Optional[str] = None
    failure: Optional[Exception] = None
    warnings: List[str] = field(default_factory=list)
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.received])

    @property
    def log_context(self) -> str:
        return (
            f"recording_id={self.event.recording_id}, "
            f"conversation_id={self.event.conversation_id}"
        )
