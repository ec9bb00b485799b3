"""Pipeline orchestration for one webhook event.

A run drives a single WebhookEvent through its stages and records the outcome
on a PipelineContext:

    received -> downloading -> transforming -> persisting
        -> resolving_metadata -> notifying -> completed

Stage rules:
- Download failure (network, auth, non-2xx, decode, empty transcript) is fatal.
- Transform failure degrades the run: only the original transcript is stored.
- Any failed upload is fatal.
- Metadata failure skips the notification; the run still completes.
- Notification send failure is logged only.

Recording events take the short path received -> downloading -> persisting
-> completed and store the audio file as-is.

Collaborators are bundled in PipelineDependencies, which each run opens and
closes itself (open_pipeline_dependencies). Only the credential providers are
shared between runs.
"""
import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, List, Optional

import httpx

from models.pipeline import Artifact, PipelineContext, PipelineState, UploadResult
from models.transcription import TranscriptionDocument
from models.webhook_event import ArtifactKind, WebhookEvent
from services.credential_provider import get_graph_credentials, get_vonage_credentials
from services.download_service import ArtifactDownloader, DownloadFailure
from services.notification_composer import DEFAULT_BUDGET, compose_notification
from services.storage_service import StorageService, UploadFailure, build_upload_target
from services.telephony_service import MetadataFailure, NotifyFailure, TelephonyService
from services.transform_service import TransformFailure, TransformService, build_transform_timeout

logger = logging.getLogger(__name__)

ORIGINAL_PREFIX = "transcription"
SUMMARY_PREFIX = "summary"
RECORDING_PREFIX = "recording"
TEXT_EXTENSION = "txt"
RECORDING_EXTENSION = "mp3"


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PipelineDependencies:
    """Collaborators used by one pipeline run."""
    downloader: ArtifactDownloader
    transformer: TransformService
    storage: StorageService
    telephony: TelephonyService
    notifications_enabled: bool = True
    notification_budget: int = DEFAULT_BUDGET

    async def aclose(self) -> None:
        """Close every collaborator's HTTP client."""
        results = await asyncio.gather(
            self.downloader.aclose(),
            self.transformer.aclose(),
            self.storage.aclose(),
            self.telephony.aclose(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning(f"Failed to close pipeline client: {type(result).__name__}: {result}")


@asynccontextmanager
async def open_pipeline_dependencies() -> AsyncGenerator[PipelineDependencies, None]:
    """Build a fresh set of collaborators for one run and close them afterwards.

    Every collaborator gets its own httpx.AsyncClient. The transform client
    uses the long MCP timeout; all others use HTTP_TIMEOUT_SECONDS.
    """
    timeout = httpx.Timeout(float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")))
    vonage_credentials = get_vonage_credentials()
    graph_credentials = get_graph_credentials()

    dependencies = PipelineDependencies(
        downloader=ArtifactDownloader(
            vonage_credentials,
            client=httpx.AsyncClient(timeout=timeout, follow_redirects=True),
        ),
        transformer=TransformService(
            client=httpx.AsyncClient(timeout=build_transform_timeout()),
        ),
        storage=StorageService(
            graph_credentials,
            client=httpx.AsyncClient(timeout=timeout),
        ),
        telephony=TelephonyService(
            vonage_credentials,
            client=httpx.AsyncClient(timeout=timeout),
        ),
        notifications_enabled=_env_flag("NOTIFICATIONS_ENABLED", True),
        notification_budget=int(os.getenv("NOTIFICATION_BUDGET", str(DEFAULT_BUDGET))),
    )
    try:
        yield dependencies
    finally:
        await dependencies.aclose()


def render_transcript_file(event: WebhookEvent, document: TranscriptionDocument, text: str) -> str:
    """Content of the stored original transcript: metadata header, then the text."""
    return (
        "=== Vonage Call Transcription ===\n"
        f"Recording UUID: {event.recording_id}\n"
        f"Conversation UUID: {event.conversation_id}\n"
        f"Duration: {document.duration_seconds} seconds\n"
        "\n"
        "=== Transcription Text ===\n"
        f"{text}"
    )


class PipelineOrchestrator:
    """Runs the stage sequence for one event."""

    def __init__(self, dependencies: PipelineDependencies):
        self.deps = dependencies

    def _enter(self, ctx: PipelineContext, state: PipelineState) -> None:
        logger.info(f"Pipeline stage: {ctx.state.value} -> {state.value}, {ctx.log_context}")
        ctx.state = state
        ctx.history.append(state)

    def _fail(self, ctx: PipelineContext, error: Exception) -> PipelineContext:
        stage = ctx.state.value
        logger.error(
            f"Pipeline failed: {ctx.log_context}, stage={stage}, "
            f"error={type(error).__name__}: {error}"
        )
        ctx.failure = error
        self._enter(ctx, PipelineState.failed)
        return ctx

    def _warn(self, ctx: PipelineContext, message: str) -> None:
        logger.warning(f"{message}: {ctx.log_context}")
        ctx.warnings.append(message)

    async def run(self, event: WebhookEvent) -> PipelineContext:
        """
        Drive an event to a terminal state.

        Fatal stage errors are recorded on the returned context, never raised.

        Args:
            event: Parsed webhook event

        Returns:
            PipelineContext in state completed or failed
        """
        ctx = PipelineContext(event=event)
        started = time.monotonic()
        logger.info(f"Pipeline started: kind={event.artifact_kind.value}, {ctx.log_context}")

        if event.artifact_kind == ArtifactKind.recording:
            await self._run_recording(ctx)
        else:
            await self._run_transcription(ctx)

        logger.info(
            f"Pipeline finished: state={ctx.state.value}, {ctx.log_context}, "
            f"uploads={len(ctx.upload_results)}, warnings={len(ctx.warnings)}, "
            f"elapsed={time.monotonic() - started:.2f}s"
        )
        return ctx

    # --- Transcription flow ---

    async def _run_transcription(self, ctx: PipelineContext) -> None:
        event = ctx.event

        self._enter(ctx, PipelineState.downloading)
        try:
            document = await self.deps.downloader.download_transcription(event.artifact_url)
            text = document.extract_transcript()
            if not text.strip():
                raise DownloadFailure("No transcription text available")
        except DownloadFailure as e:
            self._fail(ctx, e)
            return

        ctx.transcript = document
        ctx.transcript_text = text
        ctx.raw_artifact = Artifact.from_text(render_transcript_file(event, document, text))

        self._enter(ctx, PipelineState.transforming)
        try:
            ctx.transformed_text = await self.deps.transformer.transform(text)
            ctx.transformed_artifact = Artifact.from_text(ctx.transformed_text)
        except TransformFailure as e:
            self._warn(ctx, f"AI transform failed, storing original only ({e.message})")

        self._enter(ctx, PipelineState.persisting)
        try:
            await self._persist_transcripts(ctx)
        except UploadFailure as e:
            self._fail(ctx, e)
            return

        self._enter(ctx, PipelineState.resolving_metadata)
        try:
            ctx.call_metadata = await self.deps.telephony.get_call_metadata(event.conversation_id)
        except MetadataFailure as e:
            self._warn(ctx, f"Call metadata unavailable, skipping notification ({e.message})")

        self._enter(ctx, PipelineState.notifying)
        await self._notify(ctx)

        self._enter(ctx, PipelineState.completed)

    async def _persist_transcripts(self, ctx: PipelineContext) -> None:
        """Upload the original and, when present, the transformed transcript.

        Both uploads share the same date partition and run concurrently; the
        stage waits for both before deciding the outcome.
        """
        event = ctx.event
        storage = self.deps.storage

        uploads = [
            storage.upload(
                build_upload_target(
                    storage.root_folder, ORIGINAL_PREFIX, event.occurred_at,
                    event.recording_id, TEXT_EXTENSION,
                ),
                ctx.raw_artifact,
            )
        ]
        if ctx.transformed_artifact is not None:
            uploads.append(
                storage.upload(
                    build_upload_target(
                        storage.root_folder, SUMMARY_PREFIX, event.occurred_at,
                        event.recording_id, TEXT_EXTENSION,
                    ),
                    ctx.transformed_artifact,
                )
            )

        results = await asyncio.gather(*uploads, return_exceptions=True)

        uploaded: List[UploadResult] = []
        failure: Optional[BaseException] = None
        for result in results:
            if isinstance(result, BaseException):
                failure = failure or result
            else:
                uploaded.append(result)
        ctx.upload_results = uploaded

        if failure is not None:
            raise failure

        logger.info(
            f"Transcripts stored: {ctx.log_context}, "
            f"files={[r.file_name for r in uploaded]}"
        )

    async def _notify(self, ctx: PipelineContext) -> None:
        metadata = ctx.call_metadata
        if metadata is None:
            return
        if not self.deps.notifications_enabled:
            logger.info(f"Notifications disabled, skipping SMS: {ctx.log_context}")
            return

        # Link the summary when it was stored, otherwise the original
        link = next(
            (r.web_url for r in reversed(ctx.upload_results) if r.web_url),
            None,
        )
        message = compose_notification(
            duration_seconds=metadata.duration_seconds,
            summary_text=ctx.transformed_text or ctx.transcript_text,
            storage_link=link,
            budget=self.deps.notification_budget,
        )

        try:
            ctx.notification_id = await self.deps.telephony.send_sms(metadata.to_number, message)
        except NotifyFailure as e:
            self._warn(ctx, f"SMS notification failed ({e})")

    # --- Recording flow ---

    async def _run_recording(self, ctx: PipelineContext) -> None:
        event = ctx.event

        self._enter(ctx, PipelineState.downloading)
        try:
            ctx.raw_artifact = await self.deps.downloader.download(event.artifact_url)
        except DownloadFailure as e:
            self._fail(ctx, e)
            return

        self._enter(ctx, PipelineState.persisting)
        target = build_upload_target(
            self.deps.storage.root_folder, RECORDING_PREFIX, event.occurred_at,
            event.recording_id, RECORDING_EXTENSION,
        )
        try:
            result = await self.deps.storage.upload(target, ctx.raw_artifact)
        except UploadFailure as e:
            self._fail(ctx, e)
            return
        ctx.upload_results = [result]

        self._enter(ctx, PipelineState.completed)
