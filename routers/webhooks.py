"""Vonage webhook router.

Endpoints:
1. POST /webhooks/transcription - a call transcription is ready
2. POST /webhooks/recording - a call recording is ready

Both validate the payload, hand the event to the pipeline runner and
acknowledge immediately. Download, transform, upload and notification all
happen in the detached run; Vonage never waits on them and never sees their
errors.

Security:
- Signed webhook verification when VONAGE_SIGNATURE_SECRET is set
- Blank ids or artifact URL are rejected with 422 and start nothing
"""
import logging

from fastapi import APIRouter, Depends

from middleware.webhook_auth import require_vonage_signature
from models.webhook_event import (
    RecordingCallbackRequest,
    TranscriptionCallbackRequest,
    WebhookAck,
    WebhookEvent,
)
from services.pipeline_runner import PipelineRunner, get_pipeline_runner

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["webhooks"],
    dependencies=[Depends(require_vonage_signature)],
)


async def _accept(event: WebhookEvent, runner: PipelineRunner) -> WebhookAck:
    started = await runner.submit(event)
    status = "accepted" if started else "duplicate"

    logger.info(
        f"Webhook {status}: kind={event.artifact_kind.value}, "
        f"recording_id={event.recording_id}, conversation_id={event.conversation_id}"
    )
    return WebhookAck(
        status=status,
        recording_id=event.recording_id,
        conversation_id=event.conversation_id,
    )


@router.post("/transcription", response_model=WebhookAck)
async def transcription_webhook(
    body: TranscriptionCallbackRequest,
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    """Accept a transcription-completed callback.

    Args:
        body: Vonage transcription callback payload
        runner: Process-wide pipeline runner

    Returns:
        WebhookAck with status 'accepted' (or 'duplicate' for a redelivery)
    """
    logger.info(
        f"Transcription webhook received: recording_id={body.recording_uuid}, "
        f"conversation_id={body.conversation_uuid}, status={body.status}"
    )
    return await _accept(WebhookEvent.from_transcription_callback(body), runner)


@router.post("/recording", response_model=WebhookAck)
async def recording_webhook(
    body: RecordingCallbackRequest,
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    """Accept a recording-available callback."""
    logger.info(
        f"Recording webhook received: recording_id={body.recording_uuid}, "
        f"conversation_id={body.conversation_uuid}, size={body.size}"
    )
    return await _accept(WebhookEvent.from_recording_callback(body), runner)
