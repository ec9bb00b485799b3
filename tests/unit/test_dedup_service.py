"""Tests for Redis-backed webhook deduplication."""
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from models.webhook_event import ArtifactKind, WebhookEvent
from services.dedup_service import WebhookDeduplicator


def make_event(recording_id: str = "REC-1", kind: ArtifactKind = ArtifactKind.transcription) -> WebhookEvent:
    return WebhookEvent(
        conversation_id="CON-1",
        recording_id=recording_id,
        artifact_url="https://api.nexmo.com/v1/files/x",
        artifact_kind=kind,
        received_at=datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc),
    )


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


class TestWebhookDeduplicator:
    """Tests for claim/release semantics."""

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, redis_client):
        dedup = WebhookDeduplicator(redis_client=redis_client, ttl_seconds=60)

        assert await dedup.claim(make_event()) is True
        assert await dedup.claim(make_event()) is False

    @pytest.mark.asyncio
    async def test_claim_sets_ttl(self, redis_client):
        dedup = WebhookDeduplicator(redis_client=redis_client, ttl_seconds=60)

        await dedup.claim(make_event())

        ttl = await redis_client.ttl("webhook:transcription:REC-1")
        assert 0 < ttl <= 60

    @pytest.mark.asyncio
    async def test_kinds_are_independent(self, redis_client):
        dedup = WebhookDeduplicator(redis_client=redis_client, ttl_seconds=60)

        assert await dedup.claim(make_event(kind=ArtifactKind.transcription)) is True
        assert await dedup.claim(make_event(kind=ArtifactKind.recording)) is True

    @pytest.mark.asyncio
    async def test_release_allows_reclaim(self, redis_client):
        dedup = WebhookDeduplicator(redis_client=redis_client, ttl_seconds=60)

        await dedup.claim(make_event())
        await dedup.release(make_event())

        assert await dedup.claim(make_event()) is True

    @pytest.mark.asyncio
    async def test_redis_error_fails_open(self):
        broken = MagicMock()
        broken.set = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        dedup = WebhookDeduplicator(redis_client=broken, ttl_seconds=60)

        assert await dedup.claim(make_event()) is True

    @pytest.mark.asyncio
    async def test_release_error_is_logged_not_raised(self):
        broken = MagicMock()
        broken.delete = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        dedup = WebhookDeduplicator(redis_client=broken, ttl_seconds=60)

        await dedup.release(make_event())

    def test_key_format(self):
        assert WebhookDeduplicator.key_for(make_event("abc")) == "webhook:transcription:abc"

    def test_ttl_from_environment(self, monkeypatch, redis_client):
        monkeypatch.setenv("WEBHOOK_DEDUP_TTL_SECONDS", "120")

        assert WebhookDeduplicator(redis_client=redis_client).ttl_seconds == 120
