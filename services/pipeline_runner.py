"""Detached execution of pipeline runs.

The webhook handlers hand each accepted event to the process-wide
PipelineRunner and return immediately. The runner starts one asyncio task per
event, outside any request scope, and holds a strong reference to it until it
finishes. Each task opens its own PipelineDependencies, so nothing created for
the HTTP request is used after the acknowledgment is sent.

A run never raises out of its task: unexpected errors are logged with the
traceback and the task ends.
"""
import os
import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from typing import Callable, Optional, Set

from models.pipeline import PipelineContext, PipelineState
from models.webhook_event import WebhookEvent
from services.dedup_service import WebhookDeduplicator
from services.pipeline_service import (
    PipelineDependencies,
    PipelineOrchestrator,
    open_pipeline_dependencies,
)

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT_SECONDS = 30.0

DependenciesFactory = Callable[[], AbstractAsyncContextManager[PipelineDependencies]]


class PipelineRunner:
    """Registry of in-flight pipeline tasks."""

    def __init__(
        self,
        dependencies_factory: DependenciesFactory = open_pipeline_dependencies,
        deduplicator: Optional[WebhookDeduplicator] = None,
    ):
        self.dependencies_factory = dependencies_factory
        self.deduplicator = deduplicator
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def submit(self, event: WebhookEvent) -> bool:
        """
        Accept an event for processing.

        Returns:
            False if the event is a duplicate delivery and nothing was started,
            True otherwise
        """
        if self.deduplicator is not None and not await self.deduplicator.claim(event):
            return False
        self.spawn(event)
        return True

    def spawn(self, event: WebhookEvent) -> asyncio.Task:
        """Start a detached run for the event."""
        task = asyncio.create_task(
            self._run(event),
            name=f"pipeline-{event.artifact_kind.value}-{event.recording_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            f"Pipeline spawned: recording_id={event.recording_id}, "
            f"conversation_id={event.conversation_id}, active={self.active_count}"
        )
        return task

    async def _run(self, event: WebhookEvent) -> Optional[PipelineContext]:
        ctx: Optional[PipelineContext] = None
        try:
            async with self.dependencies_factory() as dependencies:
                ctx = await PipelineOrchestrator(dependencies).run(event)
        except Exception as e:
            logger.error(
                f"Pipeline crashed: recording_id={event.recording_id}, "
                f"conversation_id={event.conversation_id}, error={type(e).__name__}: {e}",
                exc_info=True
            )
        finally:
            # Any run that did not complete, cancelled ones included, frees its key for redelivery
            if self.deduplicator is not None and (ctx is None or ctx.state != PipelineState.completed):
                await self.deduplicator.release(event)
        return ctx

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight runs, cancelling whatever is still running after `timeout`."""
        if not self._tasks:
            return

        if timeout is None:
            timeout = float(os.getenv("PIPELINE_DRAIN_TIMEOUT_SECONDS", str(DEFAULT_DRAIN_TIMEOUT_SECONDS)))

        logger.info(f"Draining pipeline runs: active={self.active_count}, timeout={timeout}s")
        tasks = set(self._tasks)
        _, pending = await asyncio.wait(tasks, timeout=timeout)

        if pending:
            logger.warning(f"Cancelling unfinished pipeline runs: count={len(pending)}")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        if self.deduplicator is not None:
            await self.deduplicator.close()


def _dedup_enabled() -> bool:
    return os.getenv("WEBHOOK_DEDUP_ENABLED", "false").strip().lower() in ("1", "true", "yes", "on")


# Global runner instance (initialized lazily)
_runner: Optional[PipelineRunner] = None


def get_pipeline_runner() -> PipelineRunner:
    """Get or create the process-wide pipeline runner."""
    global _runner

    if _runner is None:
        deduplicator = WebhookDeduplicator() if _dedup_enabled() else None
        _runner = PipelineRunner(deduplicator=deduplicator)

    return _runner


async def shutdown_pipeline_runner() -> None:
    """Drain and release the process-wide runner."""
    global _runner

    if _runner is None:
        return

    runner, _runner = _runner, None
    await runner.drain()
    await runner.close()
