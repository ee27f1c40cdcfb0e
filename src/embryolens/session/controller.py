"""Session controller: sequences ingest, classification and analysis.

Events for one session are applied under a single ``asyncio.Lock``.
Classification runs as a background task outside the lock; every upload
bumps the session generation and cancels the previous task, and only a task
whose generation is still current may commit its result.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from embryolens.errors import ClassificationError, IngestError, NoSnapshotAvailableError
from embryolens.ml.inference import CancellationToken
from embryolens.session.state import (
    AnalysisCompleted,
    AnalysisUnavailable,
    ClassificationFailed,
    ClassificationSucceeded,
    IngestFailed,
    IngestSucceeded,
    SessionSnapshot,
    UploadStarted,
    ensure_analysis_ready,
    transition,
)

if TYPE_CHECKING:
    from embryolens.ml.image_classifier import ClassificationEngine
    from embryolens.ml.metrics import MetricsSynthesizer
    from embryolens.ml.preprocessing import ImageHandle, ImageIngestor
    from embryolens.session.state import SessionEvent

logger = logging.getLogger(__name__)


class SessionController:
    """Owns one ``SessionSnapshot`` and drives it through the event sequence."""

    def __init__(
        self,
        ingestor: ImageIngestor,
        engine: ClassificationEngine,
        synthesizer: MetricsSynthesizer,
        *,
        session_id: str = "",
    ) -> None:
        self.session_id = session_id
        self._ingestor = ingestor
        self._engine = engine
        self._synthesizer = synthesizer

        self._lock = asyncio.Lock()
        self._snapshot = SessionSnapshot()
        self._generation = 0
        self._task: asyncio.Task[None] | None = None
        self._token: CancellationToken | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        """Current read-only view of the session."""
        return self._snapshot

    @property
    def classification_pending(self) -> bool:
        return self._task is not None and not self._task.done()

    async def upload(self, raw_bytes: bytes, mime_type: str, *, wait: bool = True) -> SessionSnapshot:
        """Start a new analysis, superseding anything in flight.

        With ``wait=False`` the call returns once validation is done and
        classification continues in the background.
        """
        async with self._lock:
            self._cancel_pending()
            self._generation += 1
            generation = self._generation
            self._apply(UploadStarted(generation))

            try:
                # CPU-bound decode and validity checks run off the event loop.
                image = await asyncio.to_thread(self._ingestor.ingest, raw_bytes, mime_type)
            except IngestError as exc:
                logger.info("Session %s upload %d rejected: %s", self.session_id, generation, exc.message)
                self._apply(IngestFailed(generation, exc.kind, exc.message))
                return self._snapshot

            self._apply(IngestSucceeded(generation, image))
            token = CancellationToken()
            self._token = token
            task = asyncio.create_task(
                self._classify(generation, image, token),
                name=f"classify-{self.session_id or 'session'}-{generation}",
            )
            self._task = task

        if wait:
            # asyncio.wait does not propagate the task's cancellation to us.
            await asyncio.wait({task})
        return self._snapshot

    async def show_analysis(self) -> SessionSnapshot:
        """Compute the model-quality report and show it.

        Raises:
            NotReadyError: Unless the session is classified or already showing analysis.
        """
        async with self._lock:
            ensure_analysis_ready(self._snapshot)
            try:
                metrics = self._synthesizer.compute()
            except NoSnapshotAvailableError as exc:
                logger.info("Session %s analysis unavailable: %s", self.session_id, exc.message)
                self._apply(AnalysisUnavailable(exc.kind, exc.message))
            else:
                self._apply(AnalysisCompleted(metrics))
            return self._snapshot

    async def wait_idle(self) -> SessionSnapshot:
        """Wait for the in-flight classification, if any, to settle."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})
        return self._snapshot

    async def close(self) -> None:
        """Cancel in-flight work; the session accepts no further results."""
        async with self._lock:
            self._cancel_pending()
            task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # -- Internal -----------------------------------------------------------

    async def _classify(self, generation: int, image: ImageHandle, token: CancellationToken) -> None:
        event: SessionEvent
        try:
            prediction = await self._engine.classify(image, token)
        except ClassificationError as exc:
            logger.warning("Session %s classification %d failed: %s", self.session_id, generation, exc.message)
            event = ClassificationFailed(generation, exc.kind, exc.message)
        else:
            event = ClassificationSucceeded(generation, prediction)

        async with self._lock:
            if self._token is not token or generation != self._generation:
                logger.info("Session %s discarding superseded classification %d", self.session_id, generation)
                return
            self._apply(event)

    def _cancel_pending(self) -> None:
        if self._token is not None:
            self._token.cancel()
        if self._task is not None and not self._task.done():
            logger.info("Session %s cancelling classification %d", self.session_id, self._generation)
            self._task.cancel()

    def _apply(self, event: SessionEvent) -> None:
        previous = self._snapshot.state
        self._snapshot = transition(self._snapshot, event)
        logger.debug(
            "Session %s: %s -> %s on %s",
            self.session_id,
            previous,
            self._snapshot.state,
            type(event).__name__,
        )
