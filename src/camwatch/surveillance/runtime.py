"""Asynchronous pipeline task feeding one camera's state machine."""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import datetime, timezone
from typing import Awaitable, Callable, List

from ..camera import CameraError, Frame, FrameSource, SourceUnavailable, summarise_exception
from ..config import CameraConfig
from .events import AlertEvent, Notification, StatusUpdate
from .index import SegmentIndex
from .machine import CameraStateMachine

logger = logging.getLogger(__name__)

SourceFactory = Callable[[], FrameSource]
Publish = Callable[[Notification], None]


def next_backoff(current: float, cap: float) -> float:
    """Double *current* up to *cap*."""

    if current <= 0:
        return min(1.0, cap)
    return min(current * 2.0, cap)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CameraPipeline:
    """Run ``FrameSource -> detector -> state machine -> recorder`` for one camera.

    Frames are handled strictly in arrival order. Processing (detection and
    encoding) runs in a worker thread so a slow camera never stalls the event
    loop shared with the other pipelines.
    """

    def __init__(
        self,
        camera_id: str,
        machine: CameraStateMachine,
        *,
        source_factory: SourceFactory,
        publish: Publish,
        index: SegmentIndex | None = None,
        retry_budget: int = 5,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.camera_id = camera_id
        self._machine = machine
        self._source_factory = source_factory
        self._publish = publish
        self._index = index
        self._retry_budget = max(0, int(retry_budget))
        self._backoff_initial = max(0.0, float(backoff_initial))
        self._backoff_max = max(self._backoff_initial, float(backoff_max))
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._latest_frame: Frame | None = None
        self._pending_config: CameraConfig | None = None
        self._frames_processed = 0
        self._frames_processed_since_open = 0

    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def latest_frame(self) -> Frame | None:
        return self._latest_frame

    @property
    def frames_processed(self) -> int:
        return self._frames_processed

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"camwatch-pipeline-{self.camera_id}")

    async def stop(self) -> None:
        """Cancel the task and wait until it has finalised any open segment."""

        task = self._task
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    def request_config(self, config: CameraConfig) -> None:
        """Queue *config*; it replaces the active one before the next frame."""

        if self.running:
            self._pending_config = config
        else:
            self._machine.apply_config(config)

    # ------------------------------------------------------------------
    async def _run(self) -> None:
        attempts = 0
        backoff = self._backoff_initial
        try:
            while True:
                reason = await self._run_source(recovering=attempts > 0)
                if self._frames_processed_since_open:
                    attempts = 0
                    backoff = self._backoff_initial
                self._emit(await self._in_thread(self._machine.interrupt, reason))
                attempts += 1
                if attempts > self._retry_budget:
                    logger.error(
                        "Camera %s source failed after %d attempt(s): %s",
                        self.camera_id,
                        attempts,
                        reason,
                    )
                    self._publish(
                        StatusUpdate(
                            camera_id=self.camera_id,
                            kind="source_failed",
                            state=self._machine.state.phase.value,
                            timestamp=_utcnow(),
                            detail=reason,
                            critical=True,
                        )
                    )
                    return
                logger.warning(
                    "Camera %s source unavailable (%s); retrying in %.1fs (%d/%d)",
                    self.camera_id,
                    reason,
                    backoff,
                    attempts,
                    self._retry_budget,
                )
                await self._sleep(backoff)
                backoff = next_backoff(backoff, self._backoff_max)
        except asyncio.CancelledError:
            logger.debug("Pipeline for camera %s cancelled", self.camera_id)
            raise
        except Exception as exc:
            logger.exception("Pipeline for camera %s crashed", self.camera_id)
            self._publish(
                StatusUpdate(
                    camera_id=self.camera_id,
                    kind="source_failed",
                    state=self._machine.state.phase.value,
                    timestamp=_utcnow(),
                    detail=summarise_exception(exc),
                    critical=True,
                )
            )
        finally:
            self._emit(await self._in_thread(self._machine.disarm))
            self._latest_frame = None

    async def _run_source(self, *, recovering: bool) -> str:
        """Consume one source until it fails and return the failure reason."""

        self._frames_processed_since_open = 0
        try:
            source = await asyncio.to_thread(self._source_factory)
        except (CameraError, SourceUnavailable, OSError) as exc:
            return summarise_exception(exc)

        try:
            async for frame in source:
                await self._handle_frame(frame)
                if recovering and self._frames_processed_since_open == 1:
                    logger.info("Camera %s source recovered", self.camera_id)
                    self._publish(
                        StatusUpdate(
                            camera_id=self.camera_id,
                            kind="recovered",
                            state=self._machine.state.phase.value,
                            timestamp=frame.timestamp,
                        )
                    )
        except SourceUnavailable as exc:
            return str(exc) or "Frame source lost"
        finally:
            await source.aclose()
        return source.failure or "Frame source closed"

    async def _handle_frame(self, frame: Frame) -> None:
        self._latest_frame = frame
        config = self._pending_config
        self._pending_config = None
        try:
            notes = await self._in_thread(self._step, frame, config)
        except ValueError as exc:
            raise SourceUnavailable(f"Unusable frame: {exc}") from exc
        self._frames_processed += 1
        self._frames_processed_since_open += 1
        self._emit(notes)

    async def _in_thread(self, func: Callable[..., List[Notification]], *args: object) -> List[Notification]:
        """Run *func* in a worker thread, publishing its notes even when cancelled.

        A cancelled await does not stop the thread, so whatever the state
        machine did (an alert raised, a segment opened) is still reported.
        """

        future = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            try:
                notes = await future
            except Exception:
                logger.exception("Camera %s step failed while stopping", self.camera_id)
            else:
                self._emit(notes)
            raise

    def _step(self, frame: Frame, config: CameraConfig | None) -> List[Notification]:
        if config is not None:
            self._machine.apply_config(config)
        notes = self._machine.process(frame)
        if self._index is not None:
            for note in notes:
                if not isinstance(note, AlertEvent):
                    continue
                try:
                    self._index.record_alert(note)
                except sqlite3.Error:
                    logger.exception("Failed to index alert for camera %s", self.camera_id)
        return notes

    def _emit(self, notes: List[Notification]) -> None:
        for note in notes:
            self._publish(note)


__all__ = ["CameraPipeline", "Publish", "SourceFactory", "next_backoff"]
