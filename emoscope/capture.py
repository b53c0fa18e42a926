"""Timer-driven sampling of a live video source for continuous inference.

The scheduler is a two-state machine (idle/active). While active it wakes up
every ``interval`` seconds, grabs the latest frame and hands it to an async
``analyze`` callable. A tick that fires while the previous frame is still
being analysed is dropped, so a session never has more than one inference in
flight.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Awaitable, Callable, Optional, Protocol

import cv2
import numpy as np

from .engine import InferenceResult
from .errors import ResourceAcquisitionError
from .logger import get_logger
from .preprocess import mirror_frame

logger = get_logger(__name__)

DEFAULT_INTERVAL = 2.0


class VideoSource(Protocol):
    def open(self) -> None:
        """Acquire the device; raise :class:`ResourceAcquisitionError` on failure."""
        ...

    def read_frame(self) -> Optional[np.ndarray]:
        """Return the latest fully buffered BGR frame, or None if none is ready."""
        ...

    def release(self) -> None:
        ...


class OpenCVVideoSource:
    """Webcam (or video file) source backed by ``cv2.VideoCapture``."""

    def __init__(self, device: int | str = 0, width: int = 640, height: int = 480):
        self.device = device
        self.width = width
        self.height = height
        self._cap: Optional[cv2.VideoCapture] = None
        # cv2.VideoCapture must not be released while a read is in progress.
        self._lock = threading.Lock()

    def open(self) -> None:
        cap = cv2.VideoCapture(self.device)
        if not cap.isOpened():
            cap.release()
            label = f"video source: {self.device}" if isinstance(self.device, str) else f"camera {self.device}"
            raise ResourceAcquisitionError(f"Cannot open {label}; check that it exists and access is permitted")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._cap = cap

    def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._cap is None:
                return None
            ret, frame = self._cap.read()
        if not ret or frame is None or frame.size == 0:
            return None
        return frame

    def release(self) -> None:
        with self._lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None


class CaptureState(enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"


_session_ids = itertools.count(1)


@dataclass
class CaptureSession:
    source: VideoSource
    session_id: int = field(default_factory=lambda: next(_session_ids))
    timer: Optional[asyncio.Task] = None
    pending: Optional[asyncio.Task] = None
    read: Optional[asyncio.Future] = None
    closed: bool = False
    ticks: int = 0
    dropped_ticks: int = 0
    empty_ticks: int = 0
    completed: int = 0

    @property
    def in_flight(self) -> bool:
        return self.pending is not None and not self.pending.done()


Analyze = Callable[[np.ndarray], Awaitable[InferenceResult]]
ResultCallback = Callable[[Optional[InferenceResult]], None]


class CaptureScheduler:
    def __init__(
        self,
        source_factory: Callable[[], VideoSource],
        analyze: Analyze,
        on_result: Optional[ResultCallback] = None,
        interval: float = DEFAULT_INTERVAL,
        mirror: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.source_factory = source_factory
        self.analyze = analyze
        self.on_result = on_result
        self.interval = interval
        self.mirror = mirror
        self.last_result: Optional[InferenceResult] = None
        self.last_frame: Optional[np.ndarray] = None
        self._session: Optional[CaptureSession] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CaptureState:
        return CaptureState.ACTIVE if self._session is not None else CaptureState.IDLE

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    async def start(self) -> CaptureSession:
        """Idle -> Active. Starting an active scheduler returns the running session."""

        async with self._lock:
            if self._session is not None:
                return self._session

            source = self.source_factory()
            try:
                await asyncio.to_thread(source.open)
            except ResourceAcquisitionError:
                await asyncio.to_thread(source.release)
                raise
            except Exception as exc:  # pylint: disable=broad-except
                await asyncio.to_thread(source.release)
                raise ResourceAcquisitionError(f"Cannot open video source: {exc}") from exc

            session = CaptureSession(source=source)
            session.timer = asyncio.create_task(self._run(session), name=f"capture-timer-{session.session_id}")
            session.timer.add_done_callback(partial(self._log_failure, session))
            self._session = session
            logger.info("Capture session %d started (every %.1fs)", session.session_id, self.interval)
            return session

    async def stop(self) -> None:
        """Active -> Idle. Cancels the timer, releases the source and clears the result."""

        async with self._lock:
            session, self._session = self._session, None
            if session is None:
                return
            session.closed = True
            try:
                tasks = [task for task in (session.timer, session.pending) if task is not None]
                for task in tasks:
                    task.cancel()
                if tasks:
                    # Failures are logged by the done callbacks.
                    await asyncio.wait(tasks)
            finally:
                # A cancelled sample leaves its frame read running in a worker thread.
                if session.read is not None and not session.read.done():
                    await asyncio.wait([session.read])
                await asyncio.to_thread(session.source.release)
                self.last_result = None
                self.last_frame = None
                if self.on_result is not None:
                    self.on_result(None)
                logger.info(
                    "Capture session %d stopped (%d ticks, %d analysed, %d dropped)",
                    session.session_id,
                    session.ticks,
                    session.completed,
                    session.dropped_ticks,
                )

    async def __aenter__(self) -> "CaptureScheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _run(self, session: CaptureSession) -> None:
        while not session.closed:
            await asyncio.sleep(self.interval)
            self.tick(session)

    def tick(self, session: CaptureSession) -> bool:
        """Schedule one sample; returns False when the tick is dropped."""

        if session.closed:
            return False
        session.ticks += 1
        if session.in_flight:
            session.dropped_ticks += 1
            logger.debug("Session %d: dropping tick %d, inference still running", session.session_id, session.ticks)
            return False
        session.pending = asyncio.create_task(
            self._sample(session), name=f"capture-sample-{session.session_id}-{session.ticks}"
        )
        session.pending.add_done_callback(partial(self._log_failure, session))
        return True

    def _log_failure(self, session: CaptureSession, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Capture task %s of session %d failed: %s", task.get_name(), session.session_id, exc, exc_info=exc
            )

    async def _sample(self, session: CaptureSession) -> Optional[InferenceResult]:
        session.read = asyncio.ensure_future(asyncio.to_thread(session.source.read_frame))
        frame = await asyncio.shield(session.read)
        if frame is None:
            session.empty_ticks += 1
            return None
        # The mirrored copy is for display only; classification sees the raw frame.
        preview = mirror_frame(frame) if self.mirror else frame

        result = await self.analyze(frame)
        if session.closed or session is not self._session:
            logger.debug("Session %d closed; discarding late result", session.session_id)
            return None
        session.completed += 1
        self.last_frame = preview
        self.last_result = result
        if self.on_result is not None:
            self.on_result(result)
        return result
