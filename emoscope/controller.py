"""Single owner of the pipeline state: model, uploads, capture and results.

Front ends (the CLIs here, or any UI) call the async operations on
:class:`PipelineController` and render :func:`project_view` of its state.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

import numpy as np

from .capture import CaptureScheduler, OpenCVVideoSource, VideoSource
from .config import Settings, load_settings
from .distribution import Provenance
from .engine import InferenceEngine, InferenceResult
from .errors import InputError, ResourceAcquisitionError
from .fallback import DemoFallbackGenerator
from .logger import get_logger
from .preprocess import decode_image, preprocess_image, resolve_media_type
from .resolver import ModelInfo, ModelResolver, ResolutionDiagnostic

logger = get_logger(__name__)


class Mode(str, enum.Enum):
    UPLOAD = "upload"
    CAPTURE = "capture"


@dataclass
class PipelineState:
    mode: Mode = Mode.UPLOAD
    model_loading: bool = False
    load_progress: float = 0.0
    model_info: Optional[ModelInfo] = None
    model_diagnostic: Optional[ResolutionDiagnostic] = None
    result: Optional[InferenceResult] = None
    generation: int = 0
    capture_active: bool = False
    error: Optional[str] = None


@dataclass(frozen=True)
class PipelineView:
    mode: str
    model_status: str
    demo: bool
    progress: Optional[float]
    model_summary: Optional[str]
    diagnostic: Optional[str]
    ranking: Tuple[Tuple[str, int], ...]
    result_source: Optional[str]
    capture_active: bool
    error: Optional[str]

    @property
    def dominant(self) -> Optional[Tuple[str, int]]:
        return self.ranking[0] if self.ranking else None


def project_view(state: PipelineState) -> PipelineView:
    """Pure projection of the pipeline state into display fields."""

    info = state.model_info
    if state.model_loading:
        status = "loading"
    elif info is None:
        status = "not loaded"
    elif info.synthetic:
        status = "demo (placeholder model)"
    else:
        status = "model loaded"

    summary = None
    if info is not None:
        summary = (
            f"{info.origin}: input {list(info.input_shape)} -> output {list(info.output_shape)}, "
            f"{info.layer_count} layers, {info.parameter_count:,} parameters"
        )

    result = state.result
    return PipelineView(
        mode=state.mode.value,
        model_status=status,
        demo=info is None or info.synthetic,
        progress=state.load_progress if state.model_loading else None,
        model_summary=summary,
        diagnostic=state.model_diagnostic.message() if state.model_diagnostic else None,
        ranking=tuple(result.distribution.items()) if result else (),
        result_source=result.provenance.value if result else None,
        capture_active=state.capture_active,
        error=state.error,
    )


class PipelineController:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        resolver: Optional[ModelResolver] = None,
        engine: Optional[InferenceEngine] = None,
        source_factory: Optional[Callable[[], VideoSource]] = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.state = PipelineState()

        self.resolver = resolver or ModelResolver.from_settings(self.settings)
        if self.resolver.on_progress is None:
            self.resolver.on_progress = self._on_progress
        self.engine = engine or InferenceEngine(fallback=DemoFallbackGenerator(self.settings.demo_seed))

        if source_factory is None:

            def source_factory() -> VideoSource:
                return OpenCVVideoSource(
                    self.settings.camera_index, width=self.settings.frame_width, height=self.settings.frame_height
                )

        self.capture = CaptureScheduler(
            source_factory,
            self.analyze_frame,
            on_result=self._on_capture_result,
            interval=self.settings.capture_interval,
            mirror=self.settings.mirror,
        )
        self._load_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def provenance(self) -> Provenance:
        return self.engine.provenance

    def view(self) -> PipelineView:
        return project_view(self.state)

    async def load_model(self) -> Optional[ResolutionDiagnostic]:
        """Dispose any current model and resolve again.

        Never fails: when no location works a placeholder is installed and the
        returned diagnostic describes what was tried.
        """

        async with self._load_lock:
            self._loop = asyncio.get_running_loop()
            self.engine.dispose()
            self.state.model_info = None
            self.state.model_diagnostic = None
            self.state.load_progress = 0.0
            self.state.model_loading = True
            seed = self.settings.demo_seed or 0
            try:
                handle, diagnostic = await asyncio.to_thread(self.resolver.resolve_or_placeholder, seed)
            finally:
                self.state.model_loading = False

            self.engine.replace_handle(handle)
            self.state.model_info = handle.info
            self.state.model_diagnostic = diagnostic
            return diagnostic

    async def reload_model(self) -> Optional[ResolutionDiagnostic]:
        logger.info("Reloading model")
        return await self.load_model()

    async def analyze_frame(self, frame: np.ndarray) -> InferenceResult:
        tensor = preprocess_image(frame)
        return await self.engine.infer_async(tensor)

    async def analyze_upload(
        self, data: bytes, media_type: Optional[str] = None, filename: Optional[str] = None
    ) -> InferenceResult:
        """Classify an uploaded image.

        Unsupported media types raise :class:`InputError` before anything is
        decoded. If a newer upload (or a mode switch) happens while this one is
        running, its result is returned but not stored.
        """

        try:
            resolve_media_type(media_type, filename)
        except InputError as exc:
            self.state.error = str(exc)
            raise

        if self.state.mode is not Mode.UPLOAD:
            await self.set_mode(Mode.UPLOAD)
        self.state.generation += 1
        token = self.state.generation

        try:
            image = await asyncio.to_thread(decode_image, data)
            tensor = preprocess_image(image)
        except InputError as exc:
            if token == self.state.generation:
                self.state.error = str(exc)
            raise
        result = await self.engine.infer_async(tensor)

        if token == self.state.generation and self.state.mode is Mode.UPLOAD:
            self.state.result = result
            self.state.error = None
        else:
            logger.debug("Discarding stale upload result (generation %d, current %d)", token, self.state.generation)
        return result

    async def analyze_file(self, path: str | Path, media_type: Optional[str] = None) -> InferenceResult:
        image_path = Path(path)
        if not image_path.is_file():
            self.state.error = f"Image not found: {image_path}"
            raise InputError(self.state.error)
        data = await asyncio.to_thread(image_path.read_bytes)
        return await self.analyze_upload(data, media_type=media_type, filename=image_path.name)

    async def start_capture(self) -> None:
        if self.state.mode is not Mode.CAPTURE:
            await self.set_mode(Mode.CAPTURE)
        try:
            await self.capture.start()
        except ResourceAcquisitionError as exc:
            self.state.error = str(exc)
            self.state.capture_active = False
            raise
        self.state.capture_active = True
        self.state.error = None

    async def stop_capture(self) -> None:
        await self.capture.stop()
        self.state.capture_active = False

    async def set_mode(self, mode: Mode) -> None:
        """Switch input mode; always stops capture and clears results first."""

        await self.stop_capture()
        self.state.mode = Mode(mode)
        self.state.generation += 1
        self.state.result = None
        self.state.error = None

    async def close(self) -> None:
        await self.stop_capture()
        self.engine.dispose()
        self.resolver.close()

    async def __aenter__(self) -> "PipelineController":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _on_progress(self, fraction: float) -> None:
        # Called from the resolver's worker thread; state is only touched on the loop.
        loop = self._loop
        if loop is None or loop.is_closed():
            self._apply_progress(fraction)
            return
        loop.call_soon_threadsafe(self._apply_progress, fraction)

    def _apply_progress(self, fraction: float) -> None:
        self.state.load_progress = fraction

    def _on_capture_result(self, result: Optional[InferenceResult]) -> None:
        self.state.result = result
