"""Run a loaded model on preprocessed tensors and rank the emotion percentages."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch

from .distribution import NUM_EMOTIONS, EmotionDistribution, Provenance, distribution_from_scores
from .errors import InferenceError
from .fallback import DemoFallbackGenerator
from .logger import get_logger
from .preprocess import INPUT_SHAPE
from .resolver import ModelHandle, ModelInfo

logger = get_logger(__name__)

DEMO_ORIGIN = "demo"


@dataclass(frozen=True)
class InferenceResult:
    distribution: EmotionDistribution
    provenance: Provenance
    origin: str
    error: Optional[str] = None
    elapsed_ms: float = 0.0

    @property
    def is_demo(self) -> bool:
        return self.provenance is Provenance.DEMO

    @property
    def dominant(self) -> tuple[str, int]:
        return self.distribution.dominant


class InferenceEngine:
    """Owns the current :class:`ModelHandle` and turns tensors into results.

    Failures never propagate: a missing or synthetic model, or an error during
    prediction, yields demo output tagged ``Provenance.DEMO`` and the handle
    stays usable for the next call.
    """

    def __init__(self, handle: Optional[ModelHandle] = None, fallback: Optional[DemoFallbackGenerator] = None):
        self._handle = handle
        self.fallback = fallback or DemoFallbackGenerator()
        self.last_error: Optional[str] = None

    @property
    def handle(self) -> Optional[ModelHandle]:
        return self._handle

    @property
    def model_info(self) -> Optional[ModelInfo]:
        return None if self._handle is None else self._handle.info

    @property
    def provenance(self) -> Provenance:
        if self._handle is None or self._handle.synthetic or self._handle.disposed:
            return Provenance.DEMO
        return Provenance.MODEL

    def replace_handle(self, handle: Optional[ModelHandle]) -> None:
        """Swap in a new handle, disposing the previous one."""

        previous, self._handle = self._handle, handle
        if previous is not None and previous is not handle:
            previous.dispose()

    def dispose(self) -> None:
        self.replace_handle(None)

    def infer(self, tensor: np.ndarray) -> InferenceResult:
        start = time.perf_counter()
        handle = self._handle
        if handle is None or handle.synthetic or handle.disposed:
            return self._demo(start)

        try:
            scores = self.predict_scores(handle, tensor)
            distribution = distribution_from_scores(scores)
        except Exception as exc:  # pylint: disable=broad-except
            error = f"{type(exc).__name__}: {exc}"
            logger.warning("Inference with model from %s failed, using demo output: %s", handle.origin, error)
            self.last_error = error
            return self._demo(start, error=error)

        self.last_error = None
        return InferenceResult(
            distribution=distribution,
            provenance=Provenance.MODEL,
            origin=handle.origin,
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )

    async def infer_async(self, tensor: np.ndarray) -> InferenceResult:
        return await asyncio.to_thread(self.infer, tensor)

    @staticmethod
    def predict_scores(handle: ModelHandle, tensor: np.ndarray) -> np.ndarray:
        """Return the 7 class probabilities for one ``(1, 48, 48, 1)`` tensor.

        Intermediate torch tensors are dropped before returning; only a plain
        float64 copy of the scores leaves this function.
        """

        if tuple(np.shape(tensor)) != INPUT_SHAPE:
            raise InferenceError(f"Expected input shape {INPUT_SHAPE}, got {tuple(np.shape(tensor))}")

        model = handle.model
        in_chans = handle.descriptor.architecture.in_chans
        batch = torch.from_numpy(np.ascontiguousarray(tensor, dtype=np.float32)).permute(0, 3, 1, 2)
        batch = batch.to(handle.device)
        if in_chans == 3:
            batch = batch.expand(-1, 3, -1, -1)
        with torch.inference_mode():
            output = model(batch)
            if handle.descriptor.output == "logits":
                output = torch.softmax(output, dim=1)
            scores = output.detach().cpu().numpy().astype(np.float64).reshape(-1).copy()
        del batch, output

        if scores.size != NUM_EMOTIONS:
            raise InferenceError(f"Model returned {scores.size} scores; expected {NUM_EMOTIONS}")
        return scores

    def _demo(self, start: float, error: Optional[str] = None) -> InferenceResult:
        return InferenceResult(
            distribution=self.fallback.generate(),
            provenance=Provenance.DEMO,
            origin=DEMO_ORIGIN,
            error=error,
            elapsed_ms=(time.perf_counter() - start) * 1000,
        )
