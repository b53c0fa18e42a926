"""Model acquisition from an ordered list of candidate locations.

Locations are tried strictly in order and the first structurally valid bundle
wins. When every location fails the resolver can hand back a synthetic
placeholder model together with a diagnostic, so the pipeline keeps running
in demo mode while the operator fixes the deployment.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

import requests
import torch
from torch import nn

from .bundle import (
    DEFAULT_DESCRIPTOR,
    ModelDescriptor,
    assemble_model,
    deserialize_shard,
    expected_layout,
)
from .config import Settings
from .distribution import NUM_EMOTIONS
from .errors import BundleFormatError, InferenceError, ModelResolutionError
from .logger import get_logger
from .models import build_placeholder_model, count_layers, count_parameters
from .preprocess import INPUT_SHAPE, INPUT_SIZE

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024
PLACEHOLDER_ORIGIN = "synthetic://placeholder"

ProgressCallback = Callable[[float], None]


def select_device(name: str | torch.device = "cpu") -> torch.device:
    if isinstance(name, torch.device):
        return name
    if name == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(name)


def is_remote(location: str) -> bool:
    return location.startswith(("http://", "https://"))


@dataclass(frozen=True)
class ModelInfo:
    origin: str
    input_shape: Tuple[int, ...]
    output_shape: Tuple[int, ...]
    layer_count: int
    parameter_count: int
    synthetic: bool = False


class ModelHandle:
    """A loaded, warm-up checked model plus the metadata shown to users.

    The handle is read-only for inference callers; it is replaced wholesale on
    reload and must be disposed before being dropped.
    """

    def __init__(
        self,
        model: nn.Module,
        descriptor: ModelDescriptor,
        origin: str,
        device: torch.device | str = "cpu",
        synthetic: bool = False,
    ) -> None:
        self.device = select_device(device)
        self.descriptor = descriptor
        self._model: Optional[nn.Module] = model.to(self.device).eval()
        output_shape = verify_model(self._model, descriptor, self.device)
        self.info = ModelInfo(
            origin=origin,
            input_shape=descriptor.input_shape,
            output_shape=output_shape,
            layer_count=count_layers(model),
            parameter_count=count_parameters(model),
            synthetic=synthetic,
        )

    @property
    def origin(self) -> str:
        return self.info.origin

    @property
    def synthetic(self) -> bool:
        return self.info.synthetic

    @property
    def disposed(self) -> bool:
        return self._model is None

    @property
    def model(self) -> nn.Module:
        if self._model is None:
            raise InferenceError(f"Model from {self.origin} has been disposed")
        return self._model

    def dispose(self) -> None:
        if self._model is None:
            return
        self._model = None
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
        logger.debug("Disposed model handle from %s", self.origin)


def verify_model(model: nn.Module, descriptor: ModelDescriptor, device: torch.device) -> Tuple[int, ...]:
    """Run one zero input through ``model`` and check the output shape."""

    dummy = torch.zeros(1, descriptor.architecture.in_chans, INPUT_SIZE, INPUT_SIZE, device=device)
    try:
        with torch.inference_mode():
            output = model(dummy)
    except RuntimeError as exc:
        raise BundleFormatError(f"Warm-up forward pass failed: {exc}") from exc
    shape = tuple(output.shape)
    if shape != (1, NUM_EMOTIONS):
        raise BundleFormatError(f"Model output shape {shape} does not match (1, {NUM_EMOTIONS})")
    return shape


def build_placeholder_handle(seed: int = 0, device: torch.device | str = "cpu") -> ModelHandle:
    model = build_placeholder_model(seed=seed)
    descriptor = ModelDescriptor(architecture=model.spec, shards=(), input_shape=INPUT_SHAPE)
    return ModelHandle(model, descriptor, PLACEHOLDER_ORIGIN, device=device, synthetic=True)


@dataclass(frozen=True)
class ResolutionAttempt:
    location: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ResolutionDiagnostic:
    attempts: Tuple[ResolutionAttempt, ...]
    expected_layout: Tuple[str, ...]

    @property
    def locations(self) -> List[str]:
        return [attempt.location for attempt in self.attempts]

    @property
    def last_error(self) -> Optional[str]:
        for attempt in reversed(self.attempts):
            if attempt.error:
                return attempt.error
        return None

    def message(self) -> str:
        tried = "\n".join(f"  - {attempt.location}: {attempt.error}" for attempt in self.attempts) or "  (none)"
        return (
            f"No model could be loaded from {len(self.attempts)} location(s):\n{tried}\n"
            f"Last error: {self.last_error}\n"
            f"Expected layout in each location: {', '.join(self.expected_layout)} "
            f"(1 descriptor + {len(self.expected_layout) - 1} weight shards)"
        )


class ModelResolver:
    def __init__(
        self,
        locations: Sequence[str],
        shard_count: int = 4,
        descriptor_name: str = DEFAULT_DESCRIPTOR,
        device: torch.device | str = "cpu",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.locations = list(locations)
        self.shard_count = shard_count
        self.descriptor_name = descriptor_name
        self.device = select_device(device)
        self.timeout = timeout
        self.on_progress = on_progress
        self._session = session
        self._progress = 0.0
        self._bytes_read = 0
        self._total_bytes = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        on_progress: Optional[ProgressCallback] = None,
        session: Optional[requests.Session] = None,
    ) -> "ModelResolver":
        return cls(
            settings.candidate_locations(),
            shard_count=settings.shard_count,
            descriptor_name=settings.descriptor_name,
            device=settings.device,
            timeout=settings.download_timeout,
            session=session,
            on_progress=on_progress,
        )

    @property
    def progress(self) -> float:
        return self._progress

    def expected_layout(self) -> Tuple[str, ...]:
        return tuple(expected_layout(self.shard_count, self.descriptor_name))

    def resolve(self) -> ModelHandle:
        """Return the first valid model or raise :class:`ModelResolutionError`."""

        attempts: List[ResolutionAttempt] = []
        for location in self.locations:
            self._start_attempt()
            try:
                handle = self._load(location)
            except Exception as exc:  # pylint: disable=broad-except
                error = f"{type(exc).__name__}: {exc}"
                logger.info("Model location %s failed: %s", location, error)
                attempts.append(ResolutionAttempt(location, error))
                continue
            self._report(1.0)
            logger.info(
                "Loaded model from %s (%d layers, %d parameters)",
                location,
                handle.info.layer_count,
                handle.info.parameter_count,
            )
            return handle

        raise ModelResolutionError(ResolutionDiagnostic(tuple(attempts), self.expected_layout()))

    def resolve_or_placeholder(self, seed: int = 0) -> Tuple[ModelHandle, Optional[ResolutionDiagnostic]]:
        """Like :meth:`resolve`, but never fails: falls back to a synthetic model."""

        try:
            return self.resolve(), None
        except ModelResolutionError as exc:
            logger.warning("%s\nFalling back to a synthetic placeholder model (demo mode).", exc.diagnostic.message())
            return build_placeholder_handle(seed=seed, device=self.device), exc.diagnostic

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None

    def _start_attempt(self) -> None:
        self._bytes_read = 0
        self._total_bytes = 0
        self._progress = 0.0
        if self.on_progress is not None:
            self.on_progress(0.0)

    def _report(self, fraction: float) -> None:
        fraction = min(1.0, max(self._progress, fraction))
        if fraction == self._progress and fraction != 1.0:
            return
        self._progress = fraction
        if self.on_progress is not None:
            self.on_progress(fraction)

    def _on_chunk(self, size: int) -> None:
        self._bytes_read += size
        if self._total_bytes:
            self._report(self._bytes_read / self._total_bytes)

    def _load(self, location: str) -> ModelHandle:
        descriptor_bytes = self._read(location, self.descriptor_name)
        descriptor = ModelDescriptor.from_json(descriptor_bytes, expected_shards=self.shard_count)
        self._total_bytes = len(descriptor_bytes) + descriptor.total_bytes
        self._report(self._bytes_read / self._total_bytes)

        shards = []
        for entry in descriptor.shards:
            payload = self._read(location, entry.path)
            if len(payload) != entry.size:
                raise BundleFormatError(f"Shard {entry.path} has {len(payload)} bytes; descriptor declares {entry.size}")
            shards.append(deserialize_shard(payload))

        model = assemble_model(descriptor, shards)
        return ModelHandle(model, descriptor, origin=location, device=self.device)

    def _read(self, location: str, name: str) -> bytes:
        if is_remote(location):
            return self._read_remote(f"{location.rstrip('/')}/{name}")
        return self._read_local(Path(location) / name)

    def _read_local(self, path: Path) -> bytes:
        chunks = []
        with path.open("rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                chunks.append(chunk)
                self._on_chunk(len(chunk))
        return b"".join(chunks)

    def _read_remote(self, url: str) -> bytes:
        if self._session is None:
            self._session = requests.Session()
        chunks = []
        with self._session.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    chunks.append(chunk)
                    self._on_chunk(len(chunk))
        return b"".join(chunks)
