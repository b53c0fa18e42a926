import sys
from pathlib import Path

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from emoscope.bundle import export_bundle  # noqa: E402
from emoscope.config import Settings  # noqa: E402
from emoscope.models import build_placeholder_model  # noqa: E402


@pytest.fixture
def bundle_dir(tmp_path: Path) -> Path:
    """A valid 4-shard bundle exported from a seeded, randomly initialised model."""

    target = tmp_path / "bundle"
    export_bundle(build_placeholder_model(seed=1), target, shard_count=4)
    return target


@pytest.fixture
def face_bgr() -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(120, 96, 3), dtype=np.uint8)


@pytest.fixture
def settings_for(tmp_path: Path):
    """Build settings whose only candidate locations are the given paths."""

    def _build(model_dir: str | Path, **overrides) -> Settings:
        values = {
            "model_dir": str(model_dir),
            "capture_interval": 0.01,
            "demo_seed": 7,
        }
        values.update(overrides)
        return Settings(**values)

    return _build


class FakeVideoSource:
    """In-memory stand-in for a webcam; records how it was used."""

    def __init__(self, frames=None, fail_with: Exception | None = None) -> None:
        self.frames = frames
        self.fail_with = fail_with
        self.opened = 0
        self.released = 0
        self.reads = 0

    def open(self) -> None:
        self.opened += 1
        if self.fail_with is not None:
            raise self.fail_with

    def read_frame(self):
        self.reads += 1
        if self.frames is not None:
            return self.frames[(self.reads - 1) % len(self.frames)]
        frame = np.zeros((48, 64, 3), dtype=np.uint8)
        frame[:, :8] = self.reads % 256
        return frame

    def release(self) -> None:
        self.released += 1


@pytest.fixture
def fake_sources():
    """Factory for fake video sources; every created source is kept in ``.created``."""

    class Factory:
        def __init__(self) -> None:
            self.created: list[FakeVideoSource] = []
            self.kwargs: dict = {}

        def __call__(self) -> FakeVideoSource:
            source = FakeVideoSource(**self.kwargs)
            self.created.append(source)
            return source

    return Factory()
