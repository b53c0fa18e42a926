"""Emotion labels and the ranked percentage distribution built from model scores."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Mapping, Sequence, Tuple

import numpy as np

# Index contract with the model's output vector (FER-2013 order).
EMOTION_LABELS: Dict[int, str] = {
    0: "Angry",
    1: "Disgust",
    2: "Fear",
    3: "Happy",
    4: "Sad",
    5: "Surprise",
    6: "Neutral",
}
EMOTION_ORDER: Tuple[str, ...] = tuple(EMOTION_LABELS[i] for i in range(len(EMOTION_LABELS)))
NUM_EMOTIONS = len(EMOTION_ORDER)


class Provenance(str, Enum):
    MODEL = "model"
    DEMO = "demo"


@dataclass(frozen=True)
class EmotionDistribution(Mapping[str, int]):
    """Immutable label -> percentage mapping, iterated in rank order.

    The first entry is the dominant emotion; percentages sum to 100.
    """

    entries: Tuple[Tuple[str, int], ...]

    def __getitem__(self, label: str) -> int:
        for name, value in self.entries:
            if name == label:
                return value
        raise KeyError(label)

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def dominant(self) -> Tuple[str, int]:
        return self.entries[0]

    def as_dict(self) -> Dict[str, int]:
        return dict(self.entries)

    def __str__(self) -> str:
        return ", ".join(f"{name} {value}%" for name, value in self.entries)


def round_half_up(values: np.ndarray) -> np.ndarray:
    # The epsilon absorbs binary representation error (0.145 * 100 -> 14.4999...).
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5 + 1e-9).astype(np.int64)


def _rank(percentages: np.ndarray) -> list[int]:
    return sorted(range(len(percentages)), key=lambda idx: (-int(percentages[idx]), idx))


def _distribute_residual(percentages: np.ndarray) -> np.ndarray:
    residual = 100 - int(percentages.sum())
    step = 1 if residual > 0 else -1
    order = _rank(percentages)
    pos = 0
    while residual != 0:
        idx = order[pos % len(order)]
        if step > 0 or percentages[idx] > 0:
            percentages[idx] += step
            residual -= step
        pos += 1
    return percentages


def percentages_from_scores(scores: Sequence[float] | np.ndarray) -> np.ndarray:
    """Convert raw scores aligned with :data:`EMOTION_ORDER` to integer percentages.

    Scores are clipped at zero, scaled by 100 and rounded half-up. A total other
    than 100 is rescaled by ``100 / total`` and re-rounded; any residual left by
    re-rounding is handed out one point at a time in rank order. All-zero scores
    yield the uniform distribution.
    """

    raw = np.asarray(scores, dtype=np.float64).reshape(-1)
    if raw.size != NUM_EMOTIONS:
        raise ValueError(f"Expected {NUM_EMOTIONS} scores, got {raw.size}")
    if not np.all(np.isfinite(raw)):
        raise ValueError("Scores must be finite")

    raw = np.clip(raw, 0.0, None)
    percentages = round_half_up(raw * 100.0)
    total = int(percentages.sum())
    if total == 0:
        if raw.sum() > 0:
            percentages = round_half_up(raw / raw.sum() * 100.0)
        else:
            percentages = np.full(NUM_EMOTIONS, int(round_half_up(100.0 / NUM_EMOTIONS)), dtype=np.int64)
    elif total != 100:
        percentages = round_half_up(percentages * (100.0 / total))

    if int(percentages.sum()) != 100:
        percentages = _distribute_residual(percentages)
    return percentages


def distribution_from_scores(scores: Sequence[float] | np.ndarray) -> EmotionDistribution:
    """Build the ranked distribution; ties keep canonical label order."""

    percentages = percentages_from_scores(scores)
    return EmotionDistribution(
        tuple((EMOTION_ORDER[idx], int(percentages[idx])) for idx in _rank(percentages))
    )
