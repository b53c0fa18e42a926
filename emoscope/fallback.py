"""Demo fallback: plausible random distributions when no real model output exists."""

from __future__ import annotations

from typing import Optional

import numpy as np

from .distribution import NUM_EMOTIONS, EmotionDistribution, distribution_from_scores


class DemoFallbackGenerator:
    """Draws seven independent non-negative weights and normalizes them.

    Output goes through the same rounding and ranking as real inference so the
    two are structurally identical; callers tag it with ``Provenance.DEMO``.
    """

    def __init__(self, seed: Optional[int] = None) -> None:
        self._rng = np.random.default_rng(seed)

    def generate(self) -> EmotionDistribution:
        weights = self._rng.random(NUM_EMOTIONS)
        total = weights.sum()
        if total <= 0:  # pragma: no cover - probability zero
            weights = np.ones(NUM_EMOTIONS)
            total = float(NUM_EMOTIONS)
        return distribution_from_scores(weights / total)
