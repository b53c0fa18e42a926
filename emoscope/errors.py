"""Error taxonomy for the inference pipeline.

None of these are fatal to the process: callers either surface them as a
visible message (input and capture errors) or degrade to demo output
(resolution and inference errors).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .resolver import ResolutionDiagnostic


class EmoscopeError(Exception):
    """Base class for all pipeline errors."""


class InputError(EmoscopeError):
    """Unsupported or malformed input, rejected before preprocessing."""


class ResourceAcquisitionError(EmoscopeError):
    """The live video resource could not be opened (e.g. permission denied)."""


class BundleFormatError(EmoscopeError):
    """A model bundle was retrieved but is not structurally valid."""


class ModelResolutionError(EmoscopeError):
    """Every candidate model location failed."""

    def __init__(self, diagnostic: "ResolutionDiagnostic") -> None:
        super().__init__(diagnostic.message())
        self.diagnostic = diagnostic


class InferenceError(EmoscopeError):
    """A loaded model failed while predicting a single input."""
