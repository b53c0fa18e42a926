"""Facial emotion classification from still images and live video.

The package bundles the input preprocessing, sharded model bundles with
multi-location resolution and a synthetic fallback, a PyTorch inference
engine with demo-mode degradation, and an asyncio capture scheduler for
continuous webcam inference.
"""

from .bundle import ModelDescriptor, expected_layout, export_bundle, load_checkpoint
from .capture import CaptureScheduler, CaptureSession, CaptureState, OpenCVVideoSource, VideoSource
from .config import Settings, load_settings
from .controller import Mode, PipelineController, PipelineState, PipelineView, project_view
from .distribution import (
    EMOTION_LABELS,
    EMOTION_ORDER,
    EmotionDistribution,
    Provenance,
    distribution_from_scores,
    percentages_from_scores,
)
from .engine import InferenceEngine, InferenceResult
from .errors import (
    BundleFormatError,
    EmoscopeError,
    InferenceError,
    InputError,
    ModelResolutionError,
    ResourceAcquisitionError,
)
from .fallback import DemoFallbackGenerator
from .models import ArchitectureSpec, EmotionCNN, build_placeholder_model, count_parameters
from .preprocess import decode_image, load_image, preprocess_image, resolve_media_type
from .resolver import ModelHandle, ModelInfo, ModelResolver, ResolutionDiagnostic, build_placeholder_handle

__all__ = [
    "ModelDescriptor",
    "expected_layout",
    "export_bundle",
    "load_checkpoint",
    "CaptureScheduler",
    "CaptureSession",
    "CaptureState",
    "OpenCVVideoSource",
    "VideoSource",
    "Settings",
    "load_settings",
    "Mode",
    "PipelineController",
    "PipelineState",
    "PipelineView",
    "project_view",
    "EMOTION_LABELS",
    "EMOTION_ORDER",
    "EmotionDistribution",
    "Provenance",
    "distribution_from_scores",
    "percentages_from_scores",
    "InferenceEngine",
    "InferenceResult",
    "BundleFormatError",
    "EmoscopeError",
    "InferenceError",
    "InputError",
    "ModelResolutionError",
    "ResourceAcquisitionError",
    "DemoFallbackGenerator",
    "ArchitectureSpec",
    "EmotionCNN",
    "build_placeholder_model",
    "count_parameters",
    "decode_image",
    "load_image",
    "preprocess_image",
    "resolve_media_type",
    "ModelHandle",
    "ModelInfo",
    "ModelResolver",
    "ResolutionDiagnostic",
    "build_placeholder_handle",
]
