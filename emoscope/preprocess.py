"""Image decoding and conversion into the model's input tensor.

The model expects a ``(1, 48, 48, 1)`` float32 array in ``[0, 1]``: a single
grayscale channel, bilinearly resized, with a leading batch dimension.
"""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Optional

import albumentations as A
import cv2
import numpy as np

from .errors import InputError

INPUT_SIZE = 48
INPUT_SHAPE = (1, INPUT_SIZE, INPUT_SIZE, 1)

SUPPORTED_MEDIA_TYPES = ("image/jpeg", "image/png", "image/webp")
_MEDIA_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}

# Not in every platform mime table.
mimetypes.add_type("image/webp", ".webp")


def get_inference_transform() -> A.Compose:
    """Bilinear resize to 48x48 followed by [0, 255] -> [0, 1] scaling."""

    return A.Compose(
        [
            A.Resize(INPUT_SIZE, INPUT_SIZE, interpolation=cv2.INTER_LINEAR),
            A.Normalize(mean=(0.0,), std=(1.0,), max_pixel_value=255.0),
        ]
    )


_TRANSFORM = get_inference_transform()


def resolve_media_type(media_type: Optional[str], filename: Optional[str] = None) -> str:
    """Return the canonical media type or raise :class:`InputError`.

    Only JPEG, PNG and WebP are accepted. When no type is declared it is
    guessed from ``filename``.
    """

    declared = (media_type or "").split(";")[0].strip().lower()
    if not declared and filename:
        declared = mimetypes.guess_type(filename)[0] or ""
    declared = _MEDIA_TYPE_ALIASES.get(declared, declared)
    if declared not in SUPPORTED_MEDIA_TYPES:
        shown = declared or "unknown"
        raise InputError(
            f"Unsupported media type '{shown}'; expected one of {', '.join(SUPPORTED_MEDIA_TYPES)}"
        )
    return declared


def decode_image(data: bytes) -> np.ndarray:
    """Decode encoded image bytes into a BGR uint8 array."""

    if not data:
        raise InputError("Empty image upload")
    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise InputError("Unable to decode image data")
    return image


def load_image(path: str | Path) -> np.ndarray:
    image_path = Path(path)
    if not image_path.is_file():
        raise InputError(f"Image not found: {image_path}")
    return decode_image(image_path.read_bytes())


def mirror_frame(frame: np.ndarray) -> np.ndarray:
    return cv2.flip(frame, 1)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Collapse colour channels by per-pixel averaging (float32, HxW)."""

    if image.ndim == 2:
        return image.astype(np.float32)
    if image.ndim != 3:
        raise InputError(f"Expected a 2D or 3D image array, got shape {image.shape}")

    channels = image.shape[2]
    if channels == 1:
        return image[..., 0].astype(np.float32)
    if channels == 4:
        image = image[..., :3]
    elif channels != 3:
        raise InputError(f"Unsupported channel count: {channels}")
    return image.astype(np.float32).mean(axis=2)


def preprocess_image(image: np.ndarray) -> np.ndarray:
    """Convert a decoded image or captured frame into the model input tensor."""

    if image is None or image.size == 0 or min(image.shape[:2]) == 0:
        raise InputError("Cannot preprocess an empty image")

    gray = to_grayscale(image)[..., None]
    resized = _TRANSFORM(image=gray)["image"]
    if resized.ndim == 2:
        resized = resized[..., None]
    tensor = np.clip(resized, 0.0, 1.0).astype(np.float32)
    return np.expand_dims(tensor, axis=0)
