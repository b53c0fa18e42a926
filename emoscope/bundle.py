"""Sharded model bundle: one JSON descriptor plus a fixed number of weight shards.

Layout of a bundle directory (or URL prefix)::

    model.json
    group1-shard1of4.bin
    ...
    group1-shard4of4.bin

Each shard is a ``torch.save``-d slice of the model's state dict.
"""

from __future__ import annotations

import io
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import torch
from torch import nn

from .distribution import EMOTION_ORDER
from .errors import BundleFormatError
from .models import ArchitectureSpec, build_model
from .preprocess import INPUT_SHAPE

BUNDLE_FORMAT = "emoscope-sharded"
FORMAT_VERSION = 1
DEFAULT_DESCRIPTOR = "model.json"
OUTPUT_KINDS = ("logits", "probabilities")

StateDict = Dict[str, torch.Tensor]


def shard_name(index: int, count: int) -> str:
    return f"group1-shard{index}of{count}.bin"


def expected_layout(shard_count: int, descriptor_name: str = DEFAULT_DESCRIPTOR) -> List[str]:
    return [descriptor_name] + [shard_name(i, shard_count) for i in range(1, shard_count + 1)]


@dataclass(frozen=True)
class ShardEntry:
    path: str
    keys: Tuple[str, ...]
    size: int


@dataclass(frozen=True)
class ModelDescriptor:
    architecture: ArchitectureSpec
    shards: Tuple[ShardEntry, ...]
    input_shape: Tuple[int, ...] = INPUT_SHAPE
    output: str = "logits"
    labels: Tuple[str, ...] = EMOTION_ORDER

    @property
    def total_bytes(self) -> int:
        return sum(entry.size for entry in self.shards)

    def to_json(self) -> Dict[str, Any]:
        return {
            "format": BUNDLE_FORMAT,
            "format_version": FORMAT_VERSION,
            "architecture": {
                "name": self.architecture.name,
                "in_chans": self.architecture.in_chans,
                "num_classes": self.architecture.num_classes,
                "width_mult": self.architecture.width_mult,
            },
            "input_shape": list(self.input_shape),
            "output": self.output,
            "labels": list(self.labels),
            "weights_manifest": [
                {"path": entry.path, "keys": list(entry.keys), "size": entry.size} for entry in self.shards
            ],
        }

    @classmethod
    def from_json(cls, payload: bytes | str, expected_shards: int) -> "ModelDescriptor":
        """Parse and validate a descriptor; raises :class:`BundleFormatError`."""

        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise BundleFormatError(f"Descriptor is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise BundleFormatError("Descriptor must be a JSON object")

        if data.get("format") != BUNDLE_FORMAT or data.get("format_version") != FORMAT_VERSION:
            raise BundleFormatError(
                f"Unsupported bundle format {data.get('format')!r} v{data.get('format_version')!r};"
                f" expected {BUNDLE_FORMAT!r} v{FORMAT_VERSION}"
            )
        if tuple(data.get("labels", ())) != EMOTION_ORDER:
            raise BundleFormatError(f"Descriptor labels must be {list(EMOTION_ORDER)}")
        if tuple(data.get("input_shape", ())) != INPUT_SHAPE:
            raise BundleFormatError(f"Descriptor input_shape must be {list(INPUT_SHAPE)}")
        output = data.get("output", "logits")
        if output not in OUTPUT_KINDS:
            raise BundleFormatError(f"Descriptor output must be one of {OUTPUT_KINDS}")

        try:
            arch = data["architecture"]
            spec = ArchitectureSpec(
                name=str(arch.get("name", "EmotionCNN")),
                in_chans=int(arch.get("in_chans", 1)),
                num_classes=int(arch.get("num_classes", len(EMOTION_ORDER))),
                width_mult=float(arch.get("width_mult", 1.0)),
            )
            shards = tuple(
                ShardEntry(path=str(item["path"]), keys=tuple(item["keys"]), size=int(item["size"]))
                for item in data["weights_manifest"]
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise BundleFormatError(f"Descriptor is missing required fields: {exc}") from exc

        if spec.in_chans not in (1, 3) or spec.num_classes != len(EMOTION_ORDER):
            raise BundleFormatError("Descriptor architecture must take 1 or 3 channels and emit 7 classes")
        if len(shards) != expected_shards:
            raise BundleFormatError(f"Descriptor lists {len(shards)} shard(s); expected {expected_shards}")
        for index, entry in enumerate(shards, start=1):
            if entry.path != shard_name(index, expected_shards):
                raise BundleFormatError(
                    f"Shard {index} is named {entry.path!r}; expected {shard_name(index, expected_shards)!r}"
                )
        return cls(architecture=spec, shards=shards, output=output)


def serialize_shard(tensors: Mapping[str, torch.Tensor]) -> bytes:
    buffer = io.BytesIO()
    torch.save({key: value.detach().cpu() for key, value in tensors.items()}, buffer)
    return buffer.getvalue()


def deserialize_shard(data: bytes) -> StateDict:
    try:
        shard = torch.load(io.BytesIO(data), map_location="cpu", weights_only=True)
    except Exception as exc:  # pylint: disable=broad-except
        raise BundleFormatError(f"Shard could not be deserialized: {exc}") from exc
    if not isinstance(shard, dict):
        raise BundleFormatError("Shard does not contain a tensor mapping")
    return shard


def split_state_dict(state_dict: Mapping[str, torch.Tensor], shard_count: int) -> List[StateDict]:
    """Split into ``shard_count`` contiguous, non-empty, roughly equal-byte slices."""

    items = list(state_dict.items())
    if len(items) < shard_count:
        raise ValueError(f"Cannot split {len(items)} tensors into {shard_count} shards")

    sizes = [tensor.numel() * tensor.element_size() for _, tensor in items]
    target = sum(sizes) / shard_count
    shards: List[StateDict] = [{} for _ in range(shard_count)]
    current = 0
    accumulated = 0
    for i, (key, tensor) in enumerate(items):
        shards[current][key] = tensor
        accumulated += sizes[i]
        items_left = len(items) - i - 1
        shards_left = shard_count - current - 1
        if shards_left and (items_left == shards_left or accumulated >= target * (current + 1)):
            current += 1
    return shards


def export_bundle(
    model: nn.Module,
    output_dir: str | Path,
    shard_count: int = 4,
    output: str = "logits",
    descriptor_name: str = DEFAULT_DESCRIPTOR,
) -> Path:
    """Write ``model`` as a sharded bundle and return the descriptor path."""

    if output not in OUTPUT_KINDS:
        raise ValueError(f"output must be one of {OUTPUT_KINDS}")
    spec = getattr(model, "spec", None)
    if not isinstance(spec, ArchitectureSpec):
        raise ValueError("Only models built from an ArchitectureSpec can be exported")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    entries: List[ShardEntry] = []
    for index, tensors in enumerate(split_state_dict(model.state_dict(), shard_count), start=1):
        name = shard_name(index, shard_count)
        payload = serialize_shard(tensors)
        (output_dir / name).write_bytes(payload)
        entries.append(ShardEntry(path=name, keys=tuple(tensors), size=len(payload)))

    descriptor = ModelDescriptor(architecture=spec, shards=tuple(entries), output=output)
    descriptor_path = output_dir / descriptor_name
    descriptor_path.write_text(json.dumps(descriptor.to_json(), indent=2))
    return descriptor_path


def assemble_model(descriptor: ModelDescriptor, shards: Sequence[Mapping[str, torch.Tensor]]) -> nn.Module:
    """Merge shard tensors and load them strictly into the described architecture."""

    merged: StateDict = {}
    for entry, tensors in zip(descriptor.shards, shards):
        if set(tensors) != set(entry.keys):
            raise BundleFormatError(f"Shard {entry.path} keys do not match the descriptor manifest")
        overlap = set(merged) & set(tensors)
        if overlap:
            raise BundleFormatError(f"Shard {entry.path} repeats keys: {', '.join(sorted(overlap))}")
        merged.update(tensors)

    try:
        model = build_model(descriptor.architecture)
        model.load_state_dict(merged, strict=True)
    except (RuntimeError, ValueError) as exc:
        raise BundleFormatError(f"Weights do not fit the described architecture: {exc}") from exc
    return model.eval()


def extract_state_dict(checkpoint: Any) -> StateDict:
    """Accept ``{"state_dict": ...}`` training checkpoints or a bare state dict."""

    if isinstance(checkpoint, dict) and "state_dict" in checkpoint:
        return checkpoint["state_dict"]
    if isinstance(checkpoint, dict):
        return checkpoint
    raise BundleFormatError(
        "Checkpoint did not contain a state_dict. Provide a file saved with torch.save(model.state_dict())."
    )


def load_checkpoint(model: nn.Module, path: str | Path, device: torch.device | str = "cpu") -> Dict:
    checkpoint_path = Path(path)
    if not checkpoint_path.is_file():
        raise BundleFormatError(f"Checkpoint not found: {checkpoint_path}")

    try:
        checkpoint = torch.load(checkpoint_path, map_location=device)
    except Exception as exc:  # pylint: disable=broad-except
        raise BundleFormatError(f"Failed to load checkpoint {checkpoint_path}: {exc}") from exc

    try:
        model.load_state_dict(extract_state_dict(checkpoint))
    except RuntimeError as exc:
        raise BundleFormatError(f"Checkpoint format is invalid: {exc}") from exc
    return checkpoint
