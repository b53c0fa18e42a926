"""The compact 48x48 emotion CNN and helpers describing a loaded network.

Module layout (and therefore state-dict keys) matches the checkpoints written
by the FER-2013 training runs, so ``best.pt`` files load without remapping.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

import torch
from torch import nn

# (out_channels, dropout) for each pair of conv blocks before a pooling step.
_STAGES: Sequence[tuple[int, float]] = ((32, 0.05), (64, 0.1), (128, 0.15))
_HEAD_CHANNELS = 256
_CLASSIFIER_DIM = 128


class ConvBlock(nn.Module):
    def __init__(self, in_ch: int, out_ch: int, k: int = 3, p: float = 0.0):
        super().__init__()
        self.block = nn.Sequential(
            nn.Conv2d(in_ch, out_ch, kernel_size=k, padding=k // 2, bias=False),
            nn.BatchNorm2d(out_ch),
            nn.ReLU(inplace=True),
            nn.Dropout(p=p),
        )

    def forward(self, x):  # pragma: no cover - simple wrapper
        return self.block(x)


@dataclass(frozen=True)
class ArchitectureSpec:
    name: str = "EmotionCNN"
    in_chans: int = 1
    num_classes: int = 7
    width_mult: float = 1.0

    def scaled(self, channels: int) -> int:
        return max(1, int(round(channels * self.width_mult)))


class EmotionCNN(nn.Module):
    """Three double-conv stages, a 256-channel head conv and a small MLP."""

    def __init__(self, in_chans: int = 1, num_classes: int = 7, width_mult: float = 1.0):
        super().__init__()
        self.spec = ArchitectureSpec(in_chans=in_chans, num_classes=num_classes, width_mult=width_mult)

        layers: List[nn.Module] = []
        prev = in_chans
        for channels, dropout in _STAGES:
            width = self.spec.scaled(channels)
            layers += [ConvBlock(prev, width, k=3, p=dropout), ConvBlock(width, width, k=3, p=dropout), nn.MaxPool2d(2)]
            prev = width
        head = self.spec.scaled(_HEAD_CHANNELS)
        layers += [
            nn.Conv2d(prev, head, kernel_size=3, padding=1),
            nn.BatchNorm2d(head),
            nn.ReLU(inplace=True),
            nn.AdaptiveAvgPool2d((1, 1)),
        ]
        self.features = nn.Sequential(*layers)

        hidden = self.spec.scaled(_CLASSIFIER_DIM)
        self.classifier = nn.Sequential(
            nn.Flatten(),
            nn.Dropout(p=0.3),
            nn.Linear(head, hidden),
            nn.ReLU(inplace=True),
            nn.Dropout(p=0.3),
            nn.Linear(hidden, num_classes),
        )

    def forward(self, x):  # pragma: no cover
        return self.classifier(self.features(x))


def build_model(spec: ArchitectureSpec) -> nn.Module:
    if spec.name != "EmotionCNN":
        raise ValueError(f"Unsupported architecture: {spec.name}")
    return EmotionCNN(in_chans=spec.in_chans, num_classes=spec.num_classes, width_mult=spec.width_mult)


def build_placeholder_model(spec: Optional[ArchitectureSpec] = None, seed: int = 0) -> nn.Module:
    """Randomly initialised network with the deployed structure, used when no bundle loads."""

    spec = spec or ArchitectureSpec()
    with torch.random.fork_rng(devices=[]):
        torch.manual_seed(seed)
        model = build_model(spec)
    return model.eval()


def count_parameters(model: nn.Module) -> int:
    return sum(p.numel() for p in model.parameters())


def count_layers(model: nn.Module) -> int:
    """Number of modules that own parameters directly (conv, norm, linear)."""

    return sum(1 for module in model.modules() if any(True for _ in module.parameters(recurse=False)))
