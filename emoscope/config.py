"""Runtime settings for model resolution, inference and capture.

Settings start from :data:`DEFAULTS`, are optionally merged with a YAML or
JSON file, then with environment variables, then with explicit overrides
(usually CLI flags).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

DEFAULTS: Dict[str, Any] = {
    "model_dir": "model_bundle",
    "model_base": None,
    "model_origin": None,
    "descriptor_name": "model.json",
    "shard_count": 4,
    "download_timeout": 10.0,
    "device": "cpu",
    "capture_interval": 2.0,
    "camera_index": 0,
    "frame_width": 640,
    "frame_height": 480,
    "mirror": True,
    "demo_seed": None,
    "log_level": "INFO",
}

ENV_OVERRIDES: Dict[str, str] = {
    "EMOSCOPE_MODEL_BASE": "model_base",
    "EMOSCOPE_MODEL_ORIGIN": "model_origin",
    "EMOSCOPE_DEVICE": "device",
    "LOG_LEVEL": "log_level",
}

# Absolute fallback location next to the installed package.
PACKAGE_MODEL_DIR = Path(__file__).resolve().parent.parent / "model_bundle"


@dataclass(frozen=True)
class Settings:
    model_dir: str = DEFAULTS["model_dir"]
    model_base: Optional[str] = DEFAULTS["model_base"]
    model_origin: Optional[str] = DEFAULTS["model_origin"]
    descriptor_name: str = DEFAULTS["descriptor_name"]
    shard_count: int = DEFAULTS["shard_count"]
    download_timeout: float = DEFAULTS["download_timeout"]
    device: str = DEFAULTS["device"]
    capture_interval: float = DEFAULTS["capture_interval"]
    camera_index: int = DEFAULTS["camera_index"]
    frame_width: int = DEFAULTS["frame_width"]
    frame_height: int = DEFAULTS["frame_height"]
    mirror: bool = DEFAULTS["mirror"]
    demo_seed: Optional[int] = DEFAULTS["demo_seed"]
    log_level: str = DEFAULTS["log_level"]

    def __post_init__(self) -> None:
        if self.shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        if self.capture_interval <= 0:
            raise ValueError("capture_interval must be positive")

    def candidate_locations(self) -> list[str]:
        """Ordered, de-duplicated model locations to try."""

        candidates = [
            str(Path(self.model_dir)),
            self.model_base,
            self.model_origin,
            str(PACKAGE_MODEL_DIR),
        ]
        ordered: list[str] = []
        for candidate in candidates:
            if candidate and candidate not in ordered:
                ordered.append(candidate)
        return ordered


def load_config(config_path: str | Path) -> Dict[str, Any]:
    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        if config_path.suffix.lower() in {".yml", ".yaml"}:
            data = yaml.safe_load(f)
        else:
            data = json.load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return data


def _coerce(key: str, value: Any) -> Any:
    default = DEFAULTS[key]
    if value is None or default is None:
        if key == "demo_seed" and value is not None:
            return int(value)
        return value
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    return type(default)(value)


def load_settings(
    config_path: str | Path | None = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build :class:`Settings` from defaults, file, environment and overrides."""

    merged: Dict[str, Any] = dict(DEFAULTS)
    if config_path is not None:
        file_cfg = load_config(config_path)
        unknown = sorted(set(file_cfg) - set(DEFAULTS))
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        merged.update(file_cfg)

    env = os.environ if environ is None else environ
    for env_name, key in ENV_OVERRIDES.items():
        value = env.get(env_name)
        if value:
            merged[key] = value

    for key, value in (overrides or {}).items():
        if key not in DEFAULTS:
            raise ValueError(f"Unknown setting: {key}")
        if value is not None:
            merged[key] = value

    valid = {f.name for f in fields(Settings)}
    return Settings(**{key: _coerce(key, merged[key]) for key in valid})
