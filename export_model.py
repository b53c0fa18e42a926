"""Export an EmotionCNN as a sharded deployment bundle.

The bundle is what the runtime resolver loads: ``model.json`` plus a fixed
number of ``group1-shardNofM.bin`` weight files. The source is either a
training checkpoint (``runs/exp1/best.pt``) or, with ``--placeholder``, a
randomly initialised network for smoke-testing a deployment.
"""

from __future__ import annotations

import argparse
from pathlib import Path

from emoscope.bundle import export_bundle, load_checkpoint
from emoscope.errors import BundleFormatError, ModelResolutionError
from emoscope.logger import configure_logging
from emoscope.models import ArchitectureSpec, EmotionCNN, build_placeholder_model, count_parameters
from emoscope.resolver import ModelResolver


def _size_mb(path: Path) -> float:
    return path.stat().st_size / (1024 * 1024)


def build_model(checkpoint: Path | None, in_chans: int, width_mult: float, seed: int) -> EmotionCNN:
    if checkpoint is None:
        return build_placeholder_model(ArchitectureSpec(in_chans=in_chans, width_mult=width_mult), seed=seed)
    model = EmotionCNN(in_chans=in_chans, width_mult=width_mult)
    try:
        load_checkpoint(model, checkpoint, "cpu")
    except BundleFormatError as exc:
        raise SystemExit(str(exc)) from exc
    return model.eval()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Export EmotionCNN weights as a sharded model bundle.")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--checkpoint", type=Path, help="Trained checkpoint (e.g., runs/exp1/best.pt)")
    source.add_argument("--placeholder", action="store_true", help="Export a randomly initialised model instead")
    parser.add_argument("--output-dir", type=Path, default=Path("model_bundle"), help="Destination directory")
    parser.add_argument("--shards", type=int, default=4, help="Number of weight shard files")
    parser.add_argument("--in-chans", type=int, default=1, choices=[1, 3], help="Model input channels")
    parser.add_argument("--width-mult", type=float, default=1.0, help="Width multiplier used during training")
    parser.add_argument("--seed", type=int, default=0, help="Seed for --placeholder weights")
    parser.add_argument(
        "--output-kind", choices=["logits", "probabilities"], default="logits", help="What the network emits"
    )
    parser.add_argument("--dry-run", action="store_true", help="Resolve the written bundle to validate it")
    parser.add_argument("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or INFO)")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging(args.log_level)
    if args.shards < 1:
        raise SystemExit("--shards must be at least 1")

    model = build_model(args.checkpoint, args.in_chans, args.width_mult, args.seed)
    descriptor_path = export_bundle(model, args.output_dir, shard_count=args.shards, output=args.output_kind)

    print(f"Bundle written to {args.output_dir} ({count_parameters(model):,} parameters)")
    for path in sorted(args.output_dir.iterdir()):
        if path == descriptor_path or path.name.startswith("group1-shard"):
            print(f"  {path.name}: {_size_mb(path):.2f} MB")

    if args.dry_run:
        resolver = ModelResolver([str(args.output_dir)], shard_count=args.shards, descriptor_name=descriptor_path.name)
        try:
            handle = resolver.resolve()
        except ModelResolutionError as exc:
            raise SystemExit(f"Bundle validation failed:\n{exc.diagnostic.message()}") from exc
        info = handle.info
        print(
            f"Dry run successful: {info.layer_count} layers, output shape {list(info.output_shape)} "
            f"from {info.origin}"
        )
        handle.dispose()


if __name__ == "__main__":
    main()
