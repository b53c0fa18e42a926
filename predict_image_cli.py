"""Classify the facial emotion in one or more image files.

Each image is validated (JPEG, PNG or WebP), preprocessed to the 48x48
grayscale tensor and run through the resolved model. Results can also be
written to a CSV with one row per image and one column per emotion.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Dict, List

import pandas as pd

from emoscope import EMOTION_ORDER, InputError, PipelineController, load_settings
from emoscope.logger import configure_logging
from emoscope.reporting import format_ranking, format_status, load_model_with_progress


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Predict facial emotion for image files.")
    parser.add_argument("images", nargs="+", help="Image files (JPEG, PNG or WebP).")
    parser.add_argument("--media-type", help="Declared media type; guessed from the file name when omitted.")
    parser.add_argument("--config", help="YAML or JSON settings file.")
    parser.add_argument("--model-dir", help="Local model bundle directory to try first.")
    parser.add_argument("--output", help="Optional CSV file for the predictions.")
    parser.add_argument("--seed", type=int, default=None, help="Seed for demo output when no model loads.")
    parser.add_argument("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or INFO).")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> List[Dict[str, object]]:
    settings = load_settings(args.config, overrides={"model_dir": args.model_dir, "demo_seed": args.seed})
    rows: List[Dict[str, object]] = []
    async with PipelineController(settings) as controller:
        await load_model_with_progress(controller)
        print(format_status(controller.view()))

        for image in args.images:
            path = Path(image)
            try:
                result = await controller.analyze_file(path, media_type=args.media_type)
            except InputError as exc:
                print(f"{path}: rejected ({exc})")
                rows.append({"image": str(path), "error": str(exc)})
                continue

            print(f"\n{path}")
            print(format_ranking(controller.view()))
            row: Dict[str, object] = {
                "image": str(path),
                "dominant": result.dominant[0],
                "provenance": result.provenance.value,
                "origin": result.origin,
                "elapsed_ms": round(result.elapsed_ms, 2),
            }
            row.update({label: result.distribution[label] for label in EMOTION_ORDER})
            rows.append(row)
    return rows


def main() -> None:
    args = parse_args()
    configure_logging(args.log_level)
    missing = [path for path in args.images if not Path(path).is_file()]
    if missing:
        raise SystemExit(f"Image(s) not found: {', '.join(missing)}")

    rows = asyncio.run(run(args))
    if args.output:
        pd.DataFrame(rows).to_csv(args.output, index=False)
        print(f"\nWrote {len(rows)} prediction(s) to {args.output}")


if __name__ == "__main__":
    main()
