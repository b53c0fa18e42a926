"""Command-line entry point for continuous webcam emotion classification."""

from __future__ import annotations

import argparse
import asyncio
import time

from emoscope import PipelineController, ResourceAcquisitionError, load_settings
from emoscope.logger import configure_logging
from emoscope.reporting import format_status, load_model_with_progress


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Classify facial emotion from the webcam every few seconds.")
    parser.add_argument("--config", help="YAML or JSON settings file.")
    parser.add_argument("--model-dir", help="Local model bundle directory to try first.")
    parser.add_argument("--camera", type=int, default=None, help="Camera index for cv2.VideoCapture.")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between samples (default 2.0).")
    parser.add_argument("--duration", type=float, default=None, help="Stop after this many seconds.")
    parser.add_argument("--no-mirror", action="store_true", help="Do not mirror the preview frame.")
    parser.add_argument("--log-level", default=None, help="Logging level (default: $LOG_LEVEL or INFO).")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> None:
    settings = load_settings(
        args.config,
        overrides={
            "model_dir": args.model_dir,
            "camera_index": args.camera,
            "capture_interval": args.interval,
            "mirror": False if args.no_mirror else None,
        },
    )
    async with PipelineController(settings) as controller:
        await load_model_with_progress(controller)
        print(format_status(controller.view()))

        printed = None

        def report(result) -> None:
            nonlocal printed
            if result is None or result is printed:
                return
            printed = result
            tag = " [demo]" if result.is_demo else ""
            stamp = time.strftime("%H:%M:%S")
            print(f"{stamp} {result.dominant[0]} {result.dominant[1]}%{tag} | {result.distribution}")

        try:
            await controller.start_capture()
        except ResourceAcquisitionError as exc:
            raise SystemExit(str(exc)) from exc

        print("Capturing; press Ctrl-C to stop.")
        started = time.monotonic()
        try:
            while args.duration is None or time.monotonic() - started < args.duration:
                await asyncio.sleep(0.2)
                report(controller.state.result)
        finally:
            await controller.stop_capture()


def main() -> None:
    args = parse_args()
    configure_logging(args.log_level)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("Stopped.")


if __name__ == "__main__":
    main()
