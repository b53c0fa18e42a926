"""Console helpers shared by the command-line tools."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from tqdm.auto import tqdm

if TYPE_CHECKING:  # pragma: no cover
    from .controller import PipelineController, PipelineView
    from .resolver import ResolutionDiagnostic


async def load_model_with_progress(controller: "PipelineController", show: bool = True) -> Optional["ResolutionDiagnostic"]:
    """Run :meth:`PipelineController.load_model` behind a tqdm progress bar."""

    bar = tqdm(total=1.0, desc="loading model", bar_format="{desc}: {bar} {n:.0%}", leave=False, disable=not show)
    previous = controller.resolver.on_progress

    def on_progress(fraction: float) -> None:
        if previous is not None:
            previous(fraction)
        bar.n = fraction
        bar.refresh()

    controller.resolver.on_progress = on_progress
    try:
        return await controller.load_model()
    finally:
        controller.resolver.on_progress = previous
        bar.close()


def format_status(view: "PipelineView") -> str:
    lines = [f"Model: {view.model_status}"]
    if view.model_summary:
        lines.append(f"  {view.model_summary}")
    if view.diagnostic:
        lines.append(view.diagnostic)
        lines.append("Predictions below are demo data, not model output.")
    return "\n".join(lines)


def format_ranking(view: "PipelineView") -> str:
    if not view.ranking:
        return "No result."
    name, value = view.ranking[0]
    tag = " [demo]" if view.result_source == "demo" else ""
    rows = [f"Dominant: {name} {value}%{tag}"]
    rows.extend(f"  {label:<9} {pct:3d}%" for label, pct in view.ranking)
    return "\n".join(rows)
