from __future__ import annotations

import json
import logging
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, TypeVar

import cv2
import typer

from pagescan.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from pagescan.enhance.pipeline import enhance_page, enhance_pages
from pagescan.ingest.video_source import OpenCvVideoSource, VideoSource, probe_video
from pagescan.logging_config import configure_logging
from pagescan.models import (
    CandidatePage,
    CropRect,
    PageEdit,
    PassCancelled,
    PerspectiveQuad,
    Point,
    SamplingOutcome,
    SamplingResult,
    parse_page_filter,
    parse_quality_tier,
)
from pagescan.pipeline_candidate_builder import capture_candidate, frame_sample_from_candidate, start_background_pass
from pagescan.propose.exporter import export_final_outputs, load_candidate_pages, write_page_images
from pagescan.scoring.frame_scorer import describe_exhaustion

app = typer.Typer(help="Extract document pages from a video and enhance them for PDF assembly.")
config_app = typer.Typer(help="Configuration commands.")
ingest_app = typer.Typer(help="Ingest commands.")

app.add_typer(config_app, name="config")
app.add_typer(ingest_app, name="ingest")

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_EXIT_CODE = 130


def _run_with_progress(step_index: int, total_steps: int, label: str, work: Callable[[], T]) -> T:
    typer.echo(f"[{step_index}/{total_steps}] {label}...", err=True)
    started_at = perf_counter()
    try:
        result = work()
    except Exception:
        elapsed = perf_counter() - started_at
        typer.echo(f"[{step_index}/{total_steps}] {label} failed after {elapsed:.1f}s", err=True)
        raise
    elapsed = perf_counter() - started_at
    typer.echo(f"[{step_index}/{total_steps}] {label} done in {elapsed:.1f}s", err=True)
    return result


def _bootstrap(config_path: Path) -> Settings:
    settings = load_settings(config_path)
    configure_logging(settings.logging)
    logger.debug("Loaded runtime settings from %s", config_path)
    return settings


def _config_option() -> Any:
    return typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        "-c",
        envvar="PAGESCAN_CONFIG",
        help="Path to YAML configuration file.",
    )


def _open_source(video_path: str) -> OpenCvVideoSource:
    return OpenCvVideoSource(video_path)


class _ProgressPrinter:
    """Echo sampling progress on every 10% step."""

    def __init__(self, label: str) -> None:
        self.label = label
        self._last_decile = -1

    def __call__(self, fraction: float) -> None:
        decile = int(fraction * 10)
        if decile > self._last_decile:
            self._last_decile = decile
            typer.echo(f"    {self.label}: {decile * 10}%", err=True)


def _sample_video(
    source: VideoSource,
    settings: Settings,
    *,
    start_ms: int,
    end_ms: int | None,
    density: float | None,
) -> SamplingOutcome:
    resolved_end = end_ms if end_ms is not None else source.duration_ms()
    if resolved_end <= 0:
        raise ValueError("Video duration is unknown; pass --end-ms explicitly.")

    handle = start_background_pass(
        source,
        start_ms,
        resolved_end,
        density=density,
        settings=settings,
        on_progress=_ProgressPrinter("sampling"),
    )
    try:
        return handle.result()
    except KeyboardInterrupt:
        handle.cancel()
        return handle.result()


def _exit_if_cancelled(outcome: SamplingOutcome) -> SamplingResult:
    if isinstance(outcome, PassCancelled):
        typer.echo(
            f"Sampling cancelled after {outcome.processed_count} of {outcome.scheduled_count} samples.",
            err=True,
        )
        raise typer.Exit(code=CANCELLED_EXIT_CODE)
    return outcome


def _parse_crop(raw: str | None) -> CropRect:
    if not raw:
        return CropRect()
    parts = [part.strip() for part in raw.split(",")]
    if len(parts) != 4:
        raise ValueError(f"Crop must be 'left,top,right,bottom', got '{raw}'.")
    left, top, right, bottom = (float(part) for part in parts)
    return CropRect(left=left, top=top, right=right, bottom=bottom)


def _parse_quad(raw: str | None) -> PerspectiveQuad | None:
    if not raw:
        return None
    points: list[Point] = []
    for pair in raw.split(";"):
        coords = [part.strip() for part in pair.split(",")]
        if len(coords) != 2:
            raise ValueError(f"Quad points must be 'x,y;x,y;x,y;x,y', got '{raw}'.")
        points.append(Point(x=float(coords[0]), y=float(coords[1])))
    return PerspectiveQuad(points=tuple(points))  # type: ignore[arg-type]


def _candidate_payload(candidate: CandidatePage) -> dict[str, Any]:
    return {
        "id": candidate.id,
        "timestamp_ms": candidate.timestamp_ms,
        "quality_score": round(candidate.quality_score, 4),
        "is_selected": candidate.is_selected,
        "rejection_reason": candidate.rejection_reason.value if candidate.rejection_reason else None,
    }


@config_app.command("show")
def show_config(config_path: Path = _config_option()) -> None:
    """Print resolved runtime configuration."""

    settings = _bootstrap(config_path)
    typer.echo(json.dumps(settings.model_dump(mode="json"), indent=2))


@ingest_app.command("probe")
def probe(
    video_path: str,
    config_path: Path = _config_option(),
) -> None:
    """Print duration, frame rate and frame size of a video."""

    _bootstrap(config_path)
    try:
        result = probe_video(video_path)
    except (RuntimeError, ValueError, FileNotFoundError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    logger.info("Probe completed for %s", video_path)
    typer.echo(json.dumps(result, indent=2))


@app.command("sample")
def sample(
    video_path: str,
    config_path: Path = _config_option(),
    density: float | None = typer.Option(None, help="Sampling density in [0, 1]; defaults to the configured value."),
    start_ms: int = typer.Option(0, help="Start of the (trimmed) range in milliseconds."),
    end_ms: int | None = typer.Option(None, help="End of the range in milliseconds; defaults to the video duration."),
    output_dir: Path | None = typer.Option(None, "--output-dir", "-o", help="Directory for candidate outputs."),
    basename: str = typer.Option("candidates", help="Base filename for exported artifacts."),
    thumbnails: bool = typer.Option(True, help="Write candidate thumbnails as PNG files."),
) -> None:
    """Sample a video and export scored candidate pages."""

    settings = _bootstrap(config_path)
    resolved_output_dir = output_dir or settings.pipeline.output_dir

    try:
        with _open_source(video_path) as source:
            outcome = _sample_video(source, settings, start_ms=start_ms, end_ms=end_ms, density=density)
    except (RuntimeError, ValueError, FileNotFoundError) as exc:
        logger.error("Sampling failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    result = _exit_if_cancelled(outcome)
    try:
        exported = export_final_outputs(
            result,
            resolved_output_dir,
            basename=basename,
            video_path=video_path,
            include_thumbnails=thumbnails,
        )
    except (RuntimeError, ValueError) as exc:
        logger.error("Export failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    if result.is_exhausted:
        typer.echo(describe_exhaustion(result.rejection_histogram), err=True)

    typer.echo(
        json.dumps(
            {
                "status": "empty" if result.is_exhausted else "ok",
                "candidate_count": len(result.candidates),
                "selected_count": len(result.selected),
                "rejection_histogram": {reason.value: count for reason, count in result.rejection_histogram.items()},
                **{key: str(path) for key, path in exported.items()},
            },
            indent=2,
        )
    )


@app.command("capture")
def capture(
    video_path: str,
    timestamp_ms: int = typer.Argument(..., help="Position of the frame to capture, in milliseconds."),
    config_path: Path = _config_option(),
) -> None:
    """Score the single frame at a position, as a manual page pick would."""

    settings = _bootstrap(config_path)
    try:
        with _open_source(video_path) as source:
            candidate = capture_candidate(source, timestamp_ms, settings=settings)
    except (RuntimeError, ValueError, FileNotFoundError) as exc:
        typer.echo(f"Error: Couldn't capture this frame. {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(json.dumps(_candidate_payload(candidate), indent=2))


@app.command("enhance")
def enhance(
    video_path: str,
    timestamp_ms: int = typer.Option(..., help="Frame position in milliseconds."),
    output_path: Path = typer.Option(..., "--output", "-o", help="Output image path (PNG or JPEG)."),
    page_filter: str = typer.Option("document", "--filter", help="Page filter: document, original, black_white."),
    rotation: int = typer.Option(0, help="Clockwise rotation: 0, 90, 180 or 270."),
    crop: str | None = typer.Option(None, help="Normalized crop 'left,top,right,bottom'."),
    quad: str | None = typer.Option(None, help="Normalized perspective quad 'x,y;x,y;x,y;x,y'."),
    tier: str | None = typer.Option(None, help="Quality tier: email_friendly, balanced, print_quality."),
    config_path: Path = _config_option(),
) -> None:
    """Render one frame through the enhancement pipeline."""

    settings = _bootstrap(config_path)
    try:
        edit = PageEdit(
            page_id=f"frame_{timestamp_ms:08d}",
            rotation_degrees=rotation,
            crop_rect=_parse_crop(crop),
            perspective_quad=_parse_quad(quad),
            filter=parse_page_filter(page_filter),
        )
        quality_tier = parse_quality_tier(tier) if tier else settings.enhancement.quality_tier
        with _open_source(video_path) as source:
            frame = source.frame_at(timestamp_ms)
        page = enhance_page(
            frame,
            edit,
            quality_tier,
            baseline_long_edge_px=settings.enhancement.baseline_long_edge_px,
        )
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if not cv2.imwrite(str(output_path), page.pixels):
            raise RuntimeError(f"Failed to write image: {output_path}")
    except (RuntimeError, ValueError, FileNotFoundError) as exc:
        logger.error("Enhancement failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "output_path": str(output_path),
                "width": page.width,
                "height": page.height,
                "byte_size": page.byte_size,
                "quality_tier": page.quality_tier.value,
            },
            indent=2,
        )
    )


@app.command("run")
def run_pipeline(
    video_path: str,
    config_path: Path = _config_option(),
    density: float | None = typer.Option(None, help="Sampling density in [0, 1]; defaults to the configured value."),
    start_ms: int = typer.Option(0, help="Start of the (trimmed) range in milliseconds."),
    end_ms: int | None = typer.Option(None, help="End of the range in milliseconds; defaults to the video duration."),
    candidates_path: Path | None = typer.Option(
        None,
        help="Reviewed candidate JSON; when set, sampling is skipped and its selected pages are used.",
    ),
    page_filter: str = typer.Option("document", "--filter", help="Page filter for every page."),
    tier: str | None = typer.Option(None, help="Quality tier: email_friendly, balanced, print_quality."),
    output_dir: Path | None = typer.Option(None, "--output-dir", "-o", help="Directory for pages and manifests."),
) -> None:
    """Sample a video, enhance the selected pages and write them in page order."""

    settings = _bootstrap(config_path)
    resolved_output_dir = Path(output_dir or settings.pipeline.output_dir)
    basename = Path(video_path).stem
    total_steps = 3

    try:
        resolved_filter = parse_page_filter(page_filter)
        quality_tier = parse_quality_tier(tier) if tier else settings.enhancement.quality_tier
        source = _open_source(video_path)
    except (RuntimeError, ValueError, FileNotFoundError) as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    exported: dict[str, Path] = {}
    histogram: dict[str, int] = {}
    with source:
        if candidates_path is None:
            try:
                outcome = _run_with_progress(
                    1,
                    total_steps,
                    "Sample frames",
                    lambda: _sample_video(source, settings, start_ms=start_ms, end_ms=end_ms, density=density),
                )
            except (RuntimeError, ValueError) as exc:
                logger.error("Sampling failed: %s", exc)
                typer.echo(f"Error: {exc}", err=True)
                raise typer.Exit(code=1) from exc
            result = _exit_if_cancelled(outcome)

        try:
            if candidates_path is not None:
                selected = _run_with_progress(
                    1,
                    total_steps,
                    "Load reviewed candidates",
                    lambda: [candidate for candidate in load_candidate_pages(candidates_path) if candidate.is_selected],
                )
                empty_message = "No pages are selected in the candidate file."
            else:
                exported = export_final_outputs(
                    result,
                    resolved_output_dir,
                    basename=f"{basename}_candidates",
                    video_path=video_path,
                )
                selected = result.selected
                histogram = {reason.value: count for reason, count in result.rejection_histogram.items()}
                empty_message = describe_exhaustion(result.rejection_histogram)

            if not selected:
                typer.echo(empty_message, err=True)
                typer.echo(json.dumps({"status": "empty", "page_count": 0, "rejection_histogram": histogram}, indent=2))
                return

            jobs = [
                (
                    frame_sample_from_candidate(source, candidate),
                    PageEdit(page_id=candidate.id, filter=resolved_filter),
                )
                for candidate in selected
            ]
        except (RuntimeError, ValueError, FileNotFoundError) as exc:
            logger.error("Pipeline failed: %s", exc)
            typer.echo(f"Error: {exc}", err=True)
            raise typer.Exit(code=1) from exc

    try:
        pages = _run_with_progress(
            2,
            total_steps,
            "Enhance pages",
            lambda: enhance_pages(
                jobs,
                quality_tier,
                baseline_long_edge_px=settings.enhancement.baseline_long_edge_px,
                max_workers=settings.enhancement.max_workers,
            ),
        )
        page_paths = _run_with_progress(
            3,
            total_steps,
            "Write page images",
            lambda: write_page_images(pages, resolved_output_dir / f"{basename}_pages"),
        )
    except (RuntimeError, ValueError) as exc:
        logger.error("Pipeline failed: %s", exc)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(
        json.dumps(
            {
                "status": "ok",
                "video_path": video_path,
                "page_count": len(pages),
                "quality_tier": quality_tier.value,
                "rejection_histogram": histogram,
                "pages": [
                    {"id": page.edit.page_id, "path": str(path), "byte_size": page.byte_size}
                    for page, path in zip(pages, page_paths)
                ],
                "outputs": {key: str(path) for key, path in exported.items()},
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    app()
