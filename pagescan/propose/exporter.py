from __future__ import annotations

import csv
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Sequence

import cv2

from pagescan.models import CandidatePage, EnhancedPage, QualityMetrics, RejectionReason, SamplingResult
from pagescan.scoring.frame_scorer import describe_exhaustion


def export_candidates(candidates: Sequence[CandidatePage], output_path: str | Path) -> Path:
    """Export candidate pages to JSON (default) or CSV, based on file extension."""

    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() == ".csv":
        _write_csv(candidates, path)
    else:
        _write_json(candidates, path)

    return path


def export_final_outputs(
    result: SamplingResult,
    output_dir: str | Path,
    *,
    basename: str = "candidates",
    video_path: str | None = None,
    include_thumbnails: bool = False,
) -> dict[str, Path]:
    """Export JSON/CSV candidate contracts and a review manifest for triage."""

    resolved_output_dir = Path(output_dir)
    resolved_output_dir.mkdir(parents=True, exist_ok=True)

    json_path = resolved_output_dir / f"{basename}.json"
    csv_path = resolved_output_dir / f"{basename}.csv"
    review_path = resolved_output_dir / f"{basename}_review.json"

    export_candidates(result.candidates, json_path)
    export_candidates(result.candidates, csv_path)

    thumbnail_paths: dict[str, Path] = {}
    if include_thumbnails:
        thumbnail_paths = write_thumbnails(result.candidates, resolved_output_dir / f"{basename}_thumbnails")

    review_manifest = generate_review_manifest(result, video_path=video_path, thumbnail_paths=thumbnail_paths)
    review_path.write_text(json.dumps(review_manifest, indent=2, ensure_ascii=False), encoding="utf-8")

    exported = {
        "json": json_path,
        "csv": csv_path,
        "review": review_path,
    }
    if include_thumbnails:
        exported["thumbnails"] = resolved_output_dir / f"{basename}_thumbnails"
    return exported


def generate_review_manifest(
    result: SamplingResult,
    *,
    video_path: str | None = None,
    thumbnail_paths: dict[str, Path] | None = None,
) -> dict[str, Any]:
    """Summarize a pass: selected pages first-class, rejections with reasons, and a
    human message when nothing usable was found."""

    thumbnail_paths = thumbnail_paths or {}
    entries: list[dict[str, Any]] = []
    for idx, candidate in enumerate(result.candidates, start=1):
        entry = {
            "index": idx,
            "id": candidate.id,
            "timestamp_ms": candidate.timestamp_ms,
            "quality_score": round(candidate.quality_score, 4),
            "is_selected": candidate.is_selected,
            "confidence": _confidence_label(candidate.quality_score),
            "reason_summary": _reason_summary(candidate),
        }
        if candidate.id in thumbnail_paths:
            entry["thumbnail_path"] = str(thumbnail_paths[candidate.id])
        entries.append(entry)

    return {
        "video_path": video_path,
        "interval_ms": round(result.interval_ms, 3),
        "scheduled_count": result.scheduled_count,
        "candidate_count": len(result.candidates),
        "selected_count": len(result.selected),
        "skipped_timestamps": list(result.skipped_timestamps),
        "rejection_histogram": {reason.value: count for reason, count in result.rejection_histogram.items()},
        "message": describe_exhaustion(result.rejection_histogram) if result.is_exhausted else None,
        "candidates": entries,
    }


def write_thumbnails(candidates: Sequence[CandidatePage], output_dir: str | Path) -> dict[str, Path]:
    resolved = Path(output_dir)
    resolved.mkdir(parents=True, exist_ok=True)

    written: dict[str, Path] = {}
    for candidate in candidates:
        if candidate.thumbnail is None:
            continue
        path = resolved / f"{candidate.id}.png"
        _write_image(path, candidate.thumbnail)
        written[candidate.id] = path
    return written


def write_page_images(pages: Sequence[EnhancedPage], output_dir: str | Path) -> list[Path]:
    """Write enhanced pages as ``page_0001.png``... in PDF order."""

    resolved = Path(output_dir)
    resolved.mkdir(parents=True, exist_ok=True)

    paths: list[Path] = []
    for idx, page in enumerate(pages, start=1):
        path = resolved / f"page_{idx:04d}.png"
        _write_image(path, page.pixels)
        paths.append(path)
    return paths


def load_candidate_pages(path: str | Path) -> list[CandidatePage]:
    """Load candidates from the exporter JSON contract (thumbnails are not stored)."""

    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError("Candidate contract must be a JSON array.")

    candidates: list[CandidatePage] = []
    for idx, row in enumerate(payload, start=1):
        if not isinstance(row, dict):
            raise ValueError(f"Candidate row {idx} must be an object.")
        reason = row.get("rejection_reason")
        metrics = row.get("metrics")
        candidates.append(
            CandidatePage(
                id=str(row["id"]),
                timestamp_ms=int(row["timestamp_ms"]),
                quality_score=float(row["quality_score"]),
                rejection_reason=RejectionReason(reason) if reason else None,
                is_selected=bool(row["is_selected"]) if "is_selected" in row else None,
                metrics=QualityMetrics(**metrics) if isinstance(metrics, dict) else None,
                duplicate_delta=float(row["duplicate_delta"]) if row.get("duplicate_delta") is not None else None,
            )
        )

    return candidates


def _write_image(path: Path, pixels: Any) -> None:
    if not cv2.imwrite(str(path), pixels):
        raise RuntimeError(f"Failed to write image: {path}")


def _candidate_row(candidate: CandidatePage) -> dict[str, Any]:
    return {
        "id": candidate.id,
        "timestamp_ms": candidate.timestamp_ms,
        "quality_score": candidate.quality_score,
        "is_selected": candidate.is_selected,
        "rejection_reason": candidate.rejection_reason.value if candidate.rejection_reason else None,
        "duplicate_delta": candidate.duplicate_delta,
        "metrics": asdict(candidate.metrics) if candidate.metrics is not None else None,
    }


def _write_json(candidates: Sequence[CandidatePage], path: Path) -> None:
    payload = [_candidate_row(candidate) for candidate in candidates]
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _write_csv(candidates: Sequence[CandidatePage], path: Path) -> None:
    fields = [
        "id",
        "timestamp_ms",
        "quality_score",
        "is_selected",
        "confidence",
        "rejection_reason",
        "reason_summary",
        "sharpness",
        "mean_luminance",
        "luminance_variance",
        "motion_delta",
    ]

    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fields)
        writer.writeheader()
        for candidate in candidates:
            metrics = candidate.metrics
            writer.writerow(
                {
                    "id": candidate.id,
                    "timestamp_ms": candidate.timestamp_ms,
                    "quality_score": f"{candidate.quality_score:.4f}",
                    "is_selected": "yes" if candidate.is_selected else "no",
                    "confidence": _confidence_label(candidate.quality_score),
                    "rejection_reason": candidate.rejection_reason.value if candidate.rejection_reason else "",
                    "reason_summary": _reason_summary(candidate),
                    "sharpness": f"{metrics.sharpness:.2f}" if metrics else "",
                    "mean_luminance": f"{metrics.mean_luminance:.2f}" if metrics else "",
                    "luminance_variance": f"{metrics.luminance_variance:.2f}" if metrics else "",
                    "motion_delta": f"{metrics.motion_delta:.3f}" if metrics and metrics.motion_delta is not None else "",
                }
            )


def _confidence_label(score: float) -> str:
    if score >= 0.8:
        return "high"
    if score >= 0.4:
        return "medium"
    return "low"


def _reason_summary(candidate: CandidatePage) -> str:
    if candidate.rejection_reason is RejectionReason.DUPLICATE and candidate.duplicate_delta is not None:
        return f"duplicate of previous page (delta {candidate.duplicate_delta:.2f})"
    if candidate.rejection_reason is not None:
        return candidate.rejection_reason.value.lower().replace("_", " ")
    return "usable page"
