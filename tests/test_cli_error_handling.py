from __future__ import annotations

import json
from pathlib import Path

import numpy as np
from typer.testing import CliRunner

import pagescan.cli as cli
from pagescan.config import Settings
from pagescan.ingest.video_source import InMemoryVideoSource
from pagescan.models import PassCancelled


def _settings(tmp_path: Path) -> Settings:
    return Settings.model_validate(
        {
            "enhancement": {"baseline_long_edge_px": 200, "max_workers": 2},
            "pipeline": {"output_dir": str(tmp_path / "outputs")},
        }
    )


def _checker(*, invert: bool = False, block: int = 40) -> np.ndarray:
    rows = (np.arange(240) // block)[:, None]
    cols = (np.arange(320) // block)[None, :]
    mask = (rows + cols) % 2 == 0
    if invert:
        mask = ~mask
    gray = np.where(mask, 40, 220).astype(np.uint8)
    return np.repeat(gray[..., np.newaxis], 3, axis=2)


def _page_source() -> InMemoryVideoSource:
    frames = [(500, _checker()), (1500, _checker(invert=True)), (2500, _checker(block=80))]
    return InMemoryVideoSource(frames, duration_ms=3000)


def _dark_source() -> InMemoryVideoSource:
    return InMemoryVideoSource([(t, np.full((60, 80, 3), 5, dtype=np.uint8)) for t in (500, 1500, 2500)], duration_ms=3000)


def test_probe_prints_clean_error_without_traceback(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(
        cli,
        "probe_video",
        lambda _: (_ for _ in ()).throw(RuntimeError("Unable to open video: /tmp/pages.mp4")),
    )

    result = CliRunner().invoke(cli.app, ["ingest", "probe", "/tmp/pages.mp4"])

    assert result.exit_code == 1
    assert "Error: Unable to open video" in result.output
    assert "Traceback" not in result.output


def test_sample_reports_exhausted_pass(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(cli, "_open_source", lambda _: _dark_source())

    result = CliRunner().invoke(cli.app, ["sample", "pages.mp4", "-o", str(tmp_path), "--no-thumbnails"])

    assert result.exit_code == 0
    assert "Nothing usable found: the video was too dark (3 of 3 frames). Try again." in result.output
    assert (tmp_path / "candidates_review.json").exists()


def test_sample_rejects_invalid_range(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(cli, "_open_source", lambda _: _dark_source())

    result = CliRunner().invoke(cli.app, ["sample", "pages.mp4", "--start-ms", "2000", "--end-ms", "1000"])

    assert result.exit_code == 1
    assert "Error: Invalid sampling range" in result.output
    assert "Traceback" not in result.output


def test_capture_reports_unreadable_frame(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(cli, "_open_source", lambda _: InMemoryVideoSource([(1000, None)], duration_ms=2000))

    result = CliRunner().invoke(cli.app, ["capture", "pages.mp4", "1000"])

    assert result.exit_code == 1
    assert "Couldn't capture this frame" in result.output


def test_enhance_rejects_unknown_filter(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(cli, "_open_source", lambda _: _page_source())

    result = CliRunner().invoke(
        cli.app,
        ["enhance", "pages.mp4", "--timestamp-ms", "500", "--filter", "sepia", "-o", str(tmp_path / "page.png")],
    )

    assert result.exit_code == 1
    assert "Unsupported page filter 'sepia'" in result.output


def test_enhance_writes_rotated_page(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(cli, "_open_source", lambda _: _page_source())
    output = tmp_path / "page.png"

    result = CliRunner().invoke(
        cli.app,
        [
            "enhance",
            "pages.mp4",
            "--timestamp-ms",
            "500",
            "--rotation",
            "90",
            "--crop",
            "0,0,1,0.5",
            "--tier",
            "print_quality",
            "-o",
            str(output),
        ],
    )

    assert result.exit_code == 0, result.output
    assert output.exists()
    assert '"width": 200' in result.output
    assert '"height": 133' in result.output


def test_run_command_shows_progress_and_writes_pages(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(cli, "_open_source", lambda _: _page_source())

    result = CliRunner().invoke(cli.app, ["run", "pages.mp4", "-o", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "[1/3] Sample frames done" in result.output
    assert "[2/3] Enhance pages done" in result.output
    assert "[3/3] Write page images done" in result.output
    pages_dir = tmp_path / "pages_pages"
    assert sorted(path.name for path in pages_dir.iterdir()) == ["page_0001.png", "page_0002.png", "page_0003.png"]
    assert (tmp_path / "pages_candidates.json").exists()


def test_run_command_uses_reviewed_selection(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(cli, "_open_source", lambda _: _page_source())
    reviewed = tmp_path / "reviewed.json"
    reviewed.write_text(
        json.dumps(
            [
                {"id": "cand_00000500", "timestamp_ms": 500, "quality_score": 0.9, "is_selected": False},
                {"id": "cand_00002500", "timestamp_ms": 2500, "quality_score": 0.7, "is_selected": True},
            ]
        ),
        encoding="utf-8",
    )

    result = CliRunner().invoke(
        cli.app,
        ["run", "pages.mp4", "--candidates-path", str(reviewed), "--filter", "black_white", "-o", str(tmp_path)],
    )

    assert result.exit_code == 0, result.output
    assert "[1/3] Load reviewed candidates done" in result.output
    assert '"page_count": 1' in result.output
    assert '"id": "cand_00002500"' in result.output


def test_run_command_exits_when_sampling_is_cancelled(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(cli, "_open_source", lambda _: _page_source())
    monkeypatch.setattr(cli, "_sample_video", lambda *args, **kwargs: PassCancelled(processed_count=1, scheduled_count=3))

    result = CliRunner().invoke(cli.app, ["run", "pages.mp4", "-o", str(tmp_path)])

    assert result.exit_code == cli.CANCELLED_EXIT_CODE
    assert "Sampling cancelled after 1 of 3 samples." in result.output
    assert not (tmp_path / "pages_pages").exists()


def test_run_command_reports_nothing_usable(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(cli, "_bootstrap", lambda _: _settings(tmp_path))
    monkeypatch.setattr(cli, "_open_source", lambda _: _dark_source())

    result = CliRunner().invoke(cli.app, ["run", "pages.mp4", "-o", str(tmp_path)])

    assert result.exit_code == 0
    assert "Nothing usable found" in result.output
    assert '"status": "empty"' in result.output
