from __future__ import annotations

import logging
from pathlib import Path

import pytest

from pagescan.config import LoggingSettings, Settings, load_settings
from pagescan.logging_config import configure_logging
from pagescan.models import QualityTier


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for key in ("PAGESCAN_CONFIG", "PAGESCAN_SCORING__DARK_THRESHOLD", "PAGESCAN_ENHANCEMENT__QUALITY_TIER"):
        monkeypatch.delenv(key, raising=False)


def test_missing_default_config_falls_back_to_defaults(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    settings = load_settings()

    assert settings == Settings()
    assert settings.sampling.density == 0.5
    assert settings.enhancement.quality_tier is QualityTier.BALANCED


def test_yaml_values_override_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "custom.yaml"
    config_path.write_text(
        "sampling:\n  density: 0.8\nenhancement:\n  quality_tier: print_quality\n",
        encoding="utf-8",
    )

    settings = load_settings(config_path)

    assert settings.sampling.density == 0.8
    assert settings.sampling.base_interval_ms == 1000
    assert settings.enhancement.quality_tier is QualityTier.PRINT_QUALITY


def test_environment_overrides_nested_values(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PAGESCAN_SCORING__DARK_THRESHOLD", "55")
    monkeypatch.setenv("PAGESCAN_ENHANCEMENT__QUALITY_TIER", "EMAIL_FRIENDLY")

    settings = load_settings()

    assert settings.scoring.dark_threshold == 55.0
    assert settings.enhancement.quality_tier is QualityTier.EMAIL_FRIENDLY


def test_density_outside_unit_range_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "bad.yaml"
    config_path.write_text("sampling:\n  density: 1.5\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_settings(config_path)


def test_shipped_default_config_matches_model_defaults() -> None:
    shipped = Path(__file__).resolve().parents[1] / "configs" / "default.yaml"

    assert load_settings(shipped) == Settings()


def test_configure_logging_mirrors_records_to_file(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    log_path = tmp_path / "logs" / "pagescan.log"

    try:
        configure_logging(LoggingSettings(level="debug", file=log_path))
        logging.getLogger("pagescan.test").debug("sampling started")
        for handler in root.handlers:
            handler.flush()

        assert root.level == logging.DEBUG
        assert "| DEBUG | pagescan.test | sampling started" in log_path.read_text(encoding="utf-8")
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


def test_unknown_environment_override_is_ignored(tmp_path: Path, monkeypatch, caplog) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PAGESCAN_SCORING__NOT_A_SETTING", "3")

    with caplog.at_level(logging.WARNING, logger="pagescan.config"):
        settings = load_settings()

    assert settings.scoring == Settings().scoring
    assert "PAGESCAN_SCORING__NOT_A_SETTING" in caplog.text


def test_malformed_environment_override_names_the_variable(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PAGESCAN_SAMPLING__BASE_INTERVAL_MS", "fast")

    with pytest.raises(ValueError, match="PAGESCAN_SAMPLING__BASE_INTERVAL_MS"):
        load_settings()
