from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from pagescan.models import QualityTier

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("configs/default.yaml")
ENV_PREFIX = "PAGESCAN_"


class SamplingSettings(BaseModel):
    density: float = Field(default=0.5, ge=0.0, le=1.0)
    base_interval_ms: int = Field(default=1000, ge=1)
    min_interval_ms: int = Field(default=100, ge=1)
    thumbnail_width: int = Field(default=120, ge=1)
    thumbnail_height: int = Field(default=160, ge=1)


class MetricsSettings(BaseModel):
    analysis_width: int = Field(default=256, ge=8)
    motion_grid_size: int = Field(default=32, ge=2)


class ScoringSettings(BaseModel):
    """Frame verdict thresholds, on the 0-255 luminance scale unless noted.

    Sharpness values are variance-of-Laplacian on the fixed-width analysis
    image. The defaults are calibration starting points.
    """

    glare_threshold: float = 150.0
    bright_threshold: float = 225.0
    dark_threshold: float = 40.0
    sharpness_threshold: float = 50.0
    sharpness_ceiling: float = 500.0
    duplicate_threshold: float = 6.0
    motion_blur_threshold: float = 20.0


class EnhancementSettings(BaseModel):
    quality_tier: QualityTier = QualityTier.BALANCED
    # A4 long edge at 150 DPI
    baseline_long_edge_px: int = Field(default=1754, ge=1)
    max_workers: int = Field(default=4, ge=1)


class PipelineSettings(BaseModel):
    output_dir: Path = Path("data/outputs")


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Path | None = None


class Settings(BaseModel):
    sampling: SamplingSettings = Field(default_factory=SamplingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    enhancement: EnhancementSettings = Field(default_factory=EnhancementSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load typed settings from YAML with environment-variable overrides."""

    resolved_path = Path(
        config_path
        or os.getenv(f"{ENV_PREFIX}CONFIG")
        or DEFAULT_CONFIG_PATH
    )
    if resolved_path == DEFAULT_CONFIG_PATH and not resolved_path.exists():
        raw_config: dict[str, Any] = {}
    else:
        raw_config = yaml.safe_load(resolved_path.read_text(encoding="utf-8")) or {}
    data = Settings.model_validate(raw_config).model_dump(mode="python")

    for key, raw_value in sorted(os.environ.items()):
        if not key.startswith(ENV_PREFIX) or key == f"{ENV_PREFIX}CONFIG":
            continue

        path = [part.lower() for part in key[len(ENV_PREFIX) :].split("__")]
        if not _apply_override(data, path, raw_value, source=key):
            logger.warning("Ignoring %s: no setting at %s", key, ".".join(path))

    return Settings.model_validate(data)


def _apply_override(data: dict[str, Any], path: list[str], raw_value: str, *, source: str) -> bool:
    current: Any = data
    for segment in path[:-1]:
        if not isinstance(current, dict) or segment not in current:
            return False
        current = current[segment]

    final_key = path[-1]
    if not isinstance(current, dict) or final_key not in current:
        return False

    try:
        current[final_key] = _coerce_value(raw_value, current[final_key])
    except ValueError as exc:
        raise ValueError(f"Invalid value for {source}: {raw_value!r} ({exc})") from exc
    return True


def _coerce_value(raw_value: str, existing_value: Any) -> Any:
    if existing_value is None:
        return None if raw_value.strip().lower() in {"", "none", "null"} else raw_value
    if isinstance(existing_value, bool):
        return raw_value.lower() in {"1", "true", "yes", "on"}
    if isinstance(existing_value, Enum):
        return raw_value.strip().lower()
    if isinstance(existing_value, int):
        return int(raw_value)
    if isinstance(existing_value, float):
        return float(raw_value)
    if isinstance(existing_value, Path):
        return Path(raw_value)
    return raw_value
