"""
Pipeline Settings
=================

All knobs are optional.  Values coming from a settings file or the command
line are *sanitised* rather than rejected: numbers are clamped into a safe
range, wrongly-typed values fall back to their defaults.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional

log = logging.getLogger(__name__)

CAPTURE_INTERVAL_RANGE = (0.5, 3.0)          # seconds
BOARD_REFRESH_RANGE = (0.1, 10.0)            # seconds
TILE_SIZE_RANGE = (8, 128)                   # pixels


@dataclass(frozen=True)
class PipelineSettings:
    capture_interval: float = 1.5            # seconds between captured frames
    board_refresh_interval: float = 1.0      # seconds between board re-detections
    low_confidence_threshold: float = 0.58   # below → carry previous label over
    force_flip: bool = False
    model_path: Optional[str] = None
    device: str = "cpu"
    tile_size: int = 32
    test_time_augmentation: bool = False     # average with h-flipped tiles


DEFAULT_SETTINGS = PipelineSettings()


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def sanitize_settings(candidate: Optional[Mapping[str, Any]]) -> PipelineSettings:
    """Coerce an arbitrary mapping into a valid ``PipelineSettings``.

    Unknown keys are ignored; each field falls back to its default when
    missing or of the wrong type.
    """
    value = dict(candidate or {})
    d = DEFAULT_SETTINGS

    capture_interval = (
        round(_clamp(float(value["capture_interval"]), *CAPTURE_INTERVAL_RANGE), 1)
        if _is_number(value.get("capture_interval"))
        else d.capture_interval
    )
    board_refresh_interval = (
        _clamp(float(value["board_refresh_interval"]), *BOARD_REFRESH_RANGE)
        if _is_number(value.get("board_refresh_interval"))
        else d.board_refresh_interval
    )
    low_confidence_threshold = (
        _clamp(float(value["low_confidence_threshold"]), 0.0, 1.0)
        if _is_number(value.get("low_confidence_threshold"))
        else d.low_confidence_threshold
    )
    tile_size = (
        int(_clamp(int(value["tile_size"]), *TILE_SIZE_RANGE))
        if _is_number(value.get("tile_size"))
        else d.tile_size
    )
    force_flip = value.get("force_flip")
    tta = value.get("test_time_augmentation")
    model_path = value.get("model_path")
    device = value.get("device")

    return PipelineSettings(
        capture_interval=capture_interval,
        board_refresh_interval=board_refresh_interval,
        low_confidence_threshold=low_confidence_threshold,
        force_flip=force_flip if isinstance(force_flip, bool) else d.force_flip,
        model_path=model_path if isinstance(model_path, str) and model_path else d.model_path,
        device=device if device in ("cpu", "cuda") else d.device,
        tile_size=tile_size,
        test_time_augmentation=tta if isinstance(tta, bool) else d.test_time_augmentation,
    )


def load_settings(path: str | Path) -> PipelineSettings:
    """Read settings from a JSON file; a missing file yields the defaults."""
    path = Path(path)
    if not path.is_file():
        log.info("No settings file at %s, using defaults", path)
        return DEFAULT_SETTINGS

    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        log.warning("Ignoring malformed settings file %s", path)
        return DEFAULT_SETTINGS
    return sanitize_settings(raw)


def save_settings(path: str | Path, overrides: Mapping[str, Any]) -> PipelineSettings:
    """Merge *overrides* into the stored settings and write them back."""
    current = asdict(load_settings(path))
    current.update(overrides)
    merged = sanitize_settings(current)
    Path(path).write_text(json.dumps(asdict(merged), indent=2), encoding="utf-8")
    return merged


def merge_settings(base: PipelineSettings, **overrides: Any) -> PipelineSettings:
    """Apply non-``None`` keyword overrides (e.g. CLI flags) on top of *base*."""
    known = {f.name for f in fields(PipelineSettings)}
    values = asdict(base)
    values.update({k: v for k, v in overrides.items() if k in known and v is not None})
    return sanitize_settings(values)
