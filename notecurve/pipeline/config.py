"""
Pipeline configuration.

One dataclass per stage, grouped under ``PipelineConfig``. Partial JSON
trees merge over the defaults, and dotted-path overrides
(``"stage_b.peak_threshold"``) let scripts tweak a single value.
"""

from __future__ import annotations

import copy
import json
import logging
import math
import numbers
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from .errors import ConfigError
from .models import CurveShape, TrackingStrategy, WindowType

logger = logging.getLogger(__name__)

MIN_FFT_SIZE = 4
MAX_OVERLAP = 0.9


@dataclass
class StageAConfig:
    fft_size: int = 1024
    overlap_factor: float = 0.75
    window_type: str = WindowType.BLACKMAN_HARRIS.value


@dataclass
class StageBConfig:
    peak_threshold: float = 0.01
    min_peak_distance: float = 3.0  # bins
    max_peaks_per_frame: int = 10
    min_frequency: float = 80.0
    max_frequency: float = 2000.0
    interpolate_peaks: bool = True


@dataclass
class StageCConfig:
    strategy: str = TrackingStrategy.ONSET.value
    frequency_tolerance: float = 0.05
    min_track_length: int = 3
    track_decay_time: float = 0.2
    note_onset_threshold: float = 2.0
    note_decay_threshold: float = 0.3
    min_note_duration: float = 0.05
    note_gap_time: float = 0.1
    background: Dict[str, float] = field(
        default_factory=lambda: {"freq_range": 0.2, "window_sec": 0.5}
    )


@dataclass
class StageDConfig:
    shape: str = CurveShape.PLATEAU.value
    spike_duration: float = 0.1
    peak_duration: float = 0.1
    max_spike_height: float = 1.0
    logarithmic_pitch_mapping: bool = True
    combine_overlapping_spikes: bool = True
    merge_frequency_tolerance: Optional[float] = None
    min_sustain_duration: float = 0.05
    guard_time: float = 0.001
    overlap_policy: str = "clamp"


@dataclass
class PipelineConfig:
    stage_a: StageAConfig = field(default_factory=StageAConfig)
    stage_b: StageBConfig = field(default_factory=StageBConfig)
    stage_c: StageCConfig = field(default_factory=StageCConfig)
    stage_d: StageDConfig = field(default_factory=StageDConfig)

    @property
    def hop_size(self) -> int:
        return int(round(self.stage_a.fft_size * (1.0 - self.stage_a.overlap_factor)))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]], base: Optional["PipelineConfig"] = None) -> "PipelineConfig":
        cfg = copy.deepcopy(base) if base is not None else cls()
        for section, values in (data or {}).items():
            stage = getattr(cfg, section, None)
            if stage is None or not hasattr(stage, "__dataclass_fields__"):
                logger.warning("Ignoring unknown config section %r", section)
                continue
            if not isinstance(values, dict):
                raise ConfigError(f"config section {section!r} must be an object")
            known = {f.name for f in fields(stage)}
            unknown = sorted(set(values) - known)
            if unknown:
                logger.warning("Config unknown keys in %s: %s", section, unknown)
            for key in known & set(values):
                current = getattr(stage, key)
                if isinstance(current, dict) and isinstance(values[key], dict):
                    merged = dict(current)
                    merged.update(values[key])
                    setattr(stage, key, merged)
                else:
                    setattr(stage, key, values[key])
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIG = PipelineConfig()

LEGACY_SPIKE_CONFIG = PipelineConfig(
    stage_c=StageCConfig(strategy=TrackingStrategy.FREQUENCY.value, min_note_duration=0.0),
    stage_d=StageDConfig(shape=CurveShape.SPIKE.value),
)

SUSTAINED_CONFIG = PipelineConfig(
    stage_c=StageCConfig(strategy=TrackingStrategy.SUSTAINED.value),
    stage_d=StageDConfig(shape=CurveShape.SUSTAINED.value),
)

PRESETS: Dict[str, PipelineConfig] = {
    "default": DEFAULT_CONFIG,
    "legacy_spike": LEGACY_SPIKE_CONFIG,
    "sustained": SUSTAINED_CONFIG,
}


def load_config(path: Union[str, Path], base: Optional[PipelineConfig] = None) -> PipelineConfig:
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    return PipelineConfig.from_dict(data, base=base)


# -----------------------------
# Dotted-path override helpers
# -----------------------------

def _get_path(root: Any, path: str) -> Tuple[bool, Any]:
    cur = root
    for key in path.split("."):
        if isinstance(cur, dict):
            if key not in cur:
                return False, None
            cur = cur[key]
        elif hasattr(cur, key):
            cur = getattr(cur, key)
        else:
            return False, None
    return True, cur


def _set_path(root: Any, path: str, value: Any) -> bool:
    parent_path, _, last = path.rpartition(".")
    if parent_path:
        ok, parent = _get_path(root, parent_path)
        if not ok:
            return False
    else:
        parent = root
    if isinstance(parent, dict):
        parent[last] = value
        return True
    if hasattr(parent, last):
        setattr(parent, last, value)
        return True
    return False


def apply_overrides(cfg: PipelineConfig, overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Apply dotted-path overrides in place; return the ones that resolved."""
    applied: Dict[str, Any] = {}
    for key, value in overrides.items():
        if _set_path(cfg, key, value):
            applied[key] = value
        else:
            logger.warning("Override %r does not match any config field", key)
    return applied


def _enum_value(enum_cls, value: Any, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"{name} must be one of: {allowed} (got {value!r})") from None


def _require_number(name: str, value: Any, minimum: Optional[float] = None, inclusive: bool = True) -> None:
    if not isinstance(value, numbers.Real) or isinstance(value, bool) or math.isnan(value):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if minimum is not None and (value < minimum if inclusive else value <= minimum):
        bound = ">=" if inclusive else ">"
        raise ConfigError(f"{name} must be {bound} {minimum}, got {value!r}")


def validate_config(cfg: PipelineConfig) -> None:
    """Reject configurations that cannot produce a meaningful analysis."""
    a, b, c, d = cfg.stage_a, cfg.stage_b, cfg.stage_c, cfg.stage_d

    n = a.fft_size
    if not isinstance(n, int) or isinstance(n, bool) or n < MIN_FFT_SIZE or n & (n - 1):
        raise ConfigError(f"fft_size must be a power of two >= {MIN_FFT_SIZE}, got {n!r}")
    _require_number("overlap_factor", a.overlap_factor)
    if not 0.0 <= a.overlap_factor <= MAX_OVERLAP:
        raise ConfigError(f"overlap_factor must be within [0, {MAX_OVERLAP}], got {a.overlap_factor}")
    if cfg.hop_size < 1:
        raise ConfigError(f"fft_size {n} with overlap {a.overlap_factor} gives a zero-sample hop")
    _enum_value(WindowType, a.window_type, "window_type")

    _require_number("min_frequency", b.min_frequency, 0.0, inclusive=False)
    _require_number("max_frequency", b.max_frequency)
    if b.min_frequency >= b.max_frequency:
        raise ConfigError(
            f"min_frequency ({b.min_frequency}) must be below max_frequency ({b.max_frequency})"
        )
    _require_number("peak_threshold", b.peak_threshold, 0.0)
    _require_number("min_peak_distance", b.min_peak_distance, 0.0)
    _require_number("max_peaks_per_frame", b.max_peaks_per_frame, 1)

    _enum_value(TrackingStrategy, c.strategy, "strategy")
    for name in ("frequency_tolerance", "track_decay_time", "note_onset_threshold",
                 "note_decay_threshold", "min_note_duration", "note_gap_time"):
        _require_number(name, getattr(c, name), 0.0)
    _require_number("min_track_length", c.min_track_length, 1)
    if not isinstance(c.background, dict):
        raise ConfigError(f"background must be an object, got {c.background!r}")
    for key in ("freq_range", "window_sec"):
        if key in c.background:
            _require_number(f"background.{key}", c.background[key], 0.0)

    _enum_value(CurveShape, d.shape, "shape")
    if d.overlap_policy not in ("clamp", "reject"):
        raise ConfigError(f"overlap_policy must be 'clamp' or 'reject', got {d.overlap_policy!r}")
    for name in ("spike_duration", "peak_duration", "min_sustain_duration", "guard_time"):
        _require_number(name, getattr(d, name), 0.0)
    _require_number("max_spike_height", d.max_spike_height)
    if d.merge_frequency_tolerance is not None:
        _require_number("merge_frequency_tolerance", d.merge_frequency_tolerance, 0.0)
