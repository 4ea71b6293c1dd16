"""Invariant checks for stage outputs."""
from __future__ import annotations

import json
import logging
import math
import os
import time
from typing import Any, Optional, Sequence

from .config import PipelineConfig
from .curve import Curve
from .models import FrequencyPeak, NoteEvent, SpectrumFrame

logger = logging.getLogger(__name__)

_DEF_TOL = 1e-6


def _validate_frames(frames: Sequence[SpectrumFrame], config: PipelineConfig, sample_rate: Optional[int]) -> None:
    n_bins = config.stage_a.fft_size // 2
    for frame in frames:
        if frame.magnitudes.shape != (n_bins,):
            raise AssertionError(f"Frame {frame.index} has {frame.magnitudes.shape} bins, expected {n_bins}")
    if sample_rate and len(frames) >= 2:
        hop_seconds = config.hop_size / float(sample_rate)
        for prev, cur in zip(frames, frames[1:]):
            if not math.isclose(cur.time - prev.time, hop_seconds, rel_tol=1e-6, abs_tol=1e-9):
                raise AssertionError("Frame spacing deviates from the hop size")


def _validate_peaks(peaks: Sequence[FrequencyPeak], config: PipelineConfig) -> None:
    b = config.stage_b
    if len(peaks) > b.max_peaks_per_frame:
        raise AssertionError("More peaks than max_peaks_per_frame")
    mags = [p.magnitude for p in peaks]
    if mags != sorted(mags, reverse=True):
        raise AssertionError("Peaks must be ordered strongest first")
    for p in peaks:
        if not b.min_frequency <= p.frequency <= b.max_frequency:
            raise AssertionError(f"Peak at {p.frequency:.2f} Hz lies outside the search band")


def _validate_notes(notes: Sequence[NoteEvent], config: PipelineConfig, clip_length: Optional[float]) -> None:
    b = config.stage_b
    times = [n.time for n in notes]
    if times != sorted(times):
        raise AssertionError("Notes must be ordered by start time")
    for n in notes:
        if n.duration < 0.0:
            raise AssertionError("Note duration must be non-negative")
        if not b.min_frequency - _DEF_TOL <= n.frequency <= b.max_frequency + _DEF_TOL:
            raise AssertionError(f"Note frequency {n.frequency:.2f} Hz outside [{b.min_frequency}, {b.max_frequency}]")
        if clip_length is not None and n.time > clip_length + _DEF_TOL:
            raise AssertionError("Note starts after the end of the clip")


def _validate_curve(curve: Curve, clip_length: Optional[float]) -> None:
    keys = curve.keys
    if not keys:
        raise AssertionError("Curve has no keyframes")
    if keys[0].time != 0.0 or keys[0].value != 0.0:
        raise AssertionError("Curve must start with a zero keyframe at t=0")
    if keys[-1].value != 0.0:
        raise AssertionError("Curve must end with a zero keyframe")
    if clip_length is not None and clip_length > 0.0 and not math.isclose(keys[-1].time, clip_length):
        raise AssertionError("Curve must end at the clip length")
    for prev, cur in zip(keys, keys[1:]):
        if cur.time <= prev.time:
            raise AssertionError("Keyframe times must be strictly increasing")
    for k in keys:
        if not (math.isfinite(k.value) and math.isfinite(k.time)):
            raise AssertionError("Keyframe values must be finite")


def validate_invariants(
    stage_output: Any,
    config: Optional[PipelineConfig] = None,
    *,
    sample_rate: Optional[int] = None,
    clip_length: Optional[float] = None,
) -> None:
    """Validate invariants per stage. Raises AssertionError on violations."""
    config = config or PipelineConfig()

    if isinstance(stage_output, Curve):
        _validate_curve(stage_output, clip_length)
        return

    if not isinstance(stage_output, (list, tuple)) or not stage_output:
        return

    head = stage_output[0]
    if isinstance(head, SpectrumFrame):
        _validate_frames(stage_output, config, sample_rate)
    elif isinstance(head, FrequencyPeak):
        _validate_peaks(stage_output, config)
    elif isinstance(head, NoteEvent):
        _validate_notes(stage_output, config, clip_length)


def dump_resolved_config(config: PipelineConfig, diagnostics: Optional[dict] = None, run_dir: str = "results") -> str:
    run_path = os.path.join(run_dir, f"run_{int(time.time() * 1000)}")
    os.makedirs(run_path, exist_ok=True)
    payload = {
        "config": config.to_dict(),
        "hop_size": config.hop_size,
        "diagnostics": diagnostics or {},
    }
    path = os.path.join(run_path, "resolved_config.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str)
    logger.info("Resolved config saved to %s", path)
    return path
