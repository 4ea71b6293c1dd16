"""
Stage B: Peak Detection

Scans each magnitude spectrum for local maxima inside the configured
frequency band and returns them strongest first.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import PipelineConfig, StageBConfig
from .models import FrequencyPeak, SpectrumFrame

logger = logging.getLogger(__name__)

__all__ = [
    "frequency_to_bin",
    "bin_to_frequency",
    "find_peaks",
    "detect_peaks",
]


def frequency_to_bin(frequency: float, sample_rate: int, fft_size: int) -> int:
    return int(round(frequency * fft_size / sample_rate))


def bin_to_frequency(bin_index: float, sample_rate: int, fft_size: int) -> float:
    return float(bin_index) * sample_rate / fft_size


def _parabolic_offset(spectrum: np.ndarray, i: int) -> float:
    """Sub-bin offset of the peak at ``i`` from a parabola through the log magnitudes."""
    a, b, c = np.log(spectrum[i - 1 : i + 2] + 1e-12)
    denom = a - 2.0 * b + c
    if abs(denom) < 1e-12:
        return 0.0
    return float(np.clip(0.5 * (a - c) / denom, -0.5, 0.5))


def _resolve(config: Optional[Union[PipelineConfig, StageBConfig]]) -> StageBConfig:
    if config is None:
        return StageBConfig()
    if isinstance(config, StageBConfig):
        return config
    return config.stage_b


def find_peaks(
    spectrum: np.ndarray,
    time_stamp: float,
    sample_rate: int,
    config: Optional[Union[PipelineConfig, StageBConfig]] = None,
    fft_size: Optional[int] = None,
) -> List[FrequencyPeak]:
    """Local maxima of one spectrum frame, ordered by descending magnitude.

    The scan runs upward through the band and stops once
    ``max_peaks_per_frame`` peaks are held. A candidate within
    ``min_peak_distance`` bins of held peaks replaces them only if it is
    stronger than all of them.
    """
    b_conf = _resolve(config)
    spectrum = np.asarray(spectrum, dtype=np.float64)
    n_bins = spectrum.size
    n_fft = int(fft_size or 2 * n_bins)
    if n_bins < 3:
        return []

    min_bin = frequency_to_bin(b_conf.min_frequency, sample_rate, n_fft)
    max_bin = frequency_to_bin(b_conf.max_frequency, sample_rate, n_fft)
    lo = max(min_bin + 1, 1)
    hi = min(max_bin - 1, n_bins - 1)
    if hi <= lo:
        return []

    centre = spectrum[lo:hi]
    is_peak = (
        (centre > b_conf.peak_threshold)
        & (centre > spectrum[lo - 1 : hi - 1])
        & (centre > spectrum[lo + 1 : hi + 1])
    )
    candidates = np.nonzero(is_peak)[0] + lo

    held: List[Tuple[int, float]] = []  # (bin, magnitude)
    for i in candidates:
        if len(held) >= b_conf.max_peaks_per_frame:
            break
        mag = float(spectrum[i])
        close = [k for k, (b, _) in enumerate(held) if abs(b - i) < b_conf.min_peak_distance]
        if close:
            if all(mag > held[k][1] for k in close):
                held = [p for k, p in enumerate(held) if k not in close]
            else:
                continue
        held.append((int(i), mag))

    peaks = []
    for i, mag in held:
        offset = _parabolic_offset(spectrum, i) if b_conf.interpolate_peaks else 0.0
        peaks.append(FrequencyPeak(
            time_stamp=float(time_stamp),
            frequency=bin_to_frequency(i + offset, sample_rate, n_fft),
            magnitude=mag,
        ))

    # stable sort keeps ascending frequency among equal magnitudes
    peaks.sort(key=lambda p: -p.magnitude)
    return peaks


def detect_peaks(
    frames: Sequence[SpectrumFrame],
    sample_rate: int,
    config: Optional[Union[PipelineConfig, StageBConfig]] = None,
    fft_size: Optional[int] = None,
    progress_callback: Optional[Callable[[int, int], None]] = None,
) -> List[List[FrequencyPeak]]:
    """Stage B main entry point: peaks for every frame, in frame order."""
    total = len(frames)
    per_frame: List[List[FrequencyPeak]] = []
    for done, frame in enumerate(frames, start=1):
        per_frame.append(find_peaks(frame.magnitudes, frame.time, sample_rate, config, fft_size))
        if progress_callback is not None:
            progress_callback(done, total)

    logger.debug("Stage B: %d peaks over %d frames", sum(len(p) for p in per_frame), total)
    return per_frame
