"""
Stage A: Spectral Analysis

Slices the mono sample buffer into overlapping frames, applies the
configured window and computes the magnitude spectrum of every frame with an
iterative radix-2 FFT. Frames are independent, so the transform runs over
the whole frame matrix at once.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import List, Optional, Tuple, Union

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .config import PipelineConfig, StageAConfig
from .errors import ConfigError
from .models import SampleBuffer, SpectrumFrame, WindowType

logger = logging.getLogger(__name__)


def is_power_of_two(n: int) -> bool:
    return isinstance(n, (int, np.integer)) and n > 0 and (n & (n - 1)) == 0


def hop_size_for(fft_size: int, overlap_factor: float) -> int:
    return int(round(fft_size * (1.0 - overlap_factor)))


@lru_cache(maxsize=32)
def window_coefficients(window_type: Union[str, WindowType], n: int) -> np.ndarray:
    """Closed-form window of length ``n`` (symmetric, denominators ``n - 1``)."""
    wt = WindowType(window_type)
    i = np.arange(n, dtype=np.float64)
    denom = float(max(n - 1, 1))

    if wt is WindowType.RECTANGULAR:
        w = np.ones(n)
    elif wt is WindowType.TRIANGLE:
        w = 1.0 - np.abs((2.0 * i - n + 1.0) / (n + 1.0))
    elif wt is WindowType.HAMMING:
        w = 0.54 - 0.46 * np.cos(2.0 * np.pi * i / denom)
    elif wt is WindowType.HANNING:
        w = 0.5 * (1.0 - np.cos(2.0 * np.pi * i / denom))
    elif wt is WindowType.BLACKMAN:
        w = 0.42 - 0.5 * np.cos(2.0 * np.pi * i / denom) + 0.08 * np.cos(4.0 * np.pi * i / denom)
    else:
        x = 2.0 * np.pi * i / denom
        w = 0.35875 - 0.48829 * np.cos(x) + 0.14128 * np.cos(2.0 * x) - 0.01168 * np.cos(3.0 * x)

    w.setflags(write=False)
    return w


@lru_cache(maxsize=16)
def _fft_plan(n: int) -> Tuple[np.ndarray, np.ndarray]:
    """Bit-reversal permutation and twiddle factors for an ``n``-point FFT."""
    bits = n.bit_length() - 1
    idx = np.arange(n)
    rev = np.zeros(n, dtype=np.int64)
    for b in range(bits):
        rev |= ((idx >> b) & 1) << (bits - 1 - b)
    twiddles = np.exp(-2j * np.pi * np.arange(n // 2) / n)
    rev.setflags(write=False)
    twiddles.setflags(write=False)
    return rev, twiddles


def fft_radix2(x: np.ndarray) -> np.ndarray:
    """Iterative Cooley-Tukey FFT along the last axis.

    Accepts a 1-D signal or a ``(frames, n)`` matrix; ``n`` must be a power
    of two.
    """
    data = np.asarray(x)
    n = data.shape[-1]
    if not is_power_of_two(n):
        raise ConfigError(f"FFT length must be a power of two, got {n}")

    squeeze = data.ndim == 1
    rev, twiddles = _fft_plan(n)
    out = np.atleast_2d(data).astype(np.complex128)[:, rev]
    rows = out.shape[0]

    size = 2
    while size <= n:
        half = size // 2
        w = twiddles[:: n // size]
        blocks = out.reshape(rows, n // size, size)
        odd = blocks[:, :, half:] * w
        even = blocks[:, :, :half].copy()
        blocks[:, :, :half] = even + odd
        blocks[:, :, half:] = even - odd
        size *= 2

    return out[0] if squeeze else out


def frame_signal(samples: np.ndarray, fft_size: int, hop_size: int) -> np.ndarray:
    """``(n_frames, fft_size)`` view of the signal. A trailing partial frame is dropped."""
    if samples.size < fft_size:
        return np.empty((0, fft_size), dtype=np.float64)
    return sliding_window_view(samples, fft_size)[::hop_size]


def _resolve(config: Optional[Union[PipelineConfig, StageAConfig]]) -> StageAConfig:
    if config is None:
        return StageAConfig()
    if isinstance(config, StageAConfig):
        return config
    return config.stage_a


def magnitude_spectra(
    buffer: SampleBuffer,
    config: Optional[Union[PipelineConfig, StageAConfig]] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return ``(times, magnitudes)`` with ``magnitudes`` shaped ``(n_frames, fft_size // 2)``."""
    a_conf = _resolve(config)
    n = int(a_conf.fft_size)
    if not is_power_of_two(n):
        raise ConfigError(f"fft_size must be a power of two, got {n}")
    if buffer.sample_rate <= 0:
        raise ConfigError(f"sample rate must be positive, got {buffer.sample_rate}")
    hop = hop_size_for(n, a_conf.overlap_factor)
    if hop < 1:
        raise ConfigError(f"overlap {a_conf.overlap_factor} leaves no hop for fft_size {n}")

    frames = frame_signal(buffer.samples, n, hop)
    times = np.arange(frames.shape[0], dtype=np.float64) * hop / float(buffer.sample_rate)
    if frames.shape[0] == 0:
        logger.debug("Clip shorter than one %d-sample window; no frames", n)
        return times, np.empty((0, n // 2), dtype=np.float64)

    windowed = frames * window_coefficients(a_conf.window_type, n)
    spectrum = fft_radix2(windowed)
    mags = np.abs(spectrum[:, : n // 2])

    logger.debug("Stage A: %d frames, fft=%d hop=%d window=%s", mags.shape[0], n, hop, a_conf.window_type)
    return times, mags


def analyze(
    buffer: SampleBuffer,
    config: Optional[Union[PipelineConfig, StageAConfig]] = None,
) -> List[SpectrumFrame]:
    """Stage A main entry point: one ``SpectrumFrame`` per full window."""
    times, mags = magnitude_spectra(buffer, config)
    return [
        SpectrumFrame(index=i, time=float(times[i]), magnitudes=mags[i])
        for i in range(mags.shape[0])
    ]
