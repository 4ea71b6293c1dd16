"""Synthetic test signals for scenario runs and tests."""
from __future__ import annotations

from typing import Sequence

import numpy as np

SAMPLE_RATE = 44100


def silence(duration: float, sr: int = SAMPLE_RATE) -> np.ndarray:
    return np.zeros(int(round(duration * sr)), dtype=np.float64)


def sine_tone(freq: float, duration: float, sr: int = SAMPLE_RATE, amplitude: float = 0.5) -> np.ndarray:
    t = np.arange(int(round(duration * sr)), dtype=np.float64) / sr
    return amplitude * np.sin(2.0 * np.pi * freq * t)


def chord(freqs: Sequence[float], duration: float, sr: int = SAMPLE_RATE, amplitude: float = 0.5) -> np.ndarray:
    """Sum of equal-amplitude sines."""
    out = silence(duration, sr)
    for f in freqs:
        out += sine_tone(f, duration, sr, amplitude)
    return out


def apply_fades(signal: np.ndarray, fade: float, sr: int = SAMPLE_RATE) -> np.ndarray:
    """Raised-cosine fade in and out, ``fade`` seconds each."""
    n = min(int(round(fade * sr)), signal.size // 2)
    if n <= 0:
        return signal.copy()
    ramp = 0.5 * (1.0 - np.cos(np.pi * np.arange(n) / n))
    out = signal.copy()
    out[:n] *= ramp
    out[-n:] *= ramp[::-1]
    return out


def tone_burst(
    freq: float,
    tone_duration: float,
    silence_after: float,
    sr: int = SAMPLE_RATE,
    amplitude: float = 0.5,
    fade: float = 0.005,
) -> np.ndarray:
    """A faded tone followed by digital silence."""
    tone = apply_fades(sine_tone(freq, tone_duration, sr, amplitude), fade, sr)
    return np.concatenate([tone, silence(silence_after, sr)])


def note_sequence(
    freqs: Sequence[float],
    note_duration: float,
    gap: float,
    sr: int = SAMPLE_RATE,
    amplitude: float = 0.5,
    fade: float = 0.005,
) -> np.ndarray:
    parts = []
    for f in freqs:
        parts.append(apply_fades(sine_tone(f, note_duration, sr, amplitude), fade, sr))
        parts.append(silence(gap, sr))
    return np.concatenate(parts) if parts else silence(0.0, sr)


def interleave(*channels: np.ndarray) -> np.ndarray:
    """Interleave equal-length channels into one flat buffer (L, R, L, R, ...)."""
    return np.stack(channels, axis=1).reshape(-1)
