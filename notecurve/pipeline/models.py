"""
Data model shared by the curve-generation stages.

Stage A produces ``SpectrumFrame`` objects, Stage B ``FrequencyPeak`` values,
Stage C ``NoteEvent`` values (via mutable ``FrequencyTrack`` records) and
Stage D a ``Curve`` (see ``curve.py``). Values cross stage boundaries by
value; only ``FrequencyTrack`` is mutable and it never leaves Stage C.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np

from .errors import ErrorKind, InputError


class WindowType(str, Enum):
    RECTANGULAR = "rectangular"
    TRIANGLE = "triangle"
    HAMMING = "hamming"
    HANNING = "hanning"
    BLACKMAN = "blackman"
    BLACKMAN_HARRIS = "blackman_harris"


class TrackingStrategy(str, Enum):
    FREQUENCY = "frequency"   # plain frequency tracking, every unmatched peak opens a track
    SUSTAINED = "sustained"   # frequency tracking with decay-ratio continuation
    ONSET = "onset"           # onset/decay tracking gated by local background level


class CurveShape(str, Enum):
    SPIKE = "spike"
    PLATEAU = "plateau"
    SUSTAINED = "sustained"


@dataclass(frozen=True)
class SampleBuffer:
    """Mono samples plus sample rate. The pipeline never writes into ``samples``."""

    samples: np.ndarray
    sample_rate: int

    @property
    def duration_sec(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return float(len(self.samples)) / float(self.sample_rate)

    @classmethod
    def from_interleaved(cls, samples: Any, sample_rate: int, channels: int = 1) -> "SampleBuffer":
        """Build a mono buffer, averaging interleaved channel groups when ``channels > 1``."""
        if channels < 1:
            raise InputError(f"channel count must be >= 1, got {channels}")
        data = np.asarray(samples, dtype=np.float64).reshape(-1)
        if data.size and not np.all(np.isfinite(data)):
            raise InputError("sample buffer contains NaN or infinite values")
        if channels > 1:
            usable = (data.size // channels) * channels
            data = data[:usable].reshape(-1, channels).mean(axis=1)
        return cls(samples=data, sample_rate=int(sample_rate))


@dataclass(frozen=True)
class SpectrumFrame:
    index: int
    time: float
    magnitudes: np.ndarray  # fft_size // 2 bins


@dataclass(frozen=True)
class FrequencyPeak:
    time_stamp: float
    frequency: float
    magnitude: float


@dataclass
class FrequencyTrack:
    """An active note while Stage C is still extending it.

    ``frequency`` is always the magnitude-weighted mean of ``peaks``.
    """

    track_id: int
    frequency: float
    start_time: float
    last_update_time: float
    peak_magnitude: float
    peaks: List[FrequencyPeak] = field(default_factory=list)
    _weight_sum: float = 0.0
    _weighted_freq_sum: float = 0.0

    @classmethod
    def open(cls, track_id: int, peak: FrequencyPeak) -> "FrequencyTrack":
        track = cls(
            track_id=track_id,
            frequency=peak.frequency,
            start_time=peak.time_stamp,
            last_update_time=peak.time_stamp,
            peak_magnitude=peak.magnitude,
        )
        track.add_peak(peak)
        return track

    @property
    def duration(self) -> float:
        return self.last_update_time - self.start_time

    def add_peak(self, peak: FrequencyPeak) -> None:
        self.peaks.append(peak)
        self._weight_sum += peak.magnitude
        self._weighted_freq_sum += peak.frequency * peak.magnitude
        if self._weight_sum > 0.0:
            self.frequency = self._weighted_freq_sum / self._weight_sum
        else:
            self.frequency = float(np.mean([p.frequency for p in self.peaks]))
        self.last_update_time = max(self.last_update_time, peak.time_stamp)
        if peak.magnitude > self.peak_magnitude:
            self.peak_magnitude = peak.magnitude


@dataclass(frozen=True)
class NoteEvent:
    """A finalized note. ``duration`` is zero for point notes."""

    time: float
    frequency: float
    energy: float
    duration: float = 0.0

    @property
    def end_time(self) -> float:
        return self.time + self.duration

    def as_dict(self) -> Dict[str, float]:
        return {
            "time": float(self.time),
            "frequency": float(self.frequency),
            "energy": float(self.energy),
            "duration": float(self.duration),
        }


@dataclass
class AnalysisResult:
    ok: bool
    notes: List[NoteEvent] = field(default_factory=list)
    curve: Optional[Any] = None  # curve.Curve
    error_kind: Optional[ErrorKind] = None
    error_message: str = ""
    diagnostics: Dict[str, Any] = field(default_factory=dict)
