"""Piecewise Hermite curve built from keyframes.

Segments whose left out-tangent or right in-tangent is infinite are
stepped: they hold the left keyframe's value until the right keyframe's
time.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import CurveError


@dataclass(frozen=True)
class Keyframe:
    time: float
    value: float
    in_tangent: float = 0.0
    out_tangent: float = 0.0

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.time, self.value, self.in_tangent, self.out_tangent)


class Curve:
    def __init__(self, keys: Optional[Iterable[Keyframe]] = None) -> None:
        self._keys: List[Keyframe] = []
        for key in keys or []:
            self.add_key(key)

    def __len__(self) -> int:
        return len(self._keys)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Curve) and self._keys == other._keys

    def __repr__(self) -> str:
        return f"Curve({len(self._keys)} keys, duration={self.duration:.3f})"

    @property
    def keys(self) -> Tuple[Keyframe, ...]:
        return tuple(self._keys)

    @property
    def duration(self) -> float:
        return self._keys[-1].time if self._keys else 0.0

    def add_key(self, key: Keyframe) -> None:
        if not (math.isfinite(key.time) and math.isfinite(key.value)):
            raise CurveError(f"keyframe time/value must be finite: {key}")
        if any(math.isnan(t) for t in (key.in_tangent, key.out_tangent)):
            raise CurveError(f"keyframe tangent is NaN: {key}")
        if self._keys and key.time <= self._keys[-1].time:
            raise CurveError(
                f"keyframe at t={key.time:.6f} does not follow t={self._keys[-1].time:.6f}"
            )
        self._keys.append(key)

    # -----------------------------
    # Evaluation
    # -----------------------------

    def evaluate(self, t: float) -> float:
        keys = self._keys
        if not keys:
            return 0.0
        if t <= keys[0].time:
            return keys[0].value
        if t >= keys[-1].time:
            return keys[-1].value

        lo, hi = 0, len(keys) - 1
        while hi - lo > 1:
            mid = (lo + hi) // 2
            if keys[mid].time <= t:
                lo = mid
            else:
                hi = mid
        return _hermite(keys[lo], keys[hi], t)

    def evaluate_many(self, times: Sequence[float]) -> np.ndarray:
        return np.array([self.evaluate(float(t)) for t in np.asarray(times, dtype=np.float64)])

    def sample(self, rate: float) -> Tuple[np.ndarray, np.ndarray]:
        """Evaluate on a fixed ``rate`` Hz grid from 0 to ``duration``."""
        if rate <= 0:
            raise ValueError("sample rate must be positive")
        times = np.arange(0.0, self.duration + 1e-12, 1.0 / rate)
        return times, self.evaluate_many(times)

    def hold_duration(self, start: float, threshold: float, rate: float, window: float) -> float:
        """How long, looking at most ``window`` ahead, the curve stays above ``threshold``."""
        held = 0.0
        step = 1.0 / rate
        t = start
        while t <= start + window:
            t += step
            if t >= self.duration:
                break
            if self.evaluate(t) > threshold:
                held = t - start
            else:
                break
        return held

    def count_spikes(self, threshold: float = 0.1) -> int:
        return sum(1 for k in self._keys if k.value > threshold)

    # -----------------------------
    # External representation
    # -----------------------------

    def as_tuples(self) -> List[Tuple[float, float, float, float]]:
        return [k.as_tuple() for k in self._keys]

    def to_dict(self) -> Dict[str, Any]:
        return {"duration": self.duration, "keyframes": [list(k.as_tuple()) for k in self._keys]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Curve":
        return cls(Keyframe(*map(float, row)) for row in data.get("keyframes", []))


def _hermite(k0: Keyframe, k1: Keyframe, t: float) -> float:
    m0, m1 = k0.out_tangent, k1.in_tangent
    if math.isinf(m0) or math.isinf(m1):
        return k0.value
    dt = k1.time - k0.time
    s = (t - k0.time) / dt
    s2, s3 = s * s, s * s * s
    h00 = 2.0 * s3 - 3.0 * s2 + 1.0
    h10 = s3 - 2.0 * s2 + s
    h01 = -2.0 * s3 + 3.0 * s2
    h11 = s3 - s2
    return h00 * k0.value + h10 * dt * m0 + h01 * k1.value + h11 * dt * m1
