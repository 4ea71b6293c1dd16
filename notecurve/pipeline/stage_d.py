"""
Stage D: Note Merging & Curve Synthesis

Combines overlapping same-pitch notes into stronger events, then renders
the notes into a keyframe curve whose height encodes pitch.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import PipelineConfig, StageBConfig, StageDConfig
from .curve import Curve, Keyframe
from .errors import CurveError
from .models import CurveShape, NoteEvent

logger = logging.getLogger(__name__)

INF = float("inf")


# -----------------------------
# Merging
# -----------------------------

def _span(note: NoteEvent, window: Optional[float]) -> Tuple[float, float]:
    """Active span; point notes use ``window``, sustained notes (``window=None``) their duration."""
    if window is None:
        return note.time, note.time + note.duration
    return note.time, note.time + window


def _frequency_close(a: float, b: float, tolerance: float) -> bool:
    ref = min(a, b)
    if ref <= 0.0:
        return False
    return abs(a - b) / ref <= tolerance


def _mergeable(a: NoteEvent, b: NoteEvent, window: Optional[float], tolerance: float) -> bool:
    a0, a1 = _span(a, window)
    b0, b1 = _span(b, window)
    return a0 < b1 and b0 < a1 and _frequency_close(a.frequency, b.frequency, tolerance)


def _combine(a: NoteEvent, b: NoteEvent, window: Optional[float], weighted_time: bool) -> NoteEvent:
    total = a.energy + b.energy
    if total > 0.0:
        frequency = (a.frequency * a.energy + b.frequency * b.energy) / total
        weighted = (a.time * a.energy + b.time * b.energy) / total
    else:
        frequency = 0.5 * (a.frequency + b.frequency)
        weighted = 0.5 * (a.time + b.time)
    start = weighted if weighted_time else min(a.time, b.time)

    if window is None:
        end = max(a.end_time, b.end_time)
    else:
        end = max(a.end_time, b.end_time, start)
    return NoteEvent(time=start, frequency=frequency, energy=total, duration=max(0.0, end - start))


def merge_notes(
    notes: List[NoteEvent],
    merge_window: Optional[float],
    frequency_tolerance: float,
    weighted_time: bool = True,
) -> List[NoteEvent]:
    """Merge notes whose spans overlap and whose frequencies agree.

    Notes are swept in start order and folded into the first compatible
    note already in the output. A grown note is re-checked against the rest
    of the output so a second pass finds nothing left to merge.
    """
    merged: List[NoteEvent] = []
    for note in sorted(notes, key=lambda n: (n.time, n.frequency)):
        target = next(
            (i for i, m in enumerate(merged) if _mergeable(note, m, merge_window, frequency_tolerance)),
            None,
        )
        if target is None:
            merged.append(note)
            continue

        merged[target] = _combine(merged[target], note, merge_window, weighted_time)
        while True:
            other = next(
                (j for j, m in enumerate(merged)
                 if j != target and _mergeable(merged[target], m, merge_window, frequency_tolerance)),
                None,
            )
            if other is None:
                break
            merged[target] = _combine(merged[target], merged[other], merge_window, weighted_time)
            del merged[other]
            if other < target:
                target -= 1

    merged.sort(key=lambda n: (n.time, n.frequency))
    return merged


# -----------------------------
# Curve synthesis
# -----------------------------

def pitch_height(
    frequency: float,
    min_frequency: float,
    max_frequency: float,
    max_height: float = 1.0,
    logarithmic: bool = True,
) -> float:
    """Map a frequency onto ``[0, max_height]``; non-positive frequencies map to 0."""
    if frequency <= 0.0 or min_frequency <= 0.0 or max_frequency <= min_frequency:
        return 0.0
    if logarithmic:
        lo, hi = math.log(min_frequency), math.log(max_frequency)
        norm = (math.log(frequency) - lo) / (hi - lo)
    else:
        norm = (frequency - min_frequency) / (max_frequency - min_frequency)
    return min(max(norm, 0.0), 1.0) * max_height


def _shape_keys(note: NoteEvent, height: float, d_conf: StageDConfig) -> List[Keyframe]:
    shape = CurveShape(d_conf.shape)
    g = d_conf.guard_time
    t = note.time

    if shape is CurveShape.SPIKE:
        return [
            Keyframe(t - g, 0.0),
            Keyframe(t, height, INF, -INF),
            Keyframe(t + d_conf.spike_duration, 0.0),
        ]

    hold = d_conf.peak_duration if shape is CurveShape.PLATEAU else note.duration
    end = t + hold
    return [
        Keyframe(t - g, 0.0, 0.0, INF),
        Keyframe(t, height, INF, 0.0),
        Keyframe(end, height, 0.0, -INF),
        Keyframe(end + g, 0.0, -INF, 0.0),
    ]


def synthesize_curve(
    notes: List[NoteEvent],
    clip_length: float,
    config: Optional[Union[PipelineConfig, StageDConfig]] = None,
    band: Optional[StageBConfig] = None,
    stats: Optional[Dict[str, Any]] = None,
) -> Curve:
    """Render notes into a curve running from (0, 0) to (clip_length, 0).

    Notes are drawn in start order. When a note begins before the previous
    shape has finished, ``overlap_policy="reject"`` raises ``CurveError``
    and ``"clamp"`` cuts the previous shape short.
    """
    if isinstance(config, PipelineConfig):
        band = band or config.stage_b
        d_conf = config.stage_d
    else:
        d_conf = config or StageDConfig()
    band = band or StageBConfig()
    shape = CurveShape(d_conf.shape)
    clip_length = max(0.0, float(clip_length))
    clamped = 0

    keys: List[Keyframe] = [Keyframe(0.0, 0.0)]
    for note in sorted(notes, key=lambda n: (n.time, n.frequency)):
        if shape is CurveShape.SUSTAINED and note.duration <= d_conf.min_sustain_duration:
            continue
        height = pitch_height(
            note.frequency,
            band.min_frequency,
            band.max_frequency,
            d_conf.max_spike_height,
            d_conf.logarithmic_pitch_mapping,
        )
        # the rise must land after the t=0 anchor
        if note.time < d_conf.guard_time:
            note = NoteEvent(d_conf.guard_time, note.frequency, note.energy, note.duration)
        shape_keys = [k for k in _shape_keys(note, height, d_conf) if 0.0 < k.time < clip_length]
        if not shape_keys:
            continue

        first = shape_keys[0].time
        if len(keys) > 1 and first <= keys[-1].time:
            if d_conf.overlap_policy == "reject":
                raise CurveError(
                    f"note at t={note.time:.4f}s overlaps the previous shape ending at t={keys[-1].time:.4f}s"
                )
            while len(keys) > 1 and keys[-1].time >= first:
                keys.pop()
                clamped += 1

        for key in shape_keys:
            if key.time > keys[-1].time:
                keys.append(key)
            else:
                clamped += 1

    if clamped:
        logger.warning("Curve synthesis clamped %d overlapping keyframes", clamped)
    if stats is not None:
        stats["keyframes_clamped"] = clamped

    if clip_length > keys[-1].time:
        # a shape cut off by the clip end falls at the closing key
        fall = -INF if keys[-1].value != 0.0 else 0.0
        keys.append(Keyframe(clip_length, 0.0, fall, 0.0))
    return Curve(keys)


def render(
    notes: List[NoteEvent],
    clip_length: float,
    config: Optional[PipelineConfig] = None,
    stats: Optional[Dict[str, Any]] = None,
) -> Tuple[List[NoteEvent], Curve]:
    """Stage D main entry point: optional merge, then curve synthesis."""
    config = config or PipelineConfig()
    d_conf = config.stage_d
    shape = CurveShape(d_conf.shape)

    final = list(notes)
    if d_conf.combine_overlapping_spikes and final:
        tolerance = d_conf.merge_frequency_tolerance
        if tolerance is None:
            tolerance = config.stage_c.frequency_tolerance
        if shape is CurveShape.SPIKE:
            window, weighted = d_conf.spike_duration, True
        elif shape is CurveShape.PLATEAU:
            window, weighted = d_conf.peak_duration, False
        else:
            window, weighted = None, False
        final = merge_notes(final, window, tolerance, weighted_time=weighted)
        if stats is not None:
            stats["notes_merged"] = len(notes) - len(final)

    curve = synthesize_curve(final, clip_length, config, stats=stats)
    logger.debug("Stage D: %d notes -> %d keyframes", len(final), len(curve))
    return final, curve
