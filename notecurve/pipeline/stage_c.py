"""
Stage C: Frequency Tracking

Links per-frame peaks into tracks and finalizes them into ``NoteEvent``
objects. One state machine serves three strategies:

``frequency``
    Every peak not explained by a live track opens a new one. Tracks
    survive gaps up to ``track_decay_time``; at the end a track must hold
    ``min_track_length`` peaks and last ``min_note_duration``.
``sustained``
    As ``frequency``, but a continuation must also keep at least
    ``note_decay_threshold`` of the track's peak magnitude, and
    near-coincident notes are deduplicated.
``onset``
    New tracks open only when a peak rises ``note_onset_threshold`` times
    above the local background level. A track ends on the first frame
    without a continuation.

Frames must be fed in time order; onset and decay decisions depend on what
earlier frames left behind.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .config import PipelineConfig, StageCConfig
from .models import FrequencyPeak, FrequencyTrack, NoteEvent, TrackingStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _StrategyRules:
    onset_gate: bool
    decay_gate: bool
    end_on_miss: bool
    require_track_length: bool
    dedupe: bool


_RULES: Dict[TrackingStrategy, _StrategyRules] = {
    TrackingStrategy.FREQUENCY: _StrategyRules(False, False, False, True, False),
    TrackingStrategy.SUSTAINED: _StrategyRules(False, True, False, True, True),
    TrackingStrategy.ONSET: _StrategyRules(True, True, True, False, True),
}


def relative_distance(frequency: float, reference: float) -> float:
    """``|f - ref| / ref``; a non-positive reference never matches."""
    if reference <= 0.0:
        return float("inf")
    return abs(frequency - reference) / reference


def _upper_median(values: List[float]) -> float:
    ordered = sorted(values)
    return ordered[len(ordered) // 2]


class FrequencyTracker:
    """Incremental tracker: call ``step`` per frame, then ``finish``."""

    def __init__(
        self,
        config: Optional[Union[PipelineConfig, StageCConfig]] = None,
        peak_threshold: float = 0.01,
    ) -> None:
        # the background level falls back to the peak threshold when nothing is nearby
        if isinstance(config, PipelineConfig):
            peak_threshold = config.stage_b.peak_threshold
            config = config.stage_c
        self.conf: StageCConfig = config or StageCConfig()
        self.peak_threshold = float(peak_threshold)
        config = self.conf
        self.strategy = TrackingStrategy(config.strategy)
        self.rules = _RULES[self.strategy]

        bg = config.background or {}
        self.background_freq_range = float(bg.get("freq_range", 0.2))
        self.background_window = float(bg.get("window_sec", 0.5))

        self._tracks: Dict[int, FrequencyTrack] = {}
        self._next_id = 0
        self._history: Deque[FrequencyPeak] = deque()
        self._last_time: Optional[float] = None
        self.notes: List[NoteEvent] = []
        self.stats: Dict[str, int] = {
            "frames": 0,
            "peaks": 0,
            "tracks_started": 0,
            "tracks_discarded": 0,
            "notes_deduplicated": 0,
        }

    @property
    def active_tracks(self) -> List[FrequencyTrack]:
        return [self._tracks[k] for k in sorted(self._tracks)]

    # -----------------------------
    # Per-frame processing
    # -----------------------------

    def step(self, time: float, peaks: Sequence[FrequencyPeak]) -> None:
        if self._last_time is not None and time < self._last_time:
            raise ValueError(f"frames must arrive in time order ({time} < {self._last_time})")
        self._last_time = time
        self.stats["frames"] += 1
        self.stats["peaks"] += len(peaks)

        claimed: Set[int] = set()
        ended: List[int] = []

        for track_id in sorted(self._tracks):
            track = self._tracks[track_id]
            silent_for = time - track.last_update_time
            match = None
            if self.rules.end_on_miss or silent_for <= self.conf.track_decay_time:
                match = self._find_continuation(track, peaks, claimed)
            if match is not None:
                claimed.add(match)
                track.add_peak(peaks[match])
                continue
            if self.rules.end_on_miss or silent_for > self.conf.track_decay_time:
                ended.append(track_id)

        for track_id in ended:
            self._finalize(self._tracks.pop(track_id))

        for idx, peak in enumerate(peaks):
            if idx in claimed or self._explained(peak):
                continue
            if self.rules.onset_gate and peak.magnitude < self.background_level(peak.frequency, time) * self.conf.note_onset_threshold:
                continue
            self._open(peak)

        self._remember(time, peaks)

    def _find_continuation(self, track: FrequencyTrack, peaks: Sequence[FrequencyPeak], claimed: Set[int]) -> Optional[int]:
        best: Optional[int] = None
        best_dist = float("inf")
        floor = track.peak_magnitude * self.conf.note_decay_threshold
        for idx, peak in enumerate(peaks):
            if idx in claimed:
                continue
            dist = relative_distance(peak.frequency, track.frequency)
            if dist > self.conf.frequency_tolerance:
                continue
            if self.rules.decay_gate and peak.magnitude < floor:
                continue
            # strict comparison keeps the earliest (strongest) peak on ties
            if dist < best_dist:
                best, best_dist = idx, dist
        return best

    def _explained(self, peak: FrequencyPeak) -> bool:
        return any(
            relative_distance(peak.frequency, t.frequency) <= self.conf.frequency_tolerance
            for t in self._tracks.values()
        )

    def _open(self, peak: FrequencyPeak) -> None:
        self._tracks[self._next_id] = FrequencyTrack.open(self._next_id, peak)
        self._next_id += 1
        self.stats["tracks_started"] += 1

    def _remember(self, time: float, peaks: Sequence[FrequencyPeak]) -> None:
        self._history.extend(peaks)
        horizon = time - self.background_window
        while self._history and self._history[0].time_stamp < horizon:
            self._history.popleft()

    def background_level(self, frequency: float, time: float) -> float:
        """Upper median magnitude of earlier peaks near ``frequency`` within the time window."""
        span = frequency * self.background_freq_range
        mags = [
            p.magnitude
            for p in self._history
            if abs(p.frequency - frequency) <= span
            and abs(p.time_stamp - time) <= self.background_window
            and p.time_stamp < time
        ]
        if not mags:
            return self.peak_threshold
        return _upper_median(mags)

    # -----------------------------
    # Finalization
    # -----------------------------

    def _finalize(self, track: FrequencyTrack) -> None:
        too_short = track.duration < self.conf.min_note_duration
        if self.rules.require_track_length and len(track.peaks) < self.conf.min_track_length:
            too_short = True
        if too_short:
            self.stats["tracks_discarded"] += 1
            return

        note = NoteEvent(
            time=track.start_time,
            frequency=track.frequency,
            energy=track.peak_magnitude,
            duration=track.duration,
        )
        if self.rules.dedupe:
            for k, existing in enumerate(self.notes):
                if (
                    relative_distance(existing.frequency, note.frequency) <= self.conf.frequency_tolerance
                    and abs(existing.time - note.time) < self.conf.note_gap_time
                ):
                    self.stats["notes_deduplicated"] += 1
                    if note.energy > existing.energy:
                        del self.notes[k]
                        break
                    return
        self.notes.append(note)

    def finish(self) -> List[NoteEvent]:
        """Flush live tracks and return all notes ordered by start time."""
        for track_id in sorted(self._tracks):
            self._finalize(self._tracks[track_id])
        self._tracks.clear()
        self.notes.sort(key=lambda n: (n.time, n.frequency))
        return list(self.notes)


def track_frequencies(
    frame_peaks: Iterable[Tuple[float, Sequence[FrequencyPeak]]],
    config: Optional[Union[PipelineConfig, StageCConfig]] = None,
) -> List[NoteEvent]:
    """Stage C main entry point over ``(time, peaks)`` pairs in time order."""
    tracker = FrequencyTracker(config)
    for time, peaks in frame_peaks:
        tracker.step(time, peaks)
    notes = tracker.finish()
    logger.debug("Stage C (%s): %s -> %d notes", tracker.strategy.value, tracker.stats, len(notes))
    return notes


def group_peaks_by_time(peaks: Iterable[FrequencyPeak]) -> List[Tuple[float, List[FrequencyPeak]]]:
    """Regroup a flat peak list into time-ordered frames, strongest first within each."""
    groups: Dict[float, List[FrequencyPeak]] = {}
    for p in peaks:
        groups.setdefault(p.time_stamp, []).append(p)
    return [
        (t, sorted(groups[t], key=lambda p: -p.magnitude))
        for t in sorted(groups)
    ]
