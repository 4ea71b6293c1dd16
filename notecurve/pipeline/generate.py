"""
Curve generation entry point.

Runs stages A to D over one clip and folds every ``PipelineError`` into a
typed ``AnalysisResult``. Per-stage timings go to the optional
``PipelineLogger``.
"""

from __future__ import annotations

import contextlib
import logging
import time
from typing import Any, Callable, ContextManager, Dict, List, Optional

from .config import PipelineConfig, validate_config
from .errors import InputError, PipelineError
from .instrumentation import PipelineLogger
from .models import AnalysisResult, NoteEvent, SampleBuffer
from .stage_a import analyze
from .stage_b import detect_peaks
from .stage_c import FrequencyTracker
from .stage_d import render
from .validation import validate_invariants

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


def _quality_metrics(notes: List[NoteEvent], duration_sec: float) -> Dict[str, Any]:
    duration_sec = float(max(1e-6, duration_sec or 0.0))
    if not notes:
        return {"note_count": 0, "notes_per_sec": 0.0, "median_note_dur_ms": 0.0}
    durs = sorted(max(0.0, n.duration) for n in notes)
    return {
        "note_count": len(notes),
        "notes_per_sec": float(len(notes) / duration_sec),
        "median_note_dur_ms": float(1000.0 * durs[len(durs) // 2]),
    }


def generate_curve(
    samples: Any,
    sample_rate: int,
    config: Optional[PipelineConfig] = None,
    *,
    channels: int = 1,
    clip_length: Optional[float] = None,
    progress_callback: Optional[ProgressCallback] = None,
    pipeline_logger: Optional[PipelineLogger] = None,
    validate: bool = False,
) -> AnalysisResult:
    """
    Run the full analysis: spectra -> peaks -> tracks -> notes -> curve.

    ``samples`` may be mono or interleaved with ``channels`` channels.
    Invalid configuration or input comes back as ``ok=False`` with an
    ``ErrorKind``; a clip shorter than one FFT window is a successful run
    with no notes and a curve holding only its end keyframes.
    """
    config = config or PipelineConfig()
    t0 = time.perf_counter()

    try:
        validate_config(config)
        if sample_rate is None or sample_rate <= 0:
            raise InputError(f"sample rate must be positive, got {sample_rate}")
        buffer = SampleBuffer.from_interleaved(samples, sample_rate, channels)
        if clip_length is None:
            clip_length = buffer.duration_sec
        elif clip_length < 0:
            raise InputError(f"clip length must be non-negative, got {clip_length}")

        if pipeline_logger:
            pipeline_logger.emit_config("pipeline", config, {"sample_rate": sample_rate, "channels": channels})

        stats: Dict[str, Any] = {"hop_size": config.hop_size}

        def timed(stage: str) -> ContextManager[Dict[str, Any]]:
            if pipeline_logger:
                return pipeline_logger.stage_timer(stage)
            return contextlib.nullcontext({})

        # ---------------- Stage A ----------------
        with timed("stage_a") as meta:
            frames = analyze(buffer, config)
            stats["frame_count"] = meta["frames"] = len(frames)
        if validate:
            validate_invariants(frames, config, sample_rate=buffer.sample_rate)

        # ---------------- Stage B ----------------
        with timed("stage_b") as meta:
            frame_peaks = detect_peaks(
                frames,
                buffer.sample_rate,
                config,
                fft_size=config.stage_a.fft_size,
                progress_callback=progress_callback,
            )
            stats["peak_count"] = meta["peaks"] = sum(len(p) for p in frame_peaks)
        if validate:
            for peaks in frame_peaks:
                validate_invariants(peaks, config)

        # ---------------- Stage C ----------------
        with timed("stage_c") as meta:
            tracker = FrequencyTracker(config)
            for frame, peaks in zip(frames, frame_peaks):
                tracker.step(frame.time, peaks)
            notes = tracker.finish()
            stats.update({k: v for k, v in tracker.stats.items() if k not in ("frames", "peaks")})
            meta.update(strategy=tracker.strategy.value, notes=len(notes))
        if validate:
            validate_invariants(notes, config, clip_length=clip_length)

        # ---------------- Stage D ----------------
        with timed("stage_d") as meta:
            final_notes, curve = render(notes, clip_length, config, stats=stats)
            meta["keyframes"] = len(curve)
        if validate:
            validate_invariants(curve, config, clip_length=clip_length)

    except PipelineError as exc:
        logger.error("Curve generation failed (%s): %s", exc.kind.value, exc)
        if pipeline_logger:
            pipeline_logger.log_event("pipeline", "error", {"kind": exc.kind.value, "message": str(exc)})
        return AnalysisResult(ok=False, error_kind=exc.kind, error_message=str(exc))

    stats.update(_quality_metrics(final_notes, clip_length))
    stats["total_sec"] = float(time.perf_counter() - t0)
    logger.info(
        "Found %d note events from %d peaks over %d frames",
        len(final_notes), stats["peak_count"], stats["frame_count"],
    )
    if pipeline_logger:
        pipeline_logger.log_event("pipeline", "complete", stats)
        pipeline_logger.finalize()

    return AnalysisResult(ok=True, notes=final_notes, curve=curve, diagnostics=stats)

