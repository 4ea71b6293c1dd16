import json
from unittest.mock import patch

import numpy as np
import pytest

from notecurve.pipeline.config import PipelineConfig
from notecurve.pipeline.curve import Curve, Keyframe
from notecurve.pipeline.instrumentation import PipelineLogger
from notecurve.pipeline.models import FrequencyPeak, NoteEvent, SpectrumFrame
from notecurve.pipeline.validation import dump_resolved_config, validate_invariants


def read_events(run_log):
    with open(run_log.logs_path, encoding="utf-8") as f:
        return [json.loads(line) for line in f]


class TestPipelineLogger:
    @pytest.fixture
    def run_log(self, tmp_path):
        return PipelineLogger(base_dir=str(tmp_path), run_name="unit")

    def test_start_event_has_dependency_snapshot(self, run_log):
        start = read_events(run_log)[0]
        assert start["event"] == "start"
        assert start["dependencies"]["numpy"] is True

    def test_dependency_snapshot_missing_module(self):
        snap = PipelineLogger.dependency_snapshot(["numpy", "no_such_module_xyz"])
        assert snap == {"numpy": True, "no_such_module_xyz": False}

    def test_unserializable_payload_is_stringified(self, run_log):
        run_log.log_event("stage_b", "debug", {"arr": np.arange(3), "n": 2})
        event = read_events(run_log)[-1]
        assert event["n"] == 2
        assert isinstance(event["arr"], str)

    def test_stage_timer(self, run_log):
        with run_log.stage_timer("stage_c") as meta:
            meta["notes"] = 4
        event = read_events(run_log)[-1]
        assert event["stage"] == "stage_c"
        assert event["event"] == "timing"
        assert event["notes"] == 4
        assert run_log.timing["stage_c"] >= 0.0

    def test_stage_timer_records_on_error(self, run_log):
        with pytest.raises(RuntimeError):
            with run_log.stage_timer("stage_a"):
                raise RuntimeError("boom")
        assert "stage_a" in run_log.timing

    def test_emit_config(self, run_log):
        run_log.emit_config("pipeline", PipelineConfig(), {"sample_rate": 44100})
        event = read_events(run_log)[-1]
        assert event["config"]["stage_a"]["fft_size"] == 1024
        assert event["sample_rate"] == 44100

    def test_finalize_writes_timing(self, run_log):
        run_log.record_timing("stage_a", 0.5)
        run_log.finalize()
        with open(run_log.timing_path) as f:
            timing = json.load(f)
        assert timing["stage_a"] == 0.5
        assert "total" in timing

    def test_write_failures_do_not_raise(self, run_log):
        with patch("builtins.open", side_effect=OSError("disk full")):
            run_log.log_event("stage_a", "timing", {})
            run_log.finalize()


class TestValidateInvariants:
    def test_frames(self):
        cfg = PipelineConfig()
        frames = [SpectrumFrame(i, i * 256 / 44100, np.zeros(512)) for i in range(3)]
        validate_invariants(frames, cfg, sample_rate=44100)
        bad = [SpectrumFrame(0, 0.0, np.zeros(100))]
        with pytest.raises(AssertionError):
            validate_invariants(bad, cfg)

    def test_peaks_must_be_strongest_first(self):
        peaks = [FrequencyPeak(0.0, 200.0, 0.1), FrequencyPeak(0.0, 300.0, 0.5)]
        with pytest.raises(AssertionError):
            validate_invariants(peaks)

    def test_notes_in_band(self):
        validate_invariants([NoteEvent(0.0, 440.0, 1.0)], clip_length=1.0)
        with pytest.raises(AssertionError):
            validate_invariants([NoteEvent(0.0, 5000.0, 1.0)])

    def test_curve(self):
        good = Curve([Keyframe(0.0, 0.0), Keyframe(0.5, 1.0), Keyframe(1.0, 0.0)])
        validate_invariants(good, clip_length=1.0)
        with pytest.raises(AssertionError):
            validate_invariants(good, clip_length=2.0)
        with pytest.raises(AssertionError):
            validate_invariants(Curve([Keyframe(0.0, 1.0)]))

    def test_empty_lists_pass(self):
        validate_invariants([])

    def test_dump_resolved_config(self, tmp_path):
        path = dump_resolved_config(PipelineConfig(), {"frame_count": 3}, run_dir=str(tmp_path))
        with open(path) as f:
            payload = json.load(f)
        assert payload["hop_size"] == 256
        assert payload["diagnostics"] == {"frame_count": 3}
        assert payload["config"]["stage_c"]["strategy"] == "onset"
