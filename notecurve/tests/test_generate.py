import json
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from notecurve.benchmarks import signals
from notecurve.benchmarks.run_scenarios import run_scenarios
from notecurve.pipeline.config import LEGACY_SPIKE_CONFIG, SUSTAINED_CONFIG, PipelineConfig
from notecurve.pipeline.errors import CurveError, ErrorKind
from notecurve.pipeline.generate import generate_curve
from notecurve.pipeline.instrumentation import PipelineLogger

SR = signals.SAMPLE_RATE


@pytest.fixture(scope="module")
def sine_440():
    return signals.sine_tone(440.0, 2.0)


@pytest.fixture(scope="module")
def two_tones():
    return signals.chord([220.0, 440.0], 1.0)


class TestScenarios:
    def test_pure_tone_is_one_long_note(self, sine_440):
        result = generate_curve(sine_440, SR)
        assert result.ok
        assert len(result.notes) == 1
        note = result.notes[0]
        assert note.frequency == pytest.approx(440.0, rel=0.01)
        assert note.duration >= 1.9
        assert result.curve.duration == pytest.approx(2.0)

    def test_two_tones_stay_separate(self, two_tones):
        result = generate_curve(two_tones, SR)
        assert result.ok
        freqs = sorted(n.frequency for n in result.notes)
        assert len(freqs) == 2
        assert freqs[0] == pytest.approx(220.0, rel=0.02)
        assert freqs[1] == pytest.approx(440.0, rel=0.02)

    def test_tone_burst_then_silence(self):
        result = generate_curve(signals.tone_burst(440.0, 0.1, 0.5), SR)
        assert result.ok
        assert len(result.notes) == 1
        assert 0.06 <= result.notes[0].duration <= 0.13

    def test_silence(self):
        result = generate_curve(signals.silence(1.0), SR)
        assert result.ok
        assert result.notes == []
        assert result.diagnostics["peak_count"] == 0
        assert result.curve.as_tuples() == [(0.0, 0.0, 0.0, 0.0), (1.0, 0.0, 0.0, 0.0)]

    def test_melody_gives_one_note_per_pitch(self):
        result = generate_curve(signals.note_sequence([220.0, 330.0, 440.0], 0.2, 0.2), SR)
        assert result.ok
        assert [n.frequency for n in result.notes] == [
            pytest.approx(220.0, rel=0.02),
            pytest.approx(330.0, rel=0.02),
            pytest.approx(440.0, rel=0.02),
        ]
        times = [n.time for n in result.notes]
        assert times == sorted(times)

    def test_too_short_is_not_an_error(self):
        samples = np.zeros(500)
        result = generate_curve(samples, SR)
        assert result.ok
        assert result.diagnostics["frame_count"] == 0
        assert [k.time for k in result.curve.keys] == pytest.approx([0.0, 500 / SR])


class TestProperties:
    def test_deterministic(self, two_tones):
        a = generate_curve(two_tones, SR)
        b = generate_curve(two_tones, SR)
        assert a.notes == b.notes
        assert a.curve == b.curve

    def test_track_conservation(self, two_tones):
        result = generate_curve(two_tones, SR)
        cfg = PipelineConfig()
        assert len(result.notes) <= result.diagnostics["peak_count"]
        for n in result.notes:
            assert cfg.stage_b.min_frequency <= n.frequency <= cfg.stage_b.max_frequency

    def test_stereo_downmix_matches_mono(self, sine_440):
        mono = generate_curve(sine_440, SR)
        stereo = generate_curve(signals.interleave(sine_440, sine_440), SR, channels=2)
        assert stereo.notes == mono.notes

    def test_validate_mode(self, two_tones):
        result = generate_curve(two_tones, SR, validate=True)
        assert result.ok

    def test_diagnostics(self, sine_440):
        result = generate_curve(sine_440, SR)
        for key in (
            "frame_count", "peak_count", "hop_size", "tracks_started", "tracks_discarded",
            "notes_deduplicated", "notes_merged", "keyframes_clamped",
            "note_count", "notes_per_sec", "median_note_dur_ms",
        ):
            assert key in result.diagnostics
        assert result.diagnostics["hop_size"] == 256
        assert result.diagnostics["frame_count"] == (len(sine_440) - 1024) // 256 + 1


class TestPresets:
    def test_legacy_spike(self, sine_440):
        result = generate_curve(sine_440, SR, LEGACY_SPIKE_CONFIG)
        assert result.ok
        assert len(result.notes) == 1
        assert result.curve.count_spikes() == 1

    def test_sustained(self, sine_440):
        result = generate_curve(sine_440, SR, SUSTAINED_CONFIG)
        assert result.ok
        assert len(result.notes) == 1
        assert result.curve.evaluate(1.0) > 0.0


class TestErrors:
    def test_bad_fft_size(self, sine_440):
        cfg = PipelineConfig()
        cfg.stage_a.fft_size = 1000
        result = generate_curve(sine_440, SR, cfg)
        assert not result.ok
        assert result.error_kind is ErrorKind.INVALID_CONFIG
        assert result.notes == []
        assert result.curve is None

    def test_inverted_band(self, sine_440):
        cfg = PipelineConfig()
        cfg.stage_b.min_frequency = 3000.0
        result = generate_curve(sine_440, SR, cfg)
        assert result.error_kind is ErrorKind.INVALID_CONFIG

    @pytest.mark.parametrize(
        "tree",
        [
            {"stage_c": {"frequency_tolerance": None}},
            {"stage_b": {"min_frequency": "80"}},
            {"stage_d": {"spike_duration": None}},
        ],
    )
    def test_wrongly_typed_config_value(self, sine_440, tree):
        result = generate_curve(sine_440, SR, PipelineConfig.from_dict(tree))
        assert not result.ok
        assert result.error_kind is ErrorKind.INVALID_CONFIG
        assert result.curve is None

    @pytest.mark.parametrize(
        "samples, sample_rate, kwargs",
        [
            (np.zeros(4096), 0, {}),
            (np.array([0.0, np.nan] * 2048), SR, {}),
            (np.zeros(4096), SR, {"channels": 0}),
            (np.zeros(4096), SR, {"clip_length": -1.0}),
        ],
    )
    def test_invalid_input(self, samples, sample_rate, kwargs):
        result = generate_curve(samples, sample_rate, **kwargs)
        assert not result.ok
        assert result.error_kind is ErrorKind.INVALID_INPUT
        assert result.error_message

    @patch("notecurve.pipeline.generate.render")
    def test_malformed_curve(self, mock_render, sine_440):
        mock_render.side_effect = CurveError("overlap")
        result = generate_curve(sine_440, SR)
        assert not result.ok
        assert result.error_kind is ErrorKind.MALFORMED_CURVE
        mock_render.assert_called_once()


class TestReporting:
    def test_progress_callback(self):
        callback = MagicMock()
        result = generate_curve(signals.sine_tone(440.0, 0.5), SR, progress_callback=callback)
        frames = result.diagnostics["frame_count"]
        assert callback.call_count == frames
        callback.assert_called_with(frames, frames)

    def test_pipeline_logger(self, tmp_path):
        run_log = PipelineLogger(base_dir=str(tmp_path), run_name="run")
        result = generate_curve(signals.sine_tone(440.0, 0.5), SR, pipeline_logger=run_log)
        assert result.ok

        events = [json.loads(line) for line in (tmp_path / "run" / "logs.jsonl").read_text().splitlines()]
        timed = {e["stage"] for e in events if e["event"] == "timing"}
        assert timed == {"stage_a", "stage_b", "stage_c", "stage_d"}
        assert events[-1]["event"] == "complete"

        timing = json.loads((tmp_path / "run" / "timing.json").read_text())
        assert set(timing) == {"stage_a", "stage_b", "stage_c", "stage_d", "total"}

    def test_pipeline_logger_records_errors(self, tmp_path):
        run_log = PipelineLogger(base_dir=str(tmp_path), run_name="run")
        generate_curve(np.zeros(4096), 0, pipeline_logger=run_log)
        events = [json.loads(line) for line in (tmp_path / "run" / "logs.jsonl").read_text().splitlines()]
        assert events[-1]["event"] == "error"
        assert events[-1]["kind"] == "invalid_input"


def test_scenario_runner(tmp_path):
    results = run_scenarios(PipelineConfig(), ["silence", "spike_merge"], str(tmp_path))
    assert all(r["passed"] for r in results.values())
    summary = json.loads((tmp_path / "scenario_summary.json").read_text())
    assert set(summary) == {"silence", "spike_merge"}
