import copy
import json
import logging

import pytest

from notecurve.pipeline.config import (
    DEFAULT_CONFIG,
    LEGACY_SPIKE_CONFIG,
    PRESETS,
    SUSTAINED_CONFIG,
    PipelineConfig,
    apply_overrides,
    load_config,
    validate_config,
)
from notecurve.pipeline.errors import ConfigError, ErrorKind


class TestValidateConfig:
    def test_defaults_are_valid(self):
        for cfg in PRESETS.values():
            validate_config(cfg)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"stage_a.fft_size": 1000},
            {"stage_a.fft_size": 2},
            {"stage_a.overlap_factor": 0.95},
            {"stage_a.fft_size": 4, "stage_a.overlap_factor": 0.9},
            {"stage_a.window_type": "kaiser"},
            {"stage_b.min_frequency": 0.0},
            {"stage_b.min_frequency": 2000.0},
            {"stage_b.peak_threshold": -1.0},
            {"stage_b.max_peaks_per_frame": 0},
            {"stage_c.strategy": "bogus"},
            {"stage_c.min_track_length": 0},
            {"stage_c.track_decay_time": -0.1},
            {"stage_d.shape": "square"},
            {"stage_d.overlap_policy": "ignore"},
            {"stage_d.spike_duration": -1.0},
            {"stage_d.merge_frequency_tolerance": -0.1},
            {"stage_a.overlap_factor": None},
            {"stage_b.min_frequency": "80"},
            {"stage_b.peak_threshold": float("nan")},
            {"stage_b.max_peaks_per_frame": True},
            {"stage_c.frequency_tolerance": None},
            {"stage_c.background": [0.2, 0.5]},
            {"stage_c.background.window_sec": "0.5"},
            {"stage_d.peak_duration": "0.1"},
            {"stage_d.merge_frequency_tolerance": "0.05"},
        ],
    )
    def test_rejects(self, overrides):
        cfg = PipelineConfig()
        apply_overrides(cfg, overrides)
        with pytest.raises(ConfigError) as err:
            validate_config(cfg)
        assert err.value.kind is ErrorKind.INVALID_CONFIG
        assert isinstance(err.value, ValueError)

    def test_json_null_is_rejected(self):
        cfg = PipelineConfig.from_dict({"stage_c": {"frequency_tolerance": None}})
        with pytest.raises(ConfigError, match="frequency_tolerance"):
            validate_config(cfg)


class TestFromDict:
    def test_partial_tree_merges_over_defaults(self):
        cfg = PipelineConfig.from_dict({"stage_b": {"peak_threshold": 0.05}})
        assert cfg.stage_b.peak_threshold == 0.05
        assert cfg.stage_b.max_peaks_per_frame == 10
        assert cfg.stage_a == DEFAULT_CONFIG.stage_a

    def test_nested_dict_merges(self):
        cfg = PipelineConfig.from_dict({"stage_c": {"background": {"window_sec": 1.0}}})
        assert cfg.stage_c.background == {"freq_range": 0.2, "window_sec": 1.0}

    def test_unknown_keys_are_ignored(self, caplog):
        with caplog.at_level(logging.WARNING):
            cfg = PipelineConfig.from_dict({"stage_b": {"bogus": 1}, "stage_z": {}})
        assert not hasattr(cfg.stage_b, "bogus")
        assert "bogus" in caplog.text
        assert "stage_z" in caplog.text

    def test_section_must_be_object(self):
        with pytest.raises(ConfigError):
            PipelineConfig.from_dict({"stage_a": 1024})

    def test_base_is_not_mutated(self):
        before = copy.deepcopy(LEGACY_SPIKE_CONFIG)
        cfg = PipelineConfig.from_dict({"stage_d": {"spike_duration": 0.3}}, base=LEGACY_SPIKE_CONFIG)
        assert cfg.stage_d.spike_duration == 0.3
        assert cfg.stage_d.shape == "spike"
        assert LEGACY_SPIKE_CONFIG == before

    def test_to_dict_round_trip(self):
        assert PipelineConfig.from_dict(SUSTAINED_CONFIG.to_dict()) == SUSTAINED_CONFIG


class TestLoadConfig:
    def test_load(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"stage_a": {"fft_size": 2048}}))
        cfg = load_config(path)
        assert cfg.stage_a.fft_size == 2048
        assert cfg.hop_size == 512

    def test_bad_json(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "missing.json")


class TestOverrides:
    def test_applied_and_unknown(self):
        cfg = PipelineConfig()
        applied = apply_overrides(cfg, {"stage_b.peak_threshold": 0.02, "stage_b.nope": 1, "stage_q.x": 2})
        assert applied == {"stage_b.peak_threshold": 0.02}
        assert cfg.stage_b.peak_threshold == 0.02

    def test_dict_field(self):
        cfg = PipelineConfig()
        apply_overrides(cfg, {"stage_c.background.window_sec": 0.25})
        assert cfg.stage_c.background["window_sec"] == 0.25

    def test_presets(self):
        assert LEGACY_SPIKE_CONFIG.stage_c.strategy == "frequency"
        assert LEGACY_SPIKE_CONFIG.stage_d.shape == "spike"
        assert SUSTAINED_CONFIG.stage_c.strategy == "sustained"
        assert DEFAULT_CONFIG.stage_c.strategy == "onset"
