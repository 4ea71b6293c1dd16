import argparse
import copy
import json
import logging
import os
import sys

import librosa
import numpy as np
import pandas as pd

from notecurve.pipeline.config import PRESETS, apply_overrides, load_config
from notecurve.pipeline.errors import ConfigError
from notecurve.pipeline.generate import generate_curve
from notecurve.pipeline.instrumentation import PipelineLogger
from notecurve.pipeline.models import CurveShape, TrackingStrategy
from notecurve.pipeline.validation import dump_resolved_config

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Turn an audio clip into note events and a keyframe curve")
    parser.add_argument("--audio_path", required=True, help="Path to input audio file")
    parser.add_argument("--output_json", default="curve.json", help="Output curve JSON path")
    parser.add_argument("--output_notes", default="notes.csv", help="Output notes CSV path")
    parser.add_argument("--preset", choices=sorted(PRESETS), default="default", help="Base configuration")
    parser.add_argument("--config", help="JSON file merged over the preset")
    parser.add_argument("--strategy", choices=[s.value for s in TrackingStrategy], help="Tracking strategy")
    parser.add_argument("--shape", choices=[s.value for s in CurveShape], help="Curve shape")
    parser.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Dotted-path override, e.g. stage_b.peak_threshold=0.02 (repeatable)",
    )
    parser.add_argument("--log_dir", help="Write JSONL run logs and timings under this directory")
    return parser.parse_args(argv)


def parse_override(item):
    key, sep, raw = item.partition("=")
    if not sep or not key:
        raise ValueError(f"override must look like KEY=VALUE, got {item!r}")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return key.strip(), value


def build_config(args):
    config = copy.deepcopy(PRESETS[args.preset])
    if args.config:
        config = load_config(args.config, base=config)
    overrides = dict(parse_override(item) for item in args.overrides)
    if args.strategy:
        overrides["stage_c.strategy"] = args.strategy
    if args.shape:
        overrides["stage_d.shape"] = args.shape
    applied = apply_overrides(config, overrides)
    if applied:
        logger.info(f"Applied overrides: {applied}")
    return config


def load_audio(path):
    """Decode at the native rate; multichannel audio comes back interleaved."""
    y, sr = librosa.load(path, sr=None, mono=False)
    if y.ndim == 1:
        return y, sr, 1
    return np.ascontiguousarray(y.T).reshape(-1), sr, y.shape[0]


def main(argv=None):
    args = parse_args(argv)

    logger.info(f"Generating curve for {args.audio_path}")

    if not os.path.exists(args.audio_path):
        logger.error(f"Audio file not found: {args.audio_path}")
        return 1

    try:
        config = build_config(args)
    except (ConfigError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    logger.info("Loading audio...")
    try:
        samples, sr, channels = load_audio(args.audio_path)
    except Exception as e:
        logger.error(f"Failed to load audio: {e}")
        return 1

    pipeline_logger = PipelineLogger(base_dir=args.log_dir) if args.log_dir else None
    result = generate_curve(samples, sr, config, channels=channels, pipeline_logger=pipeline_logger)
    if not result.ok:
        logger.error(f"Analysis failed ({result.error_kind.value}): {result.error_message}")
        return 2

    logger.info(f"Total notes extracted: {len(result.notes)}")
    if args.log_dir:
        dump_resolved_config(config, result.diagnostics, run_dir=args.log_dir)

    columns = ["time", "frequency", "energy", "duration"]
    notes_df = pd.DataFrame([n.as_dict() for n in result.notes], columns=columns)
    notes_df.to_csv(args.output_notes, index=False)
    logger.info(f"Written notes to {args.output_notes}")

    with open(args.output_json, "w") as f:
        json.dump(result.curve.to_dict(), f, indent=2)
    logger.info(f"Written curve ({len(result.curve)} keyframes) to {args.output_json}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
