import argparse
import copy
import datetime
import json
import os
from typing import Any, Callable, Dict, List

import numpy as np

from notecurve.benchmarks import signals
from notecurve.pipeline.config import PRESETS, PipelineConfig
from notecurve.pipeline.generate import generate_curve
from notecurve.pipeline.instrumentation import PipelineLogger
from notecurve.pipeline.models import NoteEvent
from notecurve.pipeline.stage_d import merge_notes


class NumpyEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, np.integer):
            return int(obj)
        elif isinstance(obj, np.floating):
            return float(obj)
        elif isinstance(obj, np.ndarray):
            return obj.tolist()
        return super(NumpyEncoder, self).default(obj)


def _near(value: float, target: float, rel: float) -> bool:
    return abs(value - target) <= rel * target


def scenario_sine_440(config: PipelineConfig) -> Dict[str, Any]:
    result = generate_curve(signals.sine_tone(440.0, 2.0), signals.SAMPLE_RATE, config)
    notes = result.notes
    passed = (
        result.ok
        and len(notes) == 1
        and _near(notes[0].frequency, 440.0, 0.01)
        and notes[0].duration >= 1.9
    )
    return {"passed": passed, "notes": [n.as_dict() for n in notes], "diagnostics": result.diagnostics}


def scenario_two_tones(config: PipelineConfig) -> Dict[str, Any]:
    result = generate_curve(signals.chord([220.0, 440.0], 1.0), signals.SAMPLE_RATE, config)
    freqs = sorted(n.frequency for n in result.notes)
    passed = (
        result.ok
        and len(freqs) == 2
        and _near(freqs[0], 220.0, 0.02)
        and _near(freqs[1], 440.0, 0.02)
    )
    return {"passed": passed, "notes": [n.as_dict() for n in result.notes], "diagnostics": result.diagnostics}


def scenario_tone_burst(config: PipelineConfig) -> Dict[str, Any]:
    result = generate_curve(signals.tone_burst(440.0, 0.1, 0.5), signals.SAMPLE_RATE, config)
    notes = result.notes
    passed = result.ok and len(notes) == 1 and 0.05 <= notes[0].duration <= 0.15
    return {"passed": passed, "notes": [n.as_dict() for n in notes], "diagnostics": result.diagnostics}


def scenario_silence(config: PipelineConfig) -> Dict[str, Any]:
    result = generate_curve(signals.silence(1.0), signals.SAMPLE_RATE, config)
    passed = (
        result.ok
        and not result.notes
        and result.diagnostics.get("peak_count") == 0
        and result.curve.as_tuples() == [(0.0, 0.0, 0.0, 0.0), (1.0, 0.0, 0.0, 0.0)]
    )
    return {"passed": passed, "notes": [], "diagnostics": result.diagnostics}


def scenario_spike_merge(config: PipelineConfig) -> Dict[str, Any]:
    notes = [NoteEvent(1.0, 440.0, 1.0), NoteEvent(1.05, 440.0, 3.0)]
    merged = merge_notes(notes, config.stage_d.spike_duration, config.stage_c.frequency_tolerance)
    passed = (
        len(merged) == 1
        and np.isclose(merged[0].energy, 4.0)
        and np.isclose(merged[0].frequency, 440.0)
        and merge_notes(merged, config.stage_d.spike_duration, config.stage_c.frequency_tolerance) == merged
    )
    return {"passed": bool(passed), "notes": [n.as_dict() for n in merged], "diagnostics": {}}


SCENARIOS: Dict[str, Callable[[PipelineConfig], Dict[str, Any]]] = {
    "sine_440": scenario_sine_440,
    "two_tones": scenario_two_tones,
    "tone_burst": scenario_tone_burst,
    "silence": scenario_silence,
    "spike_merge": scenario_spike_merge,
}


def run_scenarios(config: PipelineConfig, names: List[str], output_dir: str) -> Dict[str, Any]:
    """Run the named scenarios, timing each one, and write a summary JSON."""
    os.makedirs(output_dir, exist_ok=True)
    run_log = PipelineLogger(base_dir=output_dir, run_name="scenarios")
    results: Dict[str, Any] = {}

    for name in names:
        print(f"Running scenario: {name}")
        with run_log.stage_timer(name) as meta:
            res = SCENARIOS[name](copy.deepcopy(config))
            meta["passed"] = res["passed"]
            meta["notes"] = len(res["notes"])
        res["seconds"] = run_log.timing[name]
        results[name] = res
        print(f"  {'PASS' if res['passed'] else 'FAIL'} ({len(res['notes'])} notes, {res['seconds']:.3f}s)")

    run_log.finalize()
    with open(os.path.join(output_dir, "scenario_summary.json"), "w") as f:
        json.dump(results, f, indent=2, cls=NumpyEncoder)
    return results


def main():
    parser = argparse.ArgumentParser(description="Run the reference signal scenarios")
    parser.add_argument("--scenario", choices=sorted(SCENARIOS), action="append",
                        help="Run only this scenario (repeatable)")
    parser.add_argument("--preset", choices=sorted(PRESETS), default="default")
    parser.add_argument("--output-dir", default=None)
    args = parser.parse_args()

    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    output_dir = args.output_dir or f"results/scenarios_{timestamp}"
    names = args.scenario or list(SCENARIOS)

    results = run_scenarios(PRESETS[args.preset], names, output_dir)
    failed = [n for n, r in results.items() if not r["passed"]]
    print(f"{len(results) - len(failed)}/{len(results)} scenarios passed. Results in {output_dir}")
    if failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
