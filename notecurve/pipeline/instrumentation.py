"""Structured run logging for the curve pipeline.

Each run gets a directory holding ``logs.jsonl`` (one event per line) and
``timing.json`` (seconds per stage). Write failures are logged at debug
level and never interrupt an analysis.
"""
from __future__ import annotations

import contextlib
import importlib.util
import json
import logging
import os
import time
from dataclasses import asdict
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class PipelineLogger:
    """Emits JSONL events and per-stage timings for one pipeline run."""

    def __init__(self, base_dir: str = "results", run_name: Optional[str] = None):
        self.base_dir = base_dir
        self.run_name = run_name or f"run_{int(time.time())}"
        self.run_dir = os.path.join(self.base_dir, self.run_name)
        os.makedirs(self.run_dir, exist_ok=True)
        self.logs_path = os.path.join(self.run_dir, "logs.jsonl")
        self.timing_path = os.path.join(self.run_dir, "timing.json")
        self._timing: Dict[str, float] = {}
        self._start_time = time.perf_counter()
        self.log_event(
            "pipeline",
            "start",
            {
                "run_dir": self.run_dir,
                "dependencies": self.dependency_snapshot(["numpy", "librosa", "pandas", "matplotlib"]),
            },
        )

    @staticmethod
    def dependency_snapshot(modules: Optional[List[str]] = None) -> Dict[str, bool]:
        snapshot: Dict[str, bool] = {}
        for name in modules or []:
            try:
                snapshot[name] = importlib.util.find_spec(name) is not None
            except (ImportError, ValueError):
                snapshot[name] = False
        return snapshot

    def log_event(self, stage: str, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        entry: Dict[str, Any] = {"stage": stage, "event": event, "timestamp": time.time()}
        for key, value in (payload or {}).items():
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)
        try:
            with open(self.logs_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as exc:
            logger.debug("Could not write pipeline event: %s", exc)

    def record_timing(self, stage: str, duration_s: float, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._timing[stage] = float(duration_s)
        payload: Dict[str, Any] = {"duration_s": float(duration_s)}
        if metadata:
            payload.update(metadata)
        self.log_event(stage, "timing", payload)

    @contextlib.contextmanager
    def stage_timer(self, stage: str) -> Iterator[Dict[str, Any]]:
        """Time a block; anything put in the yielded dict is logged with the timing."""
        metadata: Dict[str, Any] = {}
        t0 = time.perf_counter()
        try:
            yield metadata
        finally:
            self.record_timing(stage, time.perf_counter() - t0, metadata)

    def emit_config(self, stage: str, config_obj: Any, extras: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {}
        try:
            payload["config"] = asdict(config_obj)
        except TypeError:
            payload["config"] = str(config_obj)
        if extras:
            payload.update(extras)
        self.log_event(stage, "config", payload)

    def finalize(self) -> None:
        if "total" not in self._timing:
            self._timing["total"] = float(time.perf_counter() - self._start_time)
        try:
            with open(self.timing_path, "w", encoding="utf-8") as f:
                json.dump(self._timing, f, indent=2)
        except OSError as exc:
            logger.debug("Could not write timing summary: %s", exc)

    @property
    def timing(self) -> Dict[str, float]:
        return dict(self._timing)
