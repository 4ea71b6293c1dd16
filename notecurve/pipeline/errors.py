"""Typed failures raised by pipeline stages.

Stages raise; ``generate.generate_curve`` converts these into an
``AnalysisResult`` carrying the ``ErrorKind`` so callers never receive a
silently empty curve for a bad request.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    INVALID_CONFIG = "invalid_config"
    INVALID_INPUT = "invalid_input"
    MALFORMED_CURVE = "malformed_curve"


class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(self, message: str, kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ConfigError(PipelineError, ValueError):
    kind = ErrorKind.INVALID_CONFIG


class InputError(PipelineError, ValueError):
    kind = ErrorKind.INVALID_INPUT


class CurveError(PipelineError):
    """Keyframes would break strictly increasing time order."""

    kind = ErrorKind.MALFORMED_CURVE
