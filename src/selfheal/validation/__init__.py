"""Patch validation in isolated sandboxes."""

from .report import generate_validation_report
from .stages import StageSpec, configured_stages, run_stage
from .validator import PatchValidator, PerformanceSample, classify

__all__ = [
    "PatchValidator",
    "PerformanceSample",
    "StageSpec",
    "classify",
    "configured_stages",
    "generate_validation_report",
    "run_stage",
]
