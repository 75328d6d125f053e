"""Patch generation: prompting, diff extraction, scoring and ranking."""

from .generator import PatchGenerator, PatchReview, format_patch_for_review
from .ratelimit import TokenBucket
from .scoring import (
    ConfidenceBreakdown,
    SafetyReport,
    breaking_changes,
    compile_denylist,
    extract_dependencies,
    extract_explanation,
    safety_score,
    score_confidence,
)

__all__ = [
    "ConfidenceBreakdown",
    "PatchGenerator",
    "PatchReview",
    "SafetyReport",
    "TokenBucket",
    "breaking_changes",
    "compile_denylist",
    "extract_dependencies",
    "extract_explanation",
    "format_patch_for_review",
    "safety_score",
    "score_confidence",
]
