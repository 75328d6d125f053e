"""Static issue detection."""

from .detector import IssueDetector, summarise
from .parsing import ParsedSource, SourceParseError, parse_source
from .passes import DETECTOR_PASSES, PASS_DISPATCH, DetectorPass, PassDefinition

__all__ = [
    "DETECTOR_PASSES",
    "DetectorPass",
    "IssueDetector",
    "PASS_DISPATCH",
    "ParsedSource",
    "PassDefinition",
    "SourceParseError",
    "parse_source",
    "summarise",
]
