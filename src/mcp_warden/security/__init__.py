"""Payload inspection - pattern catalog plus term heuristics.

Public API
----------
- :class:`InjectionDetector` - scan a payload, returns :class:`DetectionResult`
- :class:`PatternCatalog`, :class:`InjectionPattern` - detection rules
- :class:`Severity`, :class:`InjectionType` - shared enums
"""

from mcp_warden.security.detector import (
    DEFAULT_HEURISTIC_TERMS,
    DetectorConfig,
    InjectionDetector,
    calculate_confidence,
    calculate_risk_score,
    severity_confidence,
    severity_weight,
)
from mcp_warden.security.models import (
    DetectionFinding,
    DetectionResult,
    InjectionType,
    Severity,
    Span,
)
from mcp_warden.security.patterns import (
    DEFAULT_PATTERNS,
    InjectionPattern,
    PatternCatalog,
    default_catalog,
)

__all__ = [
    "DEFAULT_HEURISTIC_TERMS",
    "DEFAULT_PATTERNS",
    "DetectionFinding",
    "DetectionResult",
    "DetectorConfig",
    "InjectionDetector",
    "InjectionPattern",
    "InjectionType",
    "PatternCatalog",
    "Severity",
    "Span",
    "calculate_confidence",
    "calculate_risk_score",
    "default_catalog",
    "severity_confidence",
    "severity_weight",
]
