"""Data models for payload injection detection."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from mcp_warden.logging import get_logger

log = get_logger("mcp_warden.security.models")


class Severity(StrEnum):
    """Severity shared by patterns, events and violations."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: Any, default: Severity | None = None) -> Severity:
        """Parse *value* into a severity, falling back to ``medium``."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            fallback = default or cls.MEDIUM
            log.warning("unknown_severity", value=value, fallback=fallback.value)
            return fallback

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


class InjectionType(StrEnum):
    """Categories of detected injection attempts."""

    DIRECT_PROMPT_INJECTION = "direct_prompt_injection"
    INDIRECT_PROMPT_INJECTION = "indirect_prompt_injection"
    CONTEXT_POISONING = "context_poisoning"
    ROLE_IMPERSONATION = "role_impersonation"
    TOKEN_SMUGGLING = "token_smuggling"  # nosec B105
    ENCODING_EVASION = "encoding_evasion"
    HEURISTIC_MATCH = "heuristic_match"


@dataclass
class Span:
    """Character offsets of a match inside the scanned payload."""

    start: int
    end: int


@dataclass
class DetectionFinding:
    """A single finding produced by one scan."""

    category: InjectionType
    confidence: float  # 0.0 - 1.0
    description: str
    span: Span | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "confidence": round(self.confidence, 4),
            "description": self.description,
            "span": {"start": self.span.start, "end": self.span.end} if self.span else None,
            "metadata": dict(self.metadata),
        }


@dataclass
class DetectionResult:
    """Verdict for one payload."""

    is_malicious: bool = False
    confidence: float = 0.0
    findings: list[DetectionFinding] = field(default_factory=list)
    risk_score: float = 0.0
    truncated: bool = False
    explanation: str = ""

    @property
    def categories(self) -> list[InjectionType]:
        """Distinct finding categories in detection order."""
        seen: list[InjectionType] = []
        for finding in self.findings:
            if finding.category not in seen:
                seen.append(finding.category)
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_malicious": self.is_malicious,
            "confidence": round(self.confidence, 4),
            "risk_score": round(self.risk_score, 4),
            "truncated": self.truncated,
            "explanation": self.explanation,
            "findings": [f.to_dict() for f in self.findings],
        }
