"""Prompt-injection detector for MCP payloads.

Two phases run against every payload:

1. Pattern phase: every matcher of every catalog pattern is searched; each
   hit becomes a finding whose confidence is fixed by the pattern severity.
2. Heuristic phase (optional): a table of suspicious terms is checked for
   presence; if the summed weight exceeds 1.0 one heuristic finding is added.

The aggregate risk score mixes the summed weighted finding scores with the
single worst finding, so one critical match always scores at least 0.95
while a lone low-severity match stays well under the default threshold.

Payloads longer than ``max_context_length`` are truncated before scanning.
Anything past the cut-off is not inspected; this bounds latency and is a
known blind spot, not a security control.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from mcp_warden.config import Settings
from mcp_warden.logging import get_logger
from mcp_warden.security.forensics import log_detection_event
from mcp_warden.security.models import (
    DetectionFinding,
    DetectionResult,
    InjectionType,
    Severity,
    Span,
)
from mcp_warden.security.patterns import InjectionPattern, PatternCatalog, default_catalog

log = get_logger("mcp_warden.security.detector")

SEVERITY_CONFIDENCE: dict[Severity, float] = {
    Severity.CRITICAL: 0.95,
    Severity.HIGH: 0.85,
    Severity.MEDIUM: 0.65,
    Severity.LOW: 0.4,
}
DEFAULT_CONFIDENCE = 0.5

SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.LOW: 0.3,
    Severity.MEDIUM: 0.6,
    Severity.HIGH: 0.9,
    Severity.CRITICAL: 1.0,
}

DEFAULT_HEURISTIC_TERMS: dict[str, float] = {
    "ignore": 0.8,
    "disregard": 0.8,
    "previous": 0.6,
    "instructions": 0.7,
    "pretend": 0.7,
    "role": 0.5,
    "act as": 0.8,
    "from now on": 0.7,
    "forget": 0.8,
}

_HEURISTIC_TRIGGER = 1.0
_HEURISTIC_MAX_CONFIDENCE = 0.9
_TOKEN_RE = re.compile(r"[a-z0-9']+")


def severity_confidence(severity: Any) -> float:
    """Map a pattern severity to a finding confidence (unknown -> 0.5)."""
    try:
        return SEVERITY_CONFIDENCE.get(Severity(severity), DEFAULT_CONFIDENCE)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE


def severity_weight(severity: Any) -> float:
    """Map a finding severity to its aggregation weight (unknown -> medium)."""
    try:
        return SEVERITY_WEIGHTS.get(Severity(severity), SEVERITY_WEIGHTS[Severity.MEDIUM])
    except (TypeError, ValueError):
        return SEVERITY_WEIGHTS[Severity.MEDIUM]


@dataclass(frozen=True)
class DetectorConfig:
    """Tunable detector parameters."""

    threshold: float = 0.7
    max_context_length: int = 4000
    enable_heuristics: bool = True
    heuristic_terms: Mapping[str, float] = field(
        default_factory=lambda: dict(DEFAULT_HEURISTIC_TERMS)
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> DetectorConfig:
        return cls(
            threshold=settings.detector_threshold,
            max_context_length=settings.detector_max_context_length,
            enable_heuristics=settings.detector_enable_heuristics,
        )


class InjectionDetector:
    """Scan text payloads against a pattern catalog and a term heuristic.

    The detector holds no per-call state; the only shared mutable piece is
    the catalog, which is safe to modify while scans are running.
    """

    def __init__(
        self,
        config: DetectorConfig | None = None,
        catalog: PatternCatalog | None = None,
    ) -> None:
        self._config = config or DetectorConfig()
        self._catalog = catalog if catalog is not None else default_catalog()

    @property
    def config(self) -> DetectorConfig:
        return self._config

    @property
    def catalog(self) -> PatternCatalog:
        return self._catalog

    def add_pattern(self, pattern: InjectionPattern) -> bool:
        """Register a pattern (replaces one with the same name)."""
        return self._catalog.add(pattern)

    def remove_pattern(self, name: str) -> bool:
        return self._catalog.remove(name)

    def get_pattern(self, name: str) -> InjectionPattern | None:
        return self._catalog.get(name)

    def list_patterns(self) -> list[InjectionPattern]:
        return list(self._catalog)

    def update_config(self, **changes: Any) -> DetectorConfig:
        """Replace config fields, e.g. ``update_config(threshold=0.5)``."""
        self._config = replace(self._config, **changes)
        log.info("detector_config_updated", changes=sorted(changes))
        return self._config

    def detect(
        self,
        payload: Any,
        config: DetectorConfig | None = None,
        *,
        server_id: str | None = None,
        request_id: str = "",
    ) -> DetectionResult:
        """Scan *payload* and return a :class:`DetectionResult`.

        Never raises: malformed input is coerced to text, and a failure in
        either phase is logged and yields whatever findings were collected.
        """
        cfg = config or self._config
        text = _coerce_text(payload)

        truncated = False
        if cfg.max_context_length > 0 and len(text) > cfg.max_context_length:
            text = text[: cfg.max_context_length]
            truncated = True

        findings: list[DetectionFinding] = []
        try:
            findings.extend(self._check_patterns(text))
            if cfg.enable_heuristics:
                findings.extend(_apply_heuristics(text, cfg.heuristic_terms))
        except Exception as e:
            log.error("detection_failed", server_id=server_id, error=str(e))

        risk_score = calculate_risk_score(findings)
        result = DetectionResult(
            is_malicious=bool(findings) and risk_score >= cfg.threshold,
            confidence=calculate_confidence(findings),
            findings=findings,
            risk_score=risk_score,
            truncated=truncated,
            explanation=_explain(findings, risk_score, truncated),
        )

        if result.is_malicious:
            log_detection_event(
                payload=text, result=result, server_id=server_id, request_id=request_id
            )
        return result

    def _check_patterns(self, text: str) -> list[DetectionFinding]:
        findings: list[DetectionFinding] = []
        for compiled in self._catalog.snapshot():
            pattern = compiled.pattern
            confidence = severity_confidence(pattern.severity)
            for regex in compiled.regexes:
                try:
                    match = regex.search(text)
                except Exception as e:
                    log.warning("matcher_failed", pattern=pattern.name, error=str(e))
                    continue
                if not match:
                    continue
                findings.append(
                    DetectionFinding(
                        category=compiled.category,
                        confidence=confidence,
                        description=f"Detected {pattern.name}: {pattern.description}",
                        span=Span(start=match.start(), end=match.end()),
                        metadata={
                            "pattern": pattern.name,
                            "matched_text": match.group(0)[:100],
                            "severity": str(pattern.severity),
                            "mitigation": pattern.mitigation,
                        },
                    )
                )
        return findings


def _coerce_text(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bytes | bytearray):
        return bytes(payload).decode("utf-8", errors="replace")
    try:
        return str(payload)
    except Exception:
        log.warning("payload_not_text", payload_type=type(payload).__name__)
        return ""


def _apply_heuristics(text: str, terms: Mapping[str, float]) -> list[DetectionFinding]:
    """Presence-weighted suspicious-term check (not frequency-weighted)."""
    tokens = _TOKEN_RE.findall(text.lower())
    if not tokens:
        return []
    token_set = set(tokens)
    phrase_text = f" {' '.join(tokens)} "

    score = 0.0
    matched_terms: list[str] = []
    for term, weight in terms.items():
        term = term.lower().strip()
        present = f" {term} " in phrase_text if " " in term else term in token_set
        if present:
            score += weight
            matched_terms.append(term)

    if score <= _HEURISTIC_TRIGGER:
        return []
    return [
        DetectionFinding(
            category=InjectionType.HEURISTIC_MATCH,
            confidence=min(_HEURISTIC_MAX_CONFIDENCE, score / 2),
            description=f"Suspicious terms detected: {', '.join(matched_terms)}",
            metadata={"score": round(score, 4), "terms": matched_terms},
        )
    ]


def calculate_risk_score(findings: list[DetectionFinding]) -> float:
    """Aggregate findings into a 0-1 risk score.

    Each finding contributes ``confidence * severity_weight`` (severity from
    its metadata, ``medium`` when absent). The score is 0.7 of the summed
    contributions plus 0.3 of the largest one, capped at 1.0.
    """
    if not findings:
        return 0.0
    total = 0.0
    worst = 0.0
    for finding in findings:
        weighted = finding.confidence * severity_weight(finding.metadata.get("severity", "medium"))
        total += weighted
        worst = max(worst, weighted)
    return min(1.0, total * 0.7 + worst * 0.3)


def calculate_confidence(findings: list[DetectionFinding]) -> float:
    """Mean finding confidence (0 when there are none)."""
    if not findings:
        return 0.0
    return min(1.0, sum(f.confidence for f in findings) / len(findings))


def _explain(findings: list[DetectionFinding], risk_score: float, truncated: bool) -> str:
    if not findings:
        text = "No injection indicators found"
    else:
        names = sorted({str(f.metadata.get("pattern", f.category.value)) for f in findings})
        text = f"{len(findings)} finding(s) ({', '.join(names)}), risk score {risk_score:.2f}"
    if truncated:
        text += "; payload truncated before scanning"
    return text
