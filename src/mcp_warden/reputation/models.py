"""Data models for the server reputation ledger."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from mcp_warden.config import Settings
from mcp_warden.logging import get_logger
from mcp_warden.security.models import Severity

log = get_logger("mcp_warden.reputation.models")

DEFAULT_SCORE = 700
DEFAULT_CONFIDENCE = 0.7


def _now() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class EventType(StrEnum):
    """Kinds of reputation events."""

    SECURITY_INCIDENT = "security_incident"
    PERFORMANCE_ISSUE = "performance_issue"
    POSITIVE_BEHAVIOR = "positive_behavior"
    MANUAL_REVIEW = "manual_review"

    @classmethod
    def parse(cls, value: Any) -> EventType:
        """Parse *value*; unknown types fall back to ``manual_review``."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            log.warning("unknown_event_type", value=value, fallback=cls.MANUAL_REVIEW.value)
            return cls.MANUAL_REVIEW


class RiskLevel(StrEnum):
    """Risk classification derived from a reputation score."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


@dataclass
class ReputationMetrics:
    """Raw operational and security signals for one server.

    Unobserved ratios start at the midpoint of their range and counters at
    zero, which puts a fresh server at the default score of 700.
    """

    response_time_ms: float = 500.0
    error_rate: float = 0.5  # 0-1, lower is better
    security_incidents: int = 0
    uptime: float = 0.5  # 0-1, higher is better
    community_rating: float | None = 2.5  # 0-5, None when unrated
    compliance_score: float = 0.5  # 0-1
    threat_intel_matches: int = 0


@dataclass
class HistoricalScore:
    timestamp: datetime
    score: int
    reason: str = ""


@dataclass
class RiskFactor:
    """An elevated-risk condition attached to a server."""

    type: str
    severity: Severity
    description: str
    first_seen: datetime
    last_seen: datetime
    is_mitigated: bool = False
    mitigated_at: datetime | None = None
    mitigation_notes: str | None = None


@dataclass
class ReputationScore:
    """Trust score and supporting data for one server."""

    server_id: str
    score: int = DEFAULT_SCORE  # 0-1000, 1000 = fully trusted
    confidence: float = DEFAULT_CONFIDENCE
    last_updated: datetime = field(default_factory=_now)
    metrics: ReputationMetrics = field(default_factory=ReputationMetrics)
    historical_scores: list[HistoricalScore] = field(default_factory=list)
    risk_factors: list[RiskFactor] = field(default_factory=list)

    @property
    def active_risks(self) -> list[RiskFactor]:
        return [rf for rf in self.risk_factors if not rf.is_mitigated]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_updated"] = self.last_updated.isoformat()
        for entry in data["historical_scores"]:
            entry["timestamp"] = entry["timestamp"].isoformat()
        for rf in data["risk_factors"]:
            rf["severity"] = str(rf["severity"])
            rf["first_seen"] = rf["first_seen"].isoformat()
            rf["last_seen"] = rf["last_seen"].isoformat()
            if rf["mitigated_at"] is not None:
                rf["mitigated_at"] = rf["mitigated_at"].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReputationScore:
        return cls(
            server_id=data["server_id"],
            score=int(data["score"]),
            confidence=float(data["confidence"]),
            last_updated=_parse_dt(data["last_updated"]),
            metrics=ReputationMetrics(**data.get("metrics", {})),
            historical_scores=[
                HistoricalScore(
                    timestamp=_parse_dt(h["timestamp"]),
                    score=int(h["score"]),
                    reason=h.get("reason", ""),
                )
                for h in data.get("historical_scores", [])
            ],
            risk_factors=[
                RiskFactor(
                    type=rf["type"],
                    severity=Severity.parse(rf["severity"]),
                    description=rf["description"],
                    first_seen=_parse_dt(rf["first_seen"]),
                    last_seen=_parse_dt(rf["last_seen"]),
                    is_mitigated=bool(rf.get("is_mitigated", False)),
                    mitigated_at=(
                        _parse_dt(rf["mitigated_at"]) if rf.get("mitigated_at") else None
                    ),
                    mitigation_notes=rf.get("mitigation_notes"),
                )
                for rf in data.get("risk_factors", [])
            ],
        )


@dataclass(frozen=True)
class SecurityEvent:
    """An operational or security signal about one server.

    ``score_impact`` is advisory only; the ledger always recomputes the score
    from metrics. Unknown event types and severities are normalised on
    construction.
    """

    server_id: str
    event_type: EventType
    severity: Severity
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    score_impact: int = 0
    timestamp: datetime = field(default_factory=_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_type", EventType.parse(self.event_type))
        object.__setattr__(self, "severity", Severity.parse(self.severity))
        if not isinstance(self.metadata, dict):
            log.warning("event_metadata_ignored", server_id=self.server_id)
            object.__setattr__(self, "metadata", {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "metadata": dict(self.metadata),
            "score_impact": self.score_impact,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ScoringWeights:
    """Relative weight of each normalised metric in the score."""

    response_time: float = 0.15
    error_rate: float = 0.2
    security_incidents: float = 0.3
    uptime: float = 0.15
    community_rating: float = 0.1
    compliance_score: float = 0.15
    threat_intelligence: float = 0.2


@dataclass(frozen=True)
class ScoringCriteria:
    """Weights, tier thresholds and smoothing used by the ledger."""

    weights: ScoringWeights = field(default_factory=ScoringWeights)
    critical_threshold: int = 300
    warning_threshold: int = 600
    medium_threshold: int = 800
    ema_alpha: float = 0.3
    compliance_step: float = 0.1
    history_limit: int = 100
    history_min_delta: int = 10

    @classmethod
    def from_settings(cls, settings: Settings) -> ScoringCriteria:
        return cls(
            weights=ScoringWeights(
                response_time=settings.reputation_weight_response_time,
                error_rate=settings.reputation_weight_error_rate,
                security_incidents=settings.reputation_weight_security_incidents,
                uptime=settings.reputation_weight_uptime,
                community_rating=settings.reputation_weight_community_rating,
                compliance_score=settings.reputation_weight_compliance,
                threat_intelligence=settings.reputation_weight_threat_intelligence,
            ),
            critical_threshold=settings.reputation_critical_threshold,
            warning_threshold=settings.reputation_warning_threshold,
            medium_threshold=settings.reputation_medium_threshold,
            ema_alpha=settings.reputation_ema_alpha,
            history_limit=settings.reputation_history_limit,
        )


@dataclass
class RiskEvaluation:
    risk_level: RiskLevel
    score: int
    confidence: float
    active_risks: list[RiskFactor] = field(default_factory=list)


@dataclass
class ReputationSummary:
    total_servers: int
    average_score: float
    risk_distribution: dict[str, int]
    recent_events: list[SecurityEvent]
