"""Server reputation ledger.

Public API
----------
- :class:`ReputationLedger` - per-server trust scores driven by events
- :func:`calculate_score` - weighted 0-1000 score from raw metrics
- :class:`SecurityEvent`, :class:`EventType` - ledger input
"""

from mcp_warden.reputation.ledger import ReputationLedger, calculate_score, normalize_metrics
from mcp_warden.reputation.models import (
    DEFAULT_CONFIDENCE,
    DEFAULT_SCORE,
    EventType,
    HistoricalScore,
    ReputationMetrics,
    ReputationScore,
    ReputationSummary,
    RiskEvaluation,
    RiskFactor,
    RiskLevel,
    ScoringCriteria,
    ScoringWeights,
    SecurityEvent,
)

__all__ = [
    "DEFAULT_CONFIDENCE",
    "DEFAULT_SCORE",
    "EventType",
    "HistoricalScore",
    "ReputationLedger",
    "ReputationMetrics",
    "ReputationScore",
    "ReputationSummary",
    "RiskEvaluation",
    "RiskFactor",
    "RiskLevel",
    "ScoringCriteria",
    "ScoringWeights",
    "SecurityEvent",
    "calculate_score",
    "normalize_metrics",
]
