"""Per-server reputation ledger.

The score is never nudged by deltas. Events mutate the raw metrics and the
score is recomputed from the metrics every time, so the same metrics always
produce the same score under the same weights.
"""

from __future__ import annotations

import copy
import math
from collections import deque
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from mcp_warden.concurrency import KeyedLock
from mcp_warden.config import Settings
from mcp_warden.logging import get_logger
from mcp_warden.reputation.models import (
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
from mcp_warden.security.models import Severity
from mcp_warden.storage import (
    RecordStore,
    load_all_best_effort,
    load_best_effort,
    save_best_effort,
)

log = get_logger("mcp_warden.reputation.ledger")

_RISK_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})
_MAX_CONFIDENCE = 0.99
_CONFIDENCE_STEP = 0.005
_MITIGATION_SCORE_IMPACT = 20


def normalize_metrics(metrics: ReputationMetrics) -> dict[str, float]:
    """Map every metric to 0-1 where higher is better."""
    rating = metrics.community_rating if metrics.community_rating is not None else 3.0
    return {
        "response_time": 1 - min(1.0, max(0.0, metrics.response_time_ms) / 1000),
        "error_rate": 1 - _clamp01(metrics.error_rate),
        "security_incidents": 1 - min(1.0, max(0, metrics.security_incidents) / 10),
        "uptime": _clamp01(metrics.uptime),
        "community_rating": _clamp01(rating / 5),
        "compliance_score": _clamp01(metrics.compliance_score),
        "threat_intelligence": 1 - min(1.0, max(0, metrics.threat_intel_matches) / 5),
    }


def calculate_score(metrics: ReputationMetrics, weights: ScoringWeights | None = None) -> int:
    """Weighted 0-1000 score for *metrics*.

    Weights are relative: the weighted sum is divided by the total weight
    before scaling, so they need not add up to 1.
    """
    weights = weights or ScoringWeights()
    normalized = normalize_metrics(metrics)
    total_weight = 0.0
    weighted = 0.0
    for key, value in normalized.items():
        weight = getattr(weights, key)
        weighted += value * weight
        total_weight += weight
    if total_weight <= 0:
        return 0
    return max(0, min(1000, round(weighted / total_weight * 1000)))


class ReputationLedger:
    """Maintain a :class:`ReputationScore` per server."""

    def __init__(
        self,
        criteria: ScoringCriteria | None = None,
        *,
        store: RecordStore | None = None,
        store_timeout: float = 2.0,
        event_history_limit: int = 1000,
    ) -> None:
        self._criteria = criteria or ScoringCriteria()
        self._store = store
        self._store_timeout = store_timeout
        self._scores: dict[str, ReputationScore] = {}
        self._events: deque[SecurityEvent] = deque(maxlen=event_history_limit)
        self._locks = KeyedLock()

    @classmethod
    def from_settings(
        cls, settings: Settings, store: RecordStore | None = None
    ) -> ReputationLedger:
        return cls(
            ScoringCriteria.from_settings(settings),
            store=store,
            store_timeout=settings.store_timeout_seconds,
            event_history_limit=settings.reputation_event_history_limit,
        )

    @property
    def criteria(self) -> ScoringCriteria:
        return self._criteria

    def calculate_score(self, metrics: ReputationMetrics) -> int:
        return calculate_score(metrics, self._criteria.weights)

    async def update(self, event: SecurityEvent) -> ReputationScore:
        """Apply *event* to the server's metrics and recompute its score.

        Returns:
            The updated :class:`ReputationScore`.
        """
        async with self._locks.hold(event.server_id):
            entry = await self._fetch_or_create(event.server_id)
            now = datetime.now(UTC)

            self._apply_metrics(entry.metrics, event)
            if event.severity in _RISK_SEVERITIES:
                self._upsert_risk_factor(entry, event, now)

            previous = entry.score
            entry.score = self.calculate_score(entry.metrics)
            entry.last_updated = now

            if abs(entry.score - previous) > self._criteria.history_min_delta:
                entry.historical_scores.append(
                    HistoricalScore(
                        timestamp=now,
                        score=entry.score,
                        reason=f"Updated due to: {event.event_type} ({event.severity})",
                    )
                )
                overflow = len(entry.historical_scores) - self._criteria.history_limit
                if overflow > 0:
                    del entry.historical_scores[:overflow]

            entry.confidence = min(
                _MAX_CONFIDENCE,
                0.7 + _CONFIDENCE_STEP * len(entry.historical_scores),
            )
            self._events.append(event)
            snapshot = entry.to_dict()
            result = copy.deepcopy(entry)

        log.info(
            "reputation_updated",
            server_id=event.server_id,
            event_type=event.event_type.value,
            severity=event.severity.value,
            previous_score=previous,
            score=result.score,
        )
        await save_best_effort(
            self._store, event.server_id, snapshot, timeout=self._store_timeout
        )
        return result

    def get(self, server_id: str) -> ReputationScore | None:
        """Copy of the entry for *server_id*, if any."""
        entry = self._scores.get(server_id)
        return copy.deepcopy(entry) if entry is not None else None

    def list_scores(self) -> list[ReputationScore]:
        return [copy.deepcopy(entry) for entry in self._scores.values()]

    def evaluate_risk(self, server_id: str) -> RiskEvaluation:
        """Classify a server by its current score.

        Boundaries are exclusive on the lower side: a score equal to the
        critical threshold is ``high``, not ``critical``.
        """
        entry = self._scores.get(server_id)
        if entry is None:
            return RiskEvaluation(risk_level=RiskLevel.UNKNOWN, score=0, confidence=0.0)
        return RiskEvaluation(
            risk_level=self.classify(entry.score),
            score=entry.score,
            confidence=entry.confidence,
            active_risks=[replace(rf) for rf in entry.active_risks],
        )

    def classify(self, score: int) -> RiskLevel:
        if score < self._criteria.critical_threshold:
            return RiskLevel.CRITICAL
        if score < self._criteria.warning_threshold:
            return RiskLevel.HIGH
        if score < self._criteria.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    async def mitigate(self, server_id: str, risk_type: str, notes: str) -> bool:
        """Mark the open risk factor of *risk_type* as mitigated.

        The factor is kept (with a mitigation note) and a ``positive_behavior``
        event is applied afterwards.

        Returns:
            False if there is no entry or no open factor of that type.
        """
        async with self._locks.hold(server_id):
            entry = self._scores.get(server_id)
            if entry is None:
                return False
            factor = next(
                (rf for rf in entry.risk_factors if rf.type == risk_type and not rf.is_mitigated),
                None,
            )
            if factor is None:
                return False
            now = datetime.now(UTC)
            factor.is_mitigated = True
            factor.mitigated_at = now
            factor.mitigation_notes = notes
            factor.description = (
                f"{factor.description} \n\nMitigated at {now.isoformat()}: {notes}"
            )

        log.info("risk_mitigated", server_id=server_id, risk_type=risk_type)
        await self.update(
            SecurityEvent(
                server_id=server_id,
                event_type=EventType.POSITIVE_BEHAVIOR,
                severity=Severity.INFO,
                description=f"Risk mitigated: {risk_type}",
                score_impact=_MITIGATION_SCORE_IMPACT,
            )
        )
        return True

    def recent_events(self, limit: int = 10, server_id: str | None = None) -> list[SecurityEvent]:
        events = [e for e in self._events if server_id is None or e.server_id == server_id]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def summary(self) -> ReputationSummary:
        scores = list(self._scores.values())
        distribution = {level.value: 0 for level in RiskLevel if level != RiskLevel.UNKNOWN}
        for entry in scores:
            distribution[self.classify(entry.score).value] += 1
        average = sum(s.score for s in scores) / len(scores) if scores else 0.0
        return ReputationSummary(
            total_servers=len(scores),
            average_score=round(average, 2),
            risk_distribution=distribution,
            recent_events=self.recent_events(10),
        )

    async def hydrate_all(self) -> int:
        """Load every stored entry not already in memory. Returns the count loaded."""
        loaded = 0
        for record in await load_all_best_effort(self._store, timeout=self._store_timeout):
            try:
                entry = ReputationScore.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                log.warning(
                    "reputation_record_invalid", server_id=record.get("server_id"), error=str(e)
                )
                continue
            async with self._locks.hold(entry.server_id):
                if entry.server_id not in self._scores:
                    self._scores[entry.server_id] = entry
                    loaded += 1
        log.info("reputation_hydrated", entries=loaded)
        return loaded

    async def _fetch_or_create(self, server_id: str) -> ReputationScore:
        entry = self._scores.get(server_id)
        if entry is not None:
            return entry

        record = await load_best_effort(self._store, server_id, timeout=self._store_timeout)
        if record is not None:
            try:
                entry = ReputationScore.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("reputation_record_invalid", server_id=server_id, error=str(e))
                entry = None
        if entry is None:
            entry = ReputationScore(server_id=server_id)
            log.debug("reputation_created", server_id=server_id)
        self._scores[server_id] = entry
        return entry

    def _apply_metrics(self, metrics: ReputationMetrics, event: SecurityEvent) -> None:
        alpha = self._criteria.ema_alpha
        meta = event.metadata

        if event.event_type == EventType.SECURITY_INCIDENT:
            metrics.security_incidents += 1
            if _flag(meta, "threat_intelligence_match", "threatIntelligenceMatch"):
                metrics.threat_intel_matches += 1

        elif event.event_type == EventType.PERFORMANCE_ISSUE:
            response_time = _number(meta, event, "response_time_ms", "responseTime", low=0.0)
            if response_time is not None:
                metrics.response_time_ms = _ema(metrics.response_time_ms, response_time, alpha)
            error_rate = _number(meta, event, "error_rate", "errorRate", low=0.0, high=1.0)
            if error_rate is not None:
                metrics.error_rate = _ema(metrics.error_rate, error_rate, alpha)

        elif event.event_type == EventType.POSITIVE_BEHAVIOR:
            uptime = _number(meta, event, "uptime", low=0.0, high=1.0)
            if uptime is not None:
                metrics.uptime = _ema(metrics.uptime, uptime, alpha)
            compliance = _number(
                meta, event, "compliance_score", "complianceScore", low=0.0, high=1.0
            )
            if compliance is not None:
                metrics.compliance_score = min(
                    1.0, metrics.compliance_score + compliance * self._criteria.compliance_step
                )
            rating = _number(meta, event, "community_rating", "communityRating", low=0.0, high=5.0)
            if rating is not None:
                current = metrics.community_rating if metrics.community_rating is not None else 3.0
                metrics.community_rating = _ema(current, rating, alpha)

        # manual_review only attaches risk factors and notes

    def _upsert_risk_factor(
        self, entry: ReputationScore, event: SecurityEvent, now: datetime
    ) -> None:
        existing = next(
            (
                rf
                for rf in entry.risk_factors
                if rf.type == event.event_type.value and not rf.is_mitigated
            ),
            None,
        )
        if existing is None:
            entry.risk_factors.append(
                RiskFactor(
                    type=event.event_type.value,
                    severity=event.severity,
                    description=event.description,
                    first_seen=now,
                    last_seen=now,
                )
            )
        else:
            existing.last_seen = now
            existing.severity = event.severity


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def _ema(old: float, new: float, alpha: float) -> float:
    return old * (1 - alpha) + new * alpha


def _flag(meta: dict[str, Any], *keys: str) -> bool:
    for key in keys:
        value = meta.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, str | list | tuple | set) and value:
            return True
    return False


def _number(
    meta: dict[str, Any],
    event: SecurityEvent,
    *keys: str,
    low: float | None = None,
    high: float | None = None,
) -> float | None:
    """Read a numeric metadata value, rejecting non-numbers and out-of-range values."""
    for key in keys:
        if key not in meta or meta[key] is None:
            continue
        value = meta[key]
        if isinstance(value, bool) or not isinstance(value, int | float) or math.isnan(value):
            log.warning(
                "event_metadata_invalid",
                server_id=event.server_id,
                event_type=event.event_type.value,
                key=key,
                value=repr(value)[:50],
            )
            return None
        if (low is not None and value < low) or (high is not None and value > high):
            log.warning(
                "event_metadata_out_of_range",
                server_id=event.server_id,
                event_type=event.event_type.value,
                key=key,
                value=value,
            )
            return None
        return float(value)
    return None
