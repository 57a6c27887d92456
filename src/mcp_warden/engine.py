"""Composition root wiring detector, ledger, sandbox manager and middleware.

Flow for an inbound payload::

    detect -> (malicious) -> ledger update -> risk evaluation
           -> escalation by severity -> policy check -> sandbox

One :class:`SecurityEngine` owns one instance of every component. Hosts
that need isolated state (tests, tenants) simply build another engine.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mcp_warden.config import Settings, get_settings
from mcp_warden.logging import get_logger, server_context
from mcp_warden.reputation import (
    EventType,
    ReputationLedger,
    ReputationScore,
    RiskEvaluation,
    SecurityEvent,
)
from mcp_warden.sandbox import (
    PolicyDecision,
    SandboxEventOutcome,
    SandboxManager,
    SandboxMiddleware,
    SandboxTrigger,
    SecurityReport,
    generate_security_report,
)
from mcp_warden.security import DetectionResult, DetectorConfig, InjectionDetector, Severity
from mcp_warden.storage import RecordStore, build_store

log = get_logger("mcp_warden.engine")

StoreFactory = Callable[[str], RecordStore | None]


def severity_for_risk(risk_score: float) -> Severity:
    """Map a detector risk score to an event severity."""
    if risk_score >= 0.9:
        return Severity.CRITICAL
    if risk_score >= 0.7:
        return Severity.HIGH
    if risk_score >= 0.4:
        return Severity.MEDIUM
    return Severity.LOW


@dataclass
class PayloadVerdict:
    """Everything that happened while handling one payload."""

    server_id: str
    detection: DetectionResult
    reputation: ReputationScore | None = None
    risk: RiskEvaluation | None = None
    sandbox: SandboxEventOutcome | None = None
    policy: PolicyDecision | None = None

    @property
    def is_malicious(self) -> bool:
        return self.detection.is_malicious

    def to_dict(self) -> dict[str, Any]:
        return {
            "server_id": self.server_id,
            "detection": self.detection.to_dict(),
            "reputation_score": self.reputation.score if self.reputation else None,
            "risk_level": self.risk.risk_level.value if self.risk else None,
            "sandbox": self.sandbox.to_dict() if self.sandbox else None,
            "policy": (
                {
                    "should_sandbox": self.policy.should_sandbox,
                    "level": self.policy.level.value if self.policy.level else None,
                    "policy_id": self.policy.policy_id,
                    "reason": self.policy.reason,
                }
                if self.policy
                else None
            ),
        }


@dataclass
class EventHandling:
    reputation: ReputationScore
    risk: RiskEvaluation
    sandbox: SandboxEventOutcome
    policy: PolicyDecision


class SecurityEngine:
    """Own and connect one instance of each security component.

    Args:
        settings: Configuration; defaults to :func:`get_settings`.
        store_factory: Builds the record store for a namespace
            (``reputation``, ``sandbox``, ``violations``). Defaults to the
            backend selected in settings.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        store_factory: StoreFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        factory = store_factory or (lambda namespace: build_store(self.settings, namespace))

        self.detector = InjectionDetector(DetectorConfig.from_settings(self.settings))
        self.ledger = ReputationLedger.from_settings(self.settings, store=factory("reputation"))
        self.manager = SandboxManager.from_settings(
            self.settings,
            server_store=factory("sandbox"),
            violation_store=factory("violations"),
        )
        self.middleware = SandboxMiddleware(self.manager)

    async def hydrate(self) -> int:
        """Restore sandbox records and violations from the store."""
        return await self.manager.hydrate_all()

    async def inspect_payload(
        self,
        server_id: str,
        payload: Any,
        server_name: str | None = None,
        *,
        request_id: str = "",
    ) -> PayloadVerdict:
        """Scan *payload* from *server_id* and react if it is malicious."""
        with server_context(server_id, request_id=request_id):
            detection = self.detector.detect(payload, server_id=server_id, request_id=request_id)
            verdict = PayloadVerdict(server_id=server_id, detection=detection)
            if not detection.is_malicious:
                return verdict

            event = SecurityEvent(
                server_id=server_id,
                event_type=EventType.SECURITY_INCIDENT,
                severity=severity_for_risk(detection.risk_score),
                description=f"Prompt injection detected: {detection.explanation}",
                metadata={
                    "risk_score": round(detection.risk_score, 4),
                    "categories": [c.value for c in detection.categories],
                    "request_id": request_id,
                    "trigger": SandboxTrigger.THREAT_INTEL.value,
                },
                score_impact=-round(detection.risk_score * 100),
            )
            handled = await self.handle_event(event, server_name=server_name)
        verdict.reputation = handled.reputation
        verdict.risk = handled.risk
        verdict.sandbox = handled.sandbox
        verdict.policy = handled.policy
        return verdict

    async def handle_event(
        self, event: SecurityEvent, server_name: str | None = None
    ) -> EventHandling:
        """Feed an upstream event through the ledger, escalation and policies."""
        reputation = await self.ledger.update(event)
        risk = self.ledger.evaluate_risk(event.server_id)
        outcome = await self.middleware.process_security_event(event, server_name)

        decision = self.manager.check_server_for_sandboxing(
            event.server_id, self._policy_facts(event, reputation)
        )
        if decision.should_sandbox and decision.level is not None:
            current = self.manager.get_sandboxed_server(event.server_id)
            if (
                current is None
                or current.is_released
                or decision.level.is_stricter_than(current.level)
            ):
                await self.manager.sandbox_server(
                    event.server_id,
                    server_name or f"Server {event.server_id}",
                    decision.level,
                    SandboxTrigger.POLICY,
                    {"reason": decision.reason, "policy_id": decision.policy_id},
                    policy_ids=[decision.policy_id] if decision.policy_id else (),
                )

        log.info(
            "event_handled",
            server_id=event.server_id,
            event_type=event.event_type.value,
            score=reputation.score,
            risk_level=risk.risk_level.value,
            sandbox_action=outcome.action.value,
            policy_match=decision.policy_id,
        )
        return EventHandling(reputation=reputation, risk=risk, sandbox=outcome, policy=decision)

    def report(self, time_range_days: int | None = None) -> SecurityReport:
        return generate_security_report(
            self.manager.list_sandboxed_servers(),
            self.manager.get_violations(),
            time_range_days=time_range_days or self.settings.report_time_range_days,
            reputations=self.ledger.summary(),
        )

    @staticmethod
    def _policy_facts(event: SecurityEvent, reputation: ReputationScore) -> dict[str, Any]:
        """Facts for policy evaluation.

        Only the reputation score comes from the ledger; the other facts are
        taken from the event when it carries them.
        """
        facts: dict[str, Any] = {"reputation_score": reputation.score}
        meta = event.metadata
        error_rate = meta.get("error_rate", meta.get("errorRate"))
        if isinstance(error_rate, int | float) and not isinstance(error_rate, bool):
            facts["error_rate"] = float(error_rate)
        anomaly = meta.get("anomaly_score", meta.get("anomalyScore"))
        if isinstance(anomaly, int | float) and not isinstance(anomaly, bool):
            facts["anomaly_score"] = float(anomaly)
        threats = meta.get("threat_matches", meta.get("threatMatches"))
        if isinstance(threats, str):
            threats = [threats]
        if isinstance(threats, list | tuple | set):
            facts["threat_matches"] = [str(t).lower() for t in threats]
        return facts
