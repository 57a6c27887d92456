"""Point-in-time security reports over sandbox state.

Everything here is read-only: the functions take records and return a
report, they never touch the manager or the ledger.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, Field

from mcp_warden.reputation.models import ReputationSummary
from mcp_warden.sandbox.models import SandboxedServer, SandboxLevel, SandboxStatus, SandboxViolation

LEVEL_BASE_RISK = {
    SandboxLevel.STRICT: 80,
    SandboxLevel.MODERATE: 50,
    SandboxLevel.LIGHT: 20,
}
HIGH_RISK_THRESHOLD = 70
MEDIUM_RISK_THRESHOLD = 30
RECENT_VIOLATIONS_LIMIT = 10


class TimeRange(BaseModel):
    start: datetime
    end: datetime


class ReportSummary(BaseModel):
    total_servers: int
    active_servers: int
    quarantined_servers: int
    monitoring_servers: int
    released_servers: int
    violations_last_24h: int
    threats_blocked: int
    avg_time_in_sandbox: str


class RiskAssessment(BaseModel):
    high_risk_servers: int
    medium_risk_servers: int
    low_risk_servers: int
    risk_score: int = Field(ge=0, le=100)


class ServerRisk(BaseModel):
    server_id: str
    server_name: str
    risk_score: int = Field(ge=0, le=100)
    tier: str
    level: str
    status: str
    violation_count: int


class ViolationSummary(BaseModel):
    id: str
    server_id: str
    server_name: str
    type: str
    severity: str
    timestamp: datetime
    description: str


class ReputationOverview(BaseModel):
    total_servers: int
    average_score: float
    risk_distribution: dict[str, int]


class SecurityReport(BaseModel):
    """Structured security report; JSON-serialisable via ``model_dump_json``."""

    summary: ReportSummary
    risk_assessment: RiskAssessment
    servers: list[ServerRisk] = Field(default_factory=list)
    recent_violations: list[ViolationSummary] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    reputation: ReputationOverview | None = None
    generated_at: datetime
    time_range: TimeRange


def risk_tier(score: int) -> str:
    if score >= HIGH_RISK_THRESHOLD:
        return "high"
    if score >= MEDIUM_RISK_THRESHOLD:
        return "medium"
    return "low"


def server_risk_score(server: SandboxedServer, total: int, recent: int) -> int:
    """Composite 0-100 risk from level plus violation counts, recent ones weighted higher."""
    score = LEVEL_BASE_RISK.get(server.level, 0)
    score += min(total * 5, 20)
    score += min(recent * 10, 30)
    return min(score, 100)


def generate_security_report(
    servers: Iterable[SandboxedServer],
    violations: Iterable[SandboxViolation],
    *,
    time_range_days: int = 7,
    now: datetime | None = None,
    reputations: ReputationSummary | None = None,
) -> SecurityReport:
    """Aggregate sandbox records into a :class:`SecurityReport`.

    Args:
        servers: Sandbox records to report on.
        violations: Violations for those servers (others are ignored for
            per-server scoring but still counted in the time window).
        time_range_days: Window for "recent" violations.
        now: Report time; defaults to the current time.
        reputations: Optional ledger summary to include.
    """
    now = now or datetime.now(UTC)
    start = now - timedelta(days=time_range_days)
    day_ago = now - timedelta(days=1)
    servers = list(servers)
    violations = list(violations)
    recent = [v for v in violations if v.timestamp >= start]
    names = {s.server_id: s.server_name for s in servers}

    server_risks: list[ServerRisk] = []
    for server in servers:
        total = sum(1 for v in violations if v.server_id == server.server_id)
        recent_count = sum(1 for v in recent if v.server_id == server.server_id)
        score = server_risk_score(server, total, recent_count)
        server_risks.append(
            ServerRisk(
                server_id=server.server_id,
                server_name=server.server_name,
                risk_score=score,
                tier=risk_tier(score),
                level=server.level.value,
                status=server.status.value,
                violation_count=total,
            )
        )
    server_risks.sort(key=lambda r: r.risk_score, reverse=True)

    high = sum(1 for r in server_risks if r.tier == "high")
    medium = sum(1 for r in server_risks if r.tier == "medium")
    low = sum(1 for r in server_risks if r.tier == "low")
    average = round(sum(r.risk_score for r in server_risks) / len(server_risks)) if server_risks else 0

    recent_sorted = sorted(recent, key=lambda v: v.timestamp, reverse=True)
    recent_summaries = [
        ViolationSummary(
            id=v.id,
            server_id=v.server_id,
            server_name=names.get(v.server_id, "Unknown"),
            type=v.violation_type.value,
            severity=v.severity.value,
            timestamp=v.timestamp,
            description=v.description,
        )
        for v in recent_sorted[:RECENT_VIOLATIONS_LIMIT]
    ]

    def count(status: SandboxStatus) -> int:
        return sum(1 for s in servers if s.status == status)

    summary = ReportSummary(
        total_servers=len(servers),
        active_servers=count(SandboxStatus.ACTIVE),
        quarantined_servers=count(SandboxStatus.QUARANTINED),
        monitoring_servers=count(SandboxStatus.MONITORING),
        released_servers=count(SandboxStatus.RELEASED),
        violations_last_24h=sum(1 for v in violations if v.timestamp >= day_ago),
        threats_blocked=sum(s.stats.threats_blocked for s in servers),
        avg_time_in_sandbox=_average_time_in_sandbox(servers, now),
    )

    reputation = None
    if reputations is not None:
        reputation = ReputationOverview(
            total_servers=reputations.total_servers,
            average_score=reputations.average_score,
            risk_distribution=dict(reputations.risk_distribution),
        )

    return SecurityReport(
        summary=summary,
        risk_assessment=RiskAssessment(
            high_risk_servers=high,
            medium_risk_servers=medium,
            low_risk_servers=low,
            risk_score=average,
        ),
        servers=server_risks,
        recent_violations=recent_summaries,
        recommendations=_recommendations(
            high, len(recent), time_range_days, summary, reputation
        ),
        reputation=reputation,
        generated_at=now,
        time_range=TimeRange(start=start, end=now),
    )


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def _recommendations(
    high_risk: int,
    recent_violations: int,
    time_range_days: int,
    summary: ReportSummary,
    reputation: ReputationOverview | None,
) -> list[str]:
    recs: list[str] = []
    if high_risk > 0:
        recs.append(f"Review and remediate {_plural(high_risk, 'high-risk server')}")
    if recent_violations > 0:
        recs.append(
            f"Investigate {_plural(recent_violations, 'security violation')} "
            f"from the last {time_range_days} days"
        )
    if summary.quarantined_servers > 0:
        recs.append(
            "Review quarantined servers and determine if they can be safely released "
            "or require further action"
        )
    if reputation is not None and reputation.risk_distribution.get("critical", 0) > 0:
        critical = reputation.risk_distribution["critical"]
        recs.append(f"{_plural(critical, 'server')} with a critical reputation score")
    if not recs:
        recs.append("No critical issues detected. Continue regular monitoring.")
    return recs


def _average_time_in_sandbox(servers: list[SandboxedServer], now: datetime) -> str:
    if not servers:
        return "N/A"
    total = timedelta()
    for server in servers:
        end = server.released_at or now
        total += max(end - server.stats.start_time, timedelta())
    return _format_duration(total / len(servers))


def _format_duration(duration: timedelta) -> str:
    seconds = int(duration.total_seconds())
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes = seconds // 60
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes or not parts:
        parts.append(f"{minutes}m")
    return " ".join(parts)


def format_security_report(report: SecurityReport) -> str:
    """Render *report* as plain text for operators."""
    rule = "=" * 60
    lines = [
        rule,
        f"SECURITY REPORT - {report.generated_at:%Y-%m-%d %H:%M:%S}",
        f"Time Range: {report.time_range.start:%Y-%m-%d %H:%M} to "
        f"{report.time_range.end:%Y-%m-%d %H:%M}",
        rule,
        "",
        "SUMMARY",
        "-------",
        f"Total Servers: {report.summary.total_servers}",
        f"Active: {report.summary.active_servers}, "
        f"Quarantined: {report.summary.quarantined_servers}, "
        f"Monitoring: {report.summary.monitoring_servers}, "
        f"Released: {report.summary.released_servers}",
        f"Violations (24h): {report.summary.violations_last_24h}, "
        f"Threats Blocked: {report.summary.threats_blocked}",
        f"Average Time in Sandbox: {report.summary.avg_time_in_sandbox}",
        "",
        "RISK ASSESSMENT",
        "---------------",
        f"Overall Risk Score: {report.risk_assessment.risk_score}/100",
        f"High Risk: {report.risk_assessment.high_risk_servers}, "
        f"Medium: {report.risk_assessment.medium_risk_servers}, "
        f"Low: {report.risk_assessment.low_risk_servers}",
        "",
    ]

    if report.reputation is not None:
        dist = ", ".join(f"{k}: {v}" for k, v in report.reputation.risk_distribution.items())
        lines += [
            "REPUTATION",
            "----------",
            f"Tracked Servers: {report.reputation.total_servers}, "
            f"Average Score: {report.reputation.average_score:.1f}/1000",
            f"Distribution: {dist}",
            "",
        ]

    if report.recent_violations:
        lines += ["RECENT VIOLATIONS", "-----------------"]
        for i, v in enumerate(report.recent_violations, start=1):
            lines.append(
                f"[{i}] {v.timestamp:%Y-%m-%d %H:%M} - {v.server_name} ({v.server_id})"
            )
            lines.append(f"    {v.type} ({v.severity}): {v.description}")
        lines.append("")

    lines += ["RECOMMENDATIONS", "---------------"]
    for i, rec in enumerate(report.recommendations, start=1):
        lines.append(f"{i}. {rec}")

    return "\n".join(lines)


def export_security_report(report: SecurityReport) -> str:
    """Serialise *report* as indented JSON."""
    return report.model_dump_json(indent=2)
