"""Data models for server containment."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from mcp_warden.security.models import Severity


def _now() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class SandboxError(Exception):
    """Base exception for sandbox operations."""

    pass


class SandboxStatus(StrEnum):
    ACTIVE = "active"
    MONITORING = "monitoring"
    QUARANTINED = "quarantined"
    RELEASED = "released"


class SandboxLevel(StrEnum):
    """Containment levels, ordered from least to most restrictive."""

    LIGHT = "light"
    MODERATE = "moderate"
    STRICT = "strict"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def is_stricter_than(self, other: SandboxLevel) -> bool:
        return self.rank > other.rank


_LEVEL_RANK = {SandboxLevel.LIGHT: 1, SandboxLevel.MODERATE: 2, SandboxLevel.STRICT: 3}


class SandboxTrigger(StrEnum):
    MANUAL = "manual"
    REPUTATION = "reputation"
    THREAT_INTEL = "threat_intel"
    ANOMALY = "anomaly"
    POLICY = "policy"
    RATE_LIMIT = "rate_limit"


class ViolationType(StrEnum):
    NETWORK = "network"
    FILESYSTEM = "filesystem"
    PROCESS = "process"
    RESOURCE = "resource"
    SECURITY = "security"


class HistoryEvent(StrEnum):
    CREATED = "created"
    LEVEL_CHANGED = "level_changed"
    STATUS_CHANGED = "status_changed"
    VIOLATION = "violation"
    RELEASED = "released"


class MiddlewareAction(StrEnum):
    """The only outcomes of processing a security event."""

    SANDBOXED = "sandboxed"
    ESCALATED = "escalated"
    NO_ACTION = "no_action"
    ERROR = "error"


@dataclass(frozen=True)
class Restrictions:
    """Permission flags and resource caps applied to a sandboxed server."""

    network_access: bool
    file_system_access: bool
    process_creation: bool
    memory_limit_mb: int
    cpu_limit_percent: int
    execution_time_limit_ms: int

    @property
    def memory_limit_bytes(self) -> int:
        return self.memory_limit_mb * 1024 * 1024

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


LEVEL_RESTRICTIONS: dict[SandboxLevel, Restrictions] = {
    SandboxLevel.LIGHT: Restrictions(
        network_access=True,
        file_system_access=True,
        process_creation=True,
        memory_limit_mb=2048,
        cpu_limit_percent=80,
        execution_time_limit_ms=60_000,
    ),
    SandboxLevel.MODERATE: Restrictions(
        network_access=True,
        file_system_access=True,
        process_creation=False,
        memory_limit_mb=1024,
        cpu_limit_percent=50,
        execution_time_limit_ms=30_000,
    ),
    SandboxLevel.STRICT: Restrictions(
        network_access=False,
        file_system_access=False,
        process_creation=False,
        memory_limit_mb=512,
        cpu_limit_percent=30,
        execution_time_limit_ms=10_000,
    ),
}


def restrictions_for(level: SandboxLevel) -> Restrictions:
    return LEVEL_RESTRICTIONS[SandboxLevel(level)]


@dataclass
class SandboxStats:
    violations: int = 0
    threats_blocked: int = 0
    start_time: datetime = field(default_factory=_now)
    last_violation_time: datetime | None = None


@dataclass
class SandboxHistoryEntry:
    event: HistoryEvent
    details: str
    triggered_by: SandboxTrigger
    timestamp: datetime = field(default_factory=_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.value,
            "details": self.details,
            "triggered_by": self.triggered_by.value,
            "timestamp": self.timestamp.isoformat(),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SandboxHistoryEntry:
        return cls(
            event=HistoryEvent(data["event"]),
            details=data.get("details", ""),
            triggered_by=SandboxTrigger(data.get("triggered_by", SandboxTrigger.MANUAL)),
            timestamp=_parse_dt(data["timestamp"]),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class SandboxedServer:
    """Containment record for one server."""

    server_id: str
    server_name: str
    level: SandboxLevel
    status: SandboxStatus = SandboxStatus.ACTIVE
    current_restrictions: Restrictions = None  # type: ignore[assignment]
    stats: SandboxStats = field(default_factory=SandboxStats)
    history: list[SandboxHistoryEntry] = field(default_factory=list)
    policy_ids: list[str] = field(default_factory=list)
    created_by: str = "system"
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    released_at: datetime | None = None
    released_by: str | None = None
    id: str = field(default_factory=lambda: _new_id("sbx"))

    def __post_init__(self) -> None:
        self.level = SandboxLevel(self.level)
        self.status = SandboxStatus(self.status)
        if self.current_restrictions is None:
            self.current_restrictions = restrictions_for(self.level)

    @property
    def is_enforcing(self) -> bool:
        """True when traffic for this server is subject to its restrictions."""
        return self.status in (SandboxStatus.ACTIVE, SandboxStatus.QUARANTINED)

    @property
    def is_released(self) -> bool:
        return self.status == SandboxStatus.RELEASED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "server_name": self.server_name,
            "status": self.status.value,
            "level": self.level.value,
            "current_restrictions": self.current_restrictions.to_dict(),
            "stats": {
                "violations": self.stats.violations,
                "threats_blocked": self.stats.threats_blocked,
                "start_time": self.stats.start_time.isoformat(),
                "last_violation_time": (
                    self.stats.last_violation_time.isoformat()
                    if self.stats.last_violation_time
                    else None
                ),
            },
            "history": [entry.to_dict() for entry in self.history],
            "policy_ids": list(self.policy_ids),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "released_by": self.released_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SandboxedServer:
        stats = data.get("stats") or {}
        return cls(
            id=data["id"],
            server_id=data["server_id"],
            server_name=data.get("server_name", data["server_id"]),
            status=SandboxStatus(data["status"]),
            level=SandboxLevel(data["level"]),
            current_restrictions=Restrictions(**data["current_restrictions"]),
            stats=SandboxStats(
                violations=int(stats.get("violations", 0)),
                threats_blocked=int(stats.get("threats_blocked", 0)),
                start_time=_parse_dt(stats.get("start_time", data["created_at"])),
                last_violation_time=(
                    _parse_dt(stats["last_violation_time"])
                    if stats.get("last_violation_time")
                    else None
                ),
            ),
            history=[SandboxHistoryEntry.from_dict(h) for h in data.get("history", [])],
            policy_ids=list(data.get("policy_ids", [])),
            created_by=data.get("created_by", "system"),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            released_at=_parse_dt(data["released_at"]) if data.get("released_at") else None,
            released_by=data.get("released_by"),
        )


@dataclass(frozen=True)
class SandboxViolation:
    """Append-only record of a breach or an enforcement action."""

    server_id: str
    violation_type: ViolationType
    severity: Severity
    description: str
    action_taken: str = "Blocked"
    metadata: dict[str, Any] = field(default_factory=dict)
    related_ids: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=_now)
    id: str = field(default_factory=lambda: _new_id("viol"))

    @property
    def is_block(self) -> bool:
        return self.action_taken.strip().lower().startswith("block")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "server_id": self.server_id,
            "violation_type": self.violation_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "action_taken": self.action_taken,
            "metadata": dict(self.metadata),
            "related_ids": list(self.related_ids),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SandboxViolation:
        return cls(
            id=data["id"],
            server_id=data["server_id"],
            violation_type=ViolationType(data["violation_type"]),
            severity=Severity.parse(data["severity"]),
            description=data.get("description", ""),
            action_taken=data.get("action_taken", ""),
            metadata=dict(data.get("metadata") or {}),
            related_ids=tuple(data.get("related_ids") or ()),
            timestamp=_parse_dt(data["timestamp"]),
        )


@dataclass
class SandboxEventOutcome:
    """Result of :meth:`SandboxMiddleware.process_security_event`."""

    action: MiddlewareAction
    server_id: str
    message: str
    level: SandboxLevel | None = None
    violation_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "server_id": self.server_id,
            "message": self.message,
            "level": self.level.value if self.level else None,
            "violation_id": self.violation_id,
            "details": dict(self.details),
        }


@dataclass
class RequestInspection:
    should_block: bool = False
    reason: str | None = None
    action_taken: str | None = None
    violation_id: str | None = None


@dataclass
class SandboxMetrics:
    total_sandboxed: int
    by_status: dict[str, int]
    by_level: dict[str, int]
    violations_by_type: dict[str, int]
    violations_by_severity: dict[str, int]
    threats_blocked: int
    released_count: int
    avg_time_in_sandbox_hours: float


@dataclass
class TrafficRequest:
    """The parts of an outbound request the middleware looks at."""

    method: str
    path: str
    destination: str | None = None
    url: str = ""
    content_length: int | None = None


@dataclass
class TrafficResponse:
    status: int = 200
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def content_length(self) -> int:
        """Declared Content-Length, or the body size when none is declared."""
        for key, value in self.headers.items():
            if key.lower() == "content-length":
                try:
                    return int(value)
                except (TypeError, ValueError):
                    break
        return len(self.body)
