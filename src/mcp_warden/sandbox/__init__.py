"""Server containment: manager, policies, enforcement middleware and reports.

Public API
----------
- :class:`SandboxManager` - containment records, violations, policies
- :class:`SandboxMiddleware` - event escalation and traffic inspection
- :func:`create_sandbox_middleware` - aiohttp adapter
- :func:`generate_security_report` - read-only report over sandbox state
"""

from mcp_warden.sandbox.manager import (
    InvalidTransitionError,
    SandboxManager,
    ServerNotSandboxedError,
)
from mcp_warden.sandbox.middleware import (
    SANDBOX_VIOLATION_HEADER,
    SEVERITY_LEVELS,
    SandboxMiddleware,
    create_sandbox_middleware,
    traffic_request_from,
)
from mcp_warden.sandbox.models import (
    LEVEL_RESTRICTIONS,
    HistoryEvent,
    MiddlewareAction,
    RequestInspection,
    Restrictions,
    SandboxedServer,
    SandboxError,
    SandboxEventOutcome,
    SandboxHistoryEntry,
    SandboxLevel,
    SandboxMetrics,
    SandboxStats,
    SandboxStatus,
    SandboxTrigger,
    SandboxViolation,
    TrafficRequest,
    TrafficResponse,
    ViolationType,
    restrictions_for,
)
from mcp_warden.sandbox.policies import (
    Condition,
    ConditionOp,
    MatchMode,
    PolicyConditions,
    PolicyDecision,
    PolicyError,
    SandboxPolicy,
    default_policies,
    evaluate_policies,
)
from mcp_warden.sandbox.reporting import (
    SecurityReport,
    export_security_report,
    format_security_report,
    generate_security_report,
)

__all__ = [
    "LEVEL_RESTRICTIONS",
    "SANDBOX_VIOLATION_HEADER",
    "SEVERITY_LEVELS",
    "Condition",
    "ConditionOp",
    "HistoryEvent",
    "InvalidTransitionError",
    "MatchMode",
    "MiddlewareAction",
    "PolicyConditions",
    "PolicyDecision",
    "PolicyError",
    "RequestInspection",
    "Restrictions",
    "SandboxError",
    "SandboxEventOutcome",
    "SandboxHistoryEntry",
    "SandboxLevel",
    "SandboxManager",
    "SandboxMetrics",
    "SandboxMiddleware",
    "SandboxPolicy",
    "SandboxStats",
    "SandboxStatus",
    "SandboxTrigger",
    "SandboxViolation",
    "SandboxedServer",
    "SecurityReport",
    "ServerNotSandboxedError",
    "TrafficRequest",
    "TrafficResponse",
    "ViolationType",
    "create_sandbox_middleware",
    "default_policies",
    "evaluate_policies",
    "export_security_report",
    "format_security_report",
    "generate_security_report",
    "restrictions_for",
]
