"""Sandbox policies.

A policy says which sandbox level a server should get when its observed
facts meet the policy's conditions. Conditions are plain data
(``field``, ``op``, ``value``) interpreted by :meth:`Condition.evaluate`; a
stored policy can never carry executable code.

Facts understood by the evaluator:

- ``reputation_score`` (0-1000)
- ``error_rate`` (0-1)
- ``threat_matches`` (list of threat-intel labels)
- ``anomaly_score`` (0-1)
"""

from __future__ import annotations

import operator
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from mcp_warden.logging import get_logger
from mcp_warden.sandbox.models import SandboxError, SandboxLevel

log = get_logger("mcp_warden.sandbox.policies")

POLICY_FIELDS = frozenset({"reputation_score", "error_rate", "threat_matches", "anomaly_score"})


class PolicyError(SandboxError):
    """Raised for malformed policies or conditions, or removal of a policy in use."""

    pass


class ConditionOp(StrEnum):
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    EQ = "eq"
    NE = "ne"
    IN = "in"
    CONTAINS = "contains"
    INTERSECTS = "intersects"


def _intersects(left: Any, right: Any) -> bool:
    return bool(set(left) & set(right))


_OPERATORS: dict[ConditionOp, Callable[[Any, Any], bool]] = {
    ConditionOp.LT: operator.lt,
    ConditionOp.LE: operator.le,
    ConditionOp.GT: operator.gt,
    ConditionOp.GE: operator.ge,
    ConditionOp.EQ: operator.eq,
    ConditionOp.NE: operator.ne,
    ConditionOp.IN: lambda left, right: left in right,
    ConditionOp.CONTAINS: lambda left, right: right in left,
    ConditionOp.INTERSECTS: _intersects,
}

_COLLECTION_OPS = frozenset({ConditionOp.IN, ConditionOp.INTERSECTS})


class MatchMode(StrEnum):
    ANY = "any"
    ALL = "all"


@dataclass(frozen=True)
class Condition:
    """One comparison of a server fact against a constant."""

    field: str
    op: ConditionOp
    value: Any

    def __post_init__(self) -> None:
        if self.field not in POLICY_FIELDS:
            raise PolicyError(f"Unknown condition field: {self.field!r}")
        try:
            op = ConditionOp(self.op)
        except ValueError:
            raise PolicyError(f"Unknown condition operator: {self.op!r}") from None
        object.__setattr__(self, "op", op)
        if op in _COLLECTION_OPS:
            if isinstance(self.value, str) or not isinstance(self.value, Iterable):
                raise PolicyError(f"Operator {op} needs a list value")
            object.__setattr__(self, "value", tuple(self.value))

    def evaluate(self, facts: Mapping[str, Any]) -> bool:
        """True if the fact is present and satisfies the comparison."""
        actual = facts.get(self.field)
        if actual is None:
            return False
        try:
            return bool(_OPERATORS[self.op](actual, self.value))
        except TypeError:
            log.warning(
                "condition_type_mismatch",
                field=self.field,
                op=self.op.value,
                actual_type=type(actual).__name__,
            )
            return False

    def describe(self) -> str:
        return f"{self.field} {self.op.value} {self.value!r}"

    def to_dict(self) -> dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field, "op": self.op.value, "value": value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Condition:
        try:
            return cls(field=data["field"], op=data["op"], value=data["value"])
        except KeyError as e:
            raise PolicyError(f"Condition missing key: {e}") from None


@dataclass(frozen=True)
class PolicyConditions:
    conditions: tuple[Condition, ...]
    mode: MatchMode = MatchMode.ANY

    def __post_init__(self) -> None:
        if not self.conditions:
            raise PolicyError("A policy needs at least one condition")
        object.__setattr__(self, "conditions", tuple(self.conditions))
        try:
            object.__setattr__(self, "mode", MatchMode(self.mode))
        except ValueError:
            raise PolicyError(f"Unknown match mode: {self.mode!r}") from None

    def matched(self, facts: Mapping[str, Any]) -> list[Condition]:
        return [c for c in self.conditions if c.evaluate(facts)]

    def is_met(self, facts: Mapping[str, Any]) -> bool:
        hits = len(self.matched(facts))
        if self.mode == MatchMode.ALL:
            return hits == len(self.conditions)
        return hits > 0

    def to_dict(self) -> dict[str, Any]:
        return {"mode": self.mode.value, "conditions": [c.to_dict() for c in self.conditions]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PolicyConditions:
        return cls(
            conditions=tuple(Condition.from_dict(c) for c in data.get("conditions", [])),
            mode=data.get("mode", MatchMode.ANY),
        )


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class SandboxPolicy:
    """Named rule mapping server facts to a sandbox level."""

    name: str
    conditions: PolicyConditions
    sandbox_level: SandboxLevel
    description: str = ""
    is_active: bool = True
    created_by: str = "system"
    id: str = field(default_factory=lambda: f"pol_{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        try:
            self.sandbox_level = SandboxLevel(self.sandbox_level)
        except ValueError:
            raise PolicyError(f"Unknown sandbox level: {self.sandbox_level!r}") from None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "conditions": self.conditions.to_dict(),
            "sandbox_level": self.sandbox_level.value,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SandboxPolicy:
        kwargs: dict[str, Any] = {
            "name": data["name"],
            "description": data.get("description", ""),
            "conditions": PolicyConditions.from_dict(data["conditions"]),
            "sandbox_level": data["sandbox_level"],
            "is_active": bool(data.get("is_active", True)),
            "created_by": data.get("created_by", "system"),
        }
        if data.get("id"):
            kwargs["id"] = data["id"]
        return cls(**kwargs)


@dataclass
class PolicyDecision:
    should_sandbox: bool
    reason: str
    level: SandboxLevel | None = None
    policy_id: str | None = None
    matched_conditions: list[str] = field(default_factory=list)


def default_policies() -> list[SandboxPolicy]:
    """Built-in policies, freshly constructed on each call."""
    return [
        SandboxPolicy(
            id="default-monitoring",
            name="Default Monitoring",
            description="Basic monitoring for poorly rated or error-prone servers",
            conditions=PolicyConditions(
                conditions=(
                    Condition("reputation_score", ConditionOp.LT, 300),
                    Condition("error_rate", ConditionOp.GT, 0.10),
                ),
            ),
            sandbox_level=SandboxLevel.LIGHT,
        ),
        SandboxPolicy(
            id="high-risk-isolation",
            name="High Risk Isolation",
            description="Strict isolation for high-risk servers",
            conditions=PolicyConditions(
                conditions=(
                    Condition("reputation_score", ConditionOp.LT, 100),
                    Condition("threat_matches", ConditionOp.INTERSECTS, ("malware", "exploit", "c2")),
                    Condition("anomaly_score", ConditionOp.GT, 0.8),
                ),
            ),
            sandbox_level=SandboxLevel.STRICT,
        ),
    ]


def evaluate_policies(
    policies: Iterable[SandboxPolicy], facts: Mapping[str, Any]
) -> PolicyDecision:
    """Pick the strictest active policy whose conditions are met.

    Ties go to the policy listed first.
    """
    best: tuple[SandboxPolicy, list[Condition]] | None = None
    for policy in policies:
        if not policy.is_active or not policy.conditions.is_met(facts):
            continue
        if best is None or policy.sandbox_level.is_stricter_than(best[0].sandbox_level):
            best = (policy, policy.conditions.matched(facts))

    if best is None:
        return PolicyDecision(should_sandbox=False, reason="No matching policies")

    policy, matched = best
    return PolicyDecision(
        should_sandbox=True,
        level=policy.sandbox_level,
        policy_id=policy.id,
        reason=f"Matched {len(matched)} condition(s) in policy: {policy.name}",
        matched_conditions=[c.describe() for c in matched],
    )
