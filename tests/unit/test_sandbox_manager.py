"""Tests for the sandbox manager state machine."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from mcp_warden.sandbox import (
    LEVEL_RESTRICTIONS,
    Condition,
    ConditionOp,
    HistoryEvent,
    InvalidTransitionError,
    MiddlewareAction,
    PolicyConditions,
    PolicyError,
    SandboxedServer,
    SandboxLevel,
    SandboxManager,
    SandboxPolicy,
    SandboxStatus,
    SandboxTrigger,
    SandboxViolation,
    ServerNotSandboxedError,
    ViolationType,
)
from mcp_warden.security import Severity
from mcp_warden.storage import MemoryRecordStore

# ---------------------------------------------------------------------------
# Sandboxing and escalation
# ---------------------------------------------------------------------------


class TestSandboxServer:
    """Tests for SandboxManager.sandbox_server."""

    @pytest.mark.asyncio
    async def test_creates_record(self, manager):
        """A new record is active at the requested level with that level's restrictions."""
        server = await manager.sandbox_server("srv-1", "Weather", SandboxLevel.MODERATE)

        assert server.server_id == "srv-1"
        assert server.server_name == "Weather"
        assert server.status == SandboxStatus.ACTIVE
        assert server.level == SandboxLevel.MODERATE
        assert server.current_restrictions == LEVEL_RESTRICTIONS[SandboxLevel.MODERATE]
        assert server.id.startswith("sbx_")
        assert server.history[0].event == HistoryEvent.CREATED

    @pytest.mark.asyncio
    async def test_records_one_violation(self, manager):
        """Sandboxing appends exactly one violation and does not count a block."""
        server = await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)

        violations = manager.get_violations("srv-1")
        assert len(violations) == 1
        assert violations[0].action_taken == "Sandboxed"
        assert violations[0].violation_type == ViolationType.SECURITY
        assert violations[0].severity == Severity.LOW
        assert server.stats.violations == 1
        assert server.stats.threats_blocked == 0

    @pytest.mark.asyncio
    async def test_context_severity_used(self, manager):
        """A severity in the context is used for the recorded violation."""
        await manager.sandbox_server(
            "srv-1", "Weather", SandboxLevel.LIGHT, context={"severity": "critical"}
        )
        assert manager.get_violations("srv-1")[0].severity == Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_default_name(self, manager):
        """An empty name falls back to a generated one."""
        server = await manager.sandbox_server("srv-1", "", SandboxLevel.LIGHT)
        assert server.server_name == "Server srv-1"

    @pytest.mark.asyncio
    async def test_returns_snapshot(self, manager):
        """Mutating a returned record does not change the manager's state."""
        server = await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        server.level = SandboxLevel.STRICT
        server.history.clear()

        stored = manager.get_sandboxed_server("srv-1")
        assert stored.level == SandboxLevel.LIGHT
        assert stored.history

    @pytest.mark.asyncio
    async def test_live_record_escalates(self, manager):
        """Sandboxing a live server at a stricter level escalates it."""
        first = await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        second = await manager.sandbox_server("srv-1", "Weather", SandboxLevel.STRICT)
        assert second.id == first.id
        assert second.level == SandboxLevel.STRICT
        assert second.current_restrictions.network_access is False

    @pytest.mark.asyncio
    async def test_live_record_never_relaxed(self, manager):
        """Sandboxing a live server at a weaker level changes nothing."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.STRICT)
        server = await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        assert server.level == SandboxLevel.STRICT
        assert len(manager.get_violations("srv-1")) == 1

    @pytest.mark.asyncio
    async def test_policy_ids_attached(self, manager):
        """Policy ids passed in are remembered on the record."""
        server = await manager.sandbox_server(
            "srv-1",
            "Weather",
            SandboxLevel.LIGHT,
            SandboxTrigger.POLICY,
            policy_ids=["default-monitoring"],
        )
        assert server.policy_ids == ["default-monitoring"]

    @pytest.mark.asyncio
    async def test_concurrent_sandboxing_is_monotonic(self, manager):
        """Racing sandbox calls end at the strictest requested level with one record."""
        await asyncio.gather(
            manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT),
            manager.sandbox_server("srv-1", "Weather", SandboxLevel.STRICT),
            manager.sandbox_server("srv-1", "Weather", SandboxLevel.MODERATE),
        )
        assert manager.get_level("srv-1") == SandboxLevel.STRICT
        assert manager.get_metrics().total_sandboxed == 1


class TestUpdateSandboxLevel:
    """Tests for SandboxManager.update_sandbox_level."""

    @pytest.mark.asyncio
    async def test_unknown_server_raises(self, manager):
        """Escalating a server with no record raises."""
        with pytest.raises(ServerNotSandboxedError):
            await manager.update_sandbox_level("missing", SandboxLevel.STRICT)

    @pytest.mark.asyncio
    async def test_escalates(self, manager):
        """A stricter level replaces the restrictions and is audited."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.MODERATE)
        server = await manager.update_sandbox_level(
            "srv-1", SandboxLevel.STRICT, SandboxTrigger.ANOMALY, actor="alice"
        )

        assert server.level == SandboxLevel.STRICT
        assert server.current_restrictions == LEVEL_RESTRICTIONS[SandboxLevel.STRICT]
        change = next(h for h in server.history if h.event == HistoryEvent.LEVEL_CHANGED)
        assert change.triggered_by == SandboxTrigger.ANOMALY
        assert change.metadata["actor"] == "alice"

        escalations = [v for v in manager.get_violations("srv-1") if v.action_taken == "Escalated"]
        assert len(escalations) == 1
        assert escalations[0].metadata["previous_level"] == "moderate"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("level", [SandboxLevel.LIGHT, SandboxLevel.MODERATE])
    async def test_same_or_lower_is_noop(self, manager, level):
        """Equal or weaker levels leave the record untouched."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.MODERATE)
        before = manager.get_sandboxed_server("srv-1")

        after = await manager.update_sandbox_level("srv-1", level)
        assert after.level == SandboxLevel.MODERATE
        assert len(after.history) == len(before.history)
        assert len(manager.get_violations("srv-1")) == 1


# ---------------------------------------------------------------------------
# Violations
# ---------------------------------------------------------------------------


class TestRecordViolation:
    """Tests for SandboxManager.record_violation."""

    @pytest.mark.asyncio
    async def test_block_counts_as_threat(self, manager):
        """A blocking action increments both counters."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.STRICT)
        violation = await manager.record_violation(
            "srv-1", ViolationType.NETWORK, Severity.HIGH, "Outbound call", {"path": "/x"}
        )

        assert isinstance(violation, SandboxViolation)
        assert violation.id.startswith("viol_")
        server = manager.get_sandboxed_server("srv-1")
        assert server.stats.violations == 2
        assert server.stats.threats_blocked == 1
        assert server.stats.last_violation_time == violation.timestamp

    @pytest.mark.asyncio
    async def test_non_block_action(self, manager):
        """Other actions count as violations but not as blocked threats."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        await manager.record_violation(
            "srv-1", ViolationType.RESOURCE, Severity.MEDIUM, "Slow", action_taken="Logged"
        )
        server = manager.get_sandboxed_server("srv-1")
        assert server.stats.violations == 2
        assert server.stats.threats_blocked == 0

    @pytest.mark.asyncio
    async def test_never_changes_level(self, manager):
        """Recording violations does not escalate the server."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        for _ in range(5):
            await manager.record_violation(
                "srv-1", ViolationType.SECURITY, Severity.CRITICAL, "Repeated"
            )
        assert manager.get_level("srv-1") == SandboxLevel.LIGHT

    @pytest.mark.asyncio
    async def test_unknown_server_raises(self, manager):
        """Violations for unsandboxed servers are rejected."""
        with pytest.raises(ServerNotSandboxedError):
            await manager.record_violation(
                "missing", ViolationType.NETWORK, Severity.HIGH, "Outbound call"
            )

    @pytest.mark.asyncio
    async def test_violations_are_immutable(self, manager):
        """Violation records cannot be modified."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        violation = manager.get_violations("srv-1")[0]
        with pytest.raises(AttributeError):
            violation.description = "edited"  # type: ignore[misc]

    @pytest.mark.asyncio
    async def test_get_violations_order_and_limit(self, manager):
        """Violations come back oldest first; limit keeps the newest."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        for i in range(3):
            await manager.record_violation(
                "srv-1", ViolationType.NETWORK, Severity.LOW, f"call {i}"
            )
        descriptions = [v.description for v in manager.get_violations("srv-1")]
        assert descriptions[1:] == ["call 0", "call 1", "call 2"]
        assert [v.description for v in manager.get_violations("srv-1", limit=2)] == [
            "call 1",
            "call 2",
        ]
        assert manager.get_violations("srv-1", limit=0) == []

    @pytest.mark.asyncio
    async def test_violation_log_bounded(self):
        """The in-memory violation log evicts the oldest entries."""
        manager = SandboxManager(violation_log_limit=3)
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        for i in range(5):
            await manager.record_violation(
                "srv-1", ViolationType.NETWORK, Severity.LOW, f"call {i}"
            )
        assert [v.description for v in manager.get_violations()] == [
            "call 2",
            "call 3",
            "call 4",
        ]

    @pytest.mark.asyncio
    async def test_history_bounded(self):
        """Per-server history keeps at most history_limit entries."""
        manager = SandboxManager(history_limit=4)
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        for _ in range(10):
            await manager.record_violation("srv-1", ViolationType.NETWORK, Severity.LOW, "x")
        assert len(manager.get_history("srv-1")) == 4


# ---------------------------------------------------------------------------
# Status and release
# ---------------------------------------------------------------------------


class TestStatusAndRelease:
    """Tests for set_status and release_server."""

    @pytest.mark.asyncio
    async def test_release(self, manager):
        """Release is recorded with time, actor and reason."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.STRICT)
        server = await manager.release_server("srv-1", "False positive", actor="bob")

        assert server.status == SandboxStatus.RELEASED
        assert server.released_at is not None
        assert server.released_by == "bob"
        assert server.history[-1].event == HistoryEvent.RELEASED
        assert "False positive" in server.history[-1].details
        assert manager.active_restrictions("srv-1") is None

    @pytest.mark.asyncio
    async def test_released_is_terminal(self, manager):
        """Released records accept no further changes."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        await manager.release_server("srv-1", "done")

        with pytest.raises(ServerNotSandboxedError):
            await manager.release_server("srv-1", "again")
        with pytest.raises(ServerNotSandboxedError):
            await manager.update_sandbox_level("srv-1", SandboxLevel.STRICT)
        with pytest.raises(ServerNotSandboxedError):
            await manager.record_violation("srv-1", ViolationType.NETWORK, Severity.HIGH, "x")
        with pytest.raises(ServerNotSandboxedError):
            await manager.set_status("srv-1", SandboxStatus.MONITORING, "x")

    @pytest.mark.asyncio
    async def test_resandbox_after_release(self, manager):
        """A released server gets a fresh record, possibly at a lower level."""
        first = await manager.sandbox_server("srv-1", "Weather", SandboxLevel.STRICT)
        await manager.release_server("srv-1", "cleared")
        second = await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)

        assert second.id != first.id
        assert second.level == SandboxLevel.LIGHT
        assert second.status == SandboxStatus.ACTIVE
        assert second.stats.violations == 1
        archived = manager.get_archived("srv-1")
        assert [a.id for a in archived] == [first.id]
        assert archived[0].status == SandboxStatus.RELEASED

    @pytest.mark.asyncio
    async def test_release_unknown_raises(self, manager):
        """Releasing an unknown server raises."""
        with pytest.raises(ServerNotSandboxedError):
            await manager.release_server("missing", "n/a")

    @pytest.mark.asyncio
    async def test_quarantine(self, manager):
        """Quarantined servers stay enforced."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.STRICT)
        server = await manager.set_status("srv-1", SandboxStatus.QUARANTINED, "Investigating")
        assert server.status == SandboxStatus.QUARANTINED
        assert server.history[-1].event == HistoryEvent.STATUS_CHANGED
        assert manager.active_restrictions("srv-1") == LEVEL_RESTRICTIONS[SandboxLevel.STRICT]

    @pytest.mark.asyncio
    async def test_monitoring_is_not_enforced(self, manager):
        """Monitoring servers are observed but their traffic is not restricted."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.STRICT)
        await manager.set_status("srv-1", SandboxStatus.MONITORING, "Watching")
        assert manager.active_restrictions("srv-1") is None
        assert manager.get_level("srv-1") == SandboxLevel.STRICT

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, manager):
        """Only active can move to monitoring or quarantined; release has its own call."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        with pytest.raises(InvalidTransitionError):
            await manager.set_status("srv-1", SandboxStatus.RELEASED, "x")
        with pytest.raises(InvalidTransitionError):
            await manager.set_status("srv-1", SandboxStatus.ACTIVE, "x")

        await manager.set_status("srv-1", SandboxStatus.QUARANTINED, "x")
        with pytest.raises(InvalidTransitionError):
            await manager.set_status("srv-1", SandboxStatus.MONITORING, "x")

    @pytest.mark.asyncio
    async def test_quarantined_can_be_released(self, manager):
        """Every non-released status can be released."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.LIGHT)
        await manager.set_status("srv-1", SandboxStatus.QUARANTINED, "x")
        server = await manager.release_server("srv-1", "cleared")
        assert server.status == SandboxStatus.RELEASED


# ---------------------------------------------------------------------------
# Security events
# ---------------------------------------------------------------------------


class TestApplySecurityEvent:
    """Tests for SandboxManager.apply_security_event."""

    async def _apply(self, manager, target_level, severity=Severity.HIGH):
        return await manager.apply_security_event(
            server_id="srv-1",
            server_name="Weather",
            target_level=target_level,
            trigger=SandboxTrigger.THREAT_INTEL,
            severity=severity,
            description="Injection attempt",
        )

    @pytest.mark.asyncio
    async def test_sandboxes_new_server(self, manager):
        """An event for an unsandboxed server creates a record."""
        outcome = await self._apply(manager, SandboxLevel.MODERATE)
        assert outcome.action == MiddlewareAction.SANDBOXED
        assert outcome.level == SandboxLevel.MODERATE
        assert outcome.message == "Server sandboxed at moderate level due to high event"
        assert outcome.violation_id == manager.get_violations("srv-1")[0].id

    @pytest.mark.asyncio
    async def test_escalates(self, manager):
        """A stricter target escalates the live record."""
        await self._apply(manager, SandboxLevel.LIGHT, Severity.LOW)
        outcome = await self._apply(manager, SandboxLevel.STRICT, Severity.CRITICAL)
        assert outcome.action == MiddlewareAction.ESCALATED
        assert outcome.details == {"previous_level": "light", "new_level": "strict"}
        assert len(manager.get_violations("srv-1")) == 2

    @pytest.mark.asyncio
    async def test_logs_without_escalation(self, manager):
        """A target that is not stricter is logged as a violation only."""
        await self._apply(manager, SandboxLevel.STRICT, Severity.CRITICAL)
        outcome = await self._apply(manager, SandboxLevel.LIGHT, Severity.LOW)
        assert outcome.action == MiddlewareAction.NO_ACTION
        assert outcome.message == (
            "Event logged, no sandbox escalation needed (current level: strict)"
        )
        logged = manager.get_violations("srv-1")[-1]
        assert logged.action_taken == "Logged"
        assert manager.get_sandboxed_server("srv-1").stats.threats_blocked == 0

    @pytest.mark.asyncio
    async def test_informational_for_unsandboxed(self, manager):
        """Informational events never create a record."""
        outcome = await self._apply(manager, None, Severity.INFO)
        assert outcome.action == MiddlewareAction.NO_ACTION
        assert outcome.violation_id is None
        assert manager.get_sandboxed_server("srv-1") is None
        assert manager.get_violations() == []


# ---------------------------------------------------------------------------
# Metrics and policies
# ---------------------------------------------------------------------------


class TestMetrics:
    """Tests for SandboxManager.get_metrics."""

    @pytest.mark.asyncio
    async def test_metrics(self, manager):
        """Metrics count records by status and level plus violations and blocks."""
        await manager.sandbox_server("a", "A", SandboxLevel.LIGHT)
        await manager.sandbox_server("b", "B", SandboxLevel.STRICT)
        await manager.record_violation("b", ViolationType.NETWORK, Severity.HIGH, "call")
        await manager.release_server("a", "cleared")

        metrics = manager.get_metrics()
        assert metrics.total_sandboxed == 2
        assert metrics.by_status == {
            "active": 1,
            "monitoring": 0,
            "quarantined": 0,
            "released": 1,
        }
        assert metrics.by_level == {"light": 1, "moderate": 0, "strict": 1}
        assert metrics.violations_by_type == {"security": 2, "network": 1}
        assert metrics.violations_by_severity["high"] == 2
        assert metrics.threats_blocked == 1
        assert metrics.released_count == 1
        assert metrics.avg_time_in_sandbox_hours >= 0.0

    @pytest.mark.asyncio
    async def test_average_time_over_releases(self, manager):
        """Average time in sandbox is the mean over every release."""
        now = datetime.now(UTC)
        for server_id, hours in (("a", 2), ("b", 4), ("c", 6)):
            await manager.sandbox_server(server_id, server_id.upper(), SandboxLevel.LIGHT)
            manager._servers[server_id].stats.start_time = now - timedelta(hours=hours)
            await manager.release_server(server_id, "cleared")

        metrics = manager.get_metrics()
        assert metrics.released_count == 3
        assert metrics.avg_time_in_sandbox_hours == pytest.approx(4.0, abs=0.01)

    def test_empty_metrics(self, manager):
        """A fresh manager reports zeros."""
        metrics = manager.get_metrics()
        assert metrics.total_sandboxed == 0
        assert metrics.threats_blocked == 0
        assert metrics.avg_time_in_sandbox_hours == 0.0

    @pytest.mark.asyncio
    async def test_list_by_status(self, manager):
        """list_sandboxed_servers filters by status."""
        await manager.sandbox_server("a", "A", SandboxLevel.LIGHT)
        await manager.sandbox_server("b", "B", SandboxLevel.LIGHT)
        await manager.release_server("b", "cleared")
        assert [s.server_id for s in manager.list_sandboxed_servers()] == ["a", "b"]
        released = manager.list_sandboxed_servers(SandboxStatus.RELEASED)
        assert [s.server_id for s in released] == ["b"]


class TestPolicies:
    """Tests for policy management on the manager."""

    def _policy(self, policy_id="custom"):
        return SandboxPolicy(
            id=policy_id,
            name="Custom",
            conditions=PolicyConditions((Condition("anomaly_score", ConditionOp.GE, 0.5),)),
            sandbox_level=SandboxLevel.MODERATE,
        )

    def test_default_policies_loaded(self, manager):
        """A manager starts with the built-in policies."""
        ids = {p.id for p in manager.list_policies()}
        assert ids == {"default-monitoring", "high-risk-isolation"}

    def test_explicit_empty_policies(self):
        """Passing an empty list disables the built-ins."""
        assert SandboxManager(policies=[]).list_policies() == []

    def test_add_and_get(self, manager):
        """Added policies are evaluated by check_server_for_sandboxing."""
        assert manager.add_policy(self._policy()) == "custom"
        assert manager.get_policy("custom").name == "Custom"
        decision = manager.check_server_for_sandboxing("srv-1", {"anomaly_score": 0.6})
        assert decision.should_sandbox is True
        assert decision.policy_id == "custom"

    def test_inactive_policies_hidden(self, manager):
        """Inactive policies are listed only on request and never match."""
        policy = self._policy()
        policy.is_active = False
        manager.add_policy(policy)
        assert "custom" not in {p.id for p in manager.list_policies()}
        assert "custom" in {p.id for p in manager.list_policies(active_only=False)}
        decision = manager.check_server_for_sandboxing("srv-1", {"anomaly_score": 0.6})
        assert decision.should_sandbox is False

    def test_remove_unknown(self, manager):
        """Removing an unknown policy returns False."""
        assert manager.remove_policy("missing") is False

    @pytest.mark.asyncio
    async def test_remove_in_use_rejected(self, manager):
        """A policy referenced by a live record cannot be removed."""
        manager.add_policy(self._policy())
        await manager.sandbox_server(
            "srv-1", "Weather", SandboxLevel.MODERATE, policy_ids=["custom"]
        )
        with pytest.raises(PolicyError):
            manager.remove_policy("custom")

        await manager.release_server("srv-1", "cleared")
        assert manager.remove_policy("custom") is True
        assert manager.get_policy("custom") is None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    """Tests for writing to and restoring from record stores."""

    @pytest.mark.asyncio
    async def test_changes_are_saved(self, manager, server_store, violation_store):
        """Every change writes the record and its violation."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.MODERATE)
        record = await server_store.load("srv-1")
        assert record["level"] == "moderate"
        assert len(violation_store) == 1

    @pytest.mark.asyncio
    async def test_hydrate_single(self, manager, server_store, violation_store):
        """hydrate loads a record that is not in memory yet."""
        await manager.sandbox_server("srv-1", "Weather", SandboxLevel.STRICT)

        fresh = SandboxManager(server_store=server_store, violation_store=violation_store)
        server = await fresh.hydrate("srv-1")
        assert server is not None
        assert server.level == SandboxLevel.STRICT
        assert fresh.active_restrictions("srv-1").network_access is False
        assert await fresh.hydrate("missing") is None

    @pytest.mark.asyncio
    async def test_hydrate_all(self, manager, server_store, violation_store):
        """hydrate_all restores records, violations and counters."""
        await manager.sandbox_server("a", "A", SandboxLevel.LIGHT)
        await manager.sandbox_server("b", "B", SandboxLevel.STRICT)
        await manager.record_violation("b", ViolationType.NETWORK, Severity.HIGH, "call")

        fresh = SandboxManager(server_store=server_store, violation_store=violation_store)
        assert await fresh.hydrate_all() == 2
        assert len(fresh.get_violations()) == 3
        assert fresh.get_metrics().violations_by_type == {"security": 2, "network": 1}
        assert fresh.get_sandboxed_server("b").stats.threats_blocked == 1

    @pytest.mark.asyncio
    async def test_hydrate_skips_bad_records(self):
        """Unreadable stored records are skipped."""
        store = MemoryRecordStore(namespace="sandbox")
        await store.save("bad", {"server_id": "bad"})
        manager = SandboxManager(server_store=store)
        assert await manager.hydrate_all() == 0

    def test_record_round_trip(self):
        """from_dict restores what to_dict wrote."""
        server = SandboxedServer(server_id="srv-1", server_name="Weather", level="strict")
        restored = SandboxedServer.from_dict(server.to_dict())
        assert restored.id == server.id
        assert restored.level == SandboxLevel.STRICT
        assert restored.current_restrictions == server.current_restrictions
