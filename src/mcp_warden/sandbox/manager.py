"""Sandbox manager: per-server containment state machine.

Status transitions::

    active -> monitoring
    active -> quarantined
    any non-released status -> released   (explicit release only)

Independently of status, the sandbox level only ever moves towards
``strict`` while a record is live. The only way back down is an explicit
release followed by a fresh :meth:`SandboxManager.sandbox_server`, which
archives the released record and starts a new one.

Every containment action (sandbox, escalate, block, truncate) appends
exactly one :class:`SandboxViolation`. Mutations of one server happen under
that server's lock and are finished in memory before anything is handed to
the record store, so a cancelled caller never leaves half a record behind.
"""

from __future__ import annotations

import copy
from collections import Counter, deque
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from mcp_warden.concurrency import KeyedLock
from mcp_warden.config import Settings
from mcp_warden.logging import get_logger
from mcp_warden.sandbox.models import (
    HistoryEvent,
    MiddlewareAction,
    Restrictions,
    SandboxedServer,
    SandboxError,
    SandboxEventOutcome,
    SandboxHistoryEntry,
    SandboxLevel,
    SandboxMetrics,
    SandboxStatus,
    SandboxTrigger,
    SandboxViolation,
    ViolationType,
    restrictions_for,
)
from mcp_warden.sandbox.policies import (
    PolicyDecision,
    PolicyError,
    SandboxPolicy,
    default_policies,
    evaluate_policies,
)
from mcp_warden.security.models import Severity
from mcp_warden.storage import (
    RecordStore,
    load_all_best_effort,
    load_best_effort,
    save_best_effort,
)

log = get_logger("mcp_warden.sandbox.manager")

# Severity recorded for a containment change when the caller gives none.
_LEVEL_SEVERITY = {
    SandboxLevel.LIGHT: Severity.LOW,
    SandboxLevel.MODERATE: Severity.MEDIUM,
    SandboxLevel.STRICT: Severity.HIGH,
}

_STATUS_TRANSITIONS: dict[SandboxStatus, frozenset[SandboxStatus]] = {
    SandboxStatus.ACTIVE: frozenset({SandboxStatus.MONITORING, SandboxStatus.QUARANTINED}),
    SandboxStatus.MONITORING: frozenset(),
    SandboxStatus.QUARANTINED: frozenset(),
    SandboxStatus.RELEASED: frozenset(),
}


class ServerNotSandboxedError(SandboxError):
    """Raised when an operation targets a server with no live sandbox record."""

    pass


class InvalidTransitionError(SandboxError):
    """Raised for a status change the state machine does not allow."""

    pass


class SandboxManager:
    """Own the containment records, violation log and policies.

    Args:
        policies: Initial policies. Defaults to :func:`default_policies`.
        server_store: Optional store for :class:`SandboxedServer` records.
        violation_store: Optional store for :class:`SandboxViolation` records.
        store_timeout: Seconds allowed for each store call.
        violation_log_limit: Violations kept in memory, oldest evicted first.
        history_limit: History entries kept per server, oldest evicted first.
    """

    def __init__(
        self,
        policies: Iterable[SandboxPolicy] | None = None,
        *,
        server_store: RecordStore | None = None,
        violation_store: RecordStore | None = None,
        store_timeout: float = 2.0,
        violation_log_limit: int = 1000,
        history_limit: int = 200,
    ) -> None:
        self._servers: dict[str, SandboxedServer] = {}
        self._archive: deque[SandboxedServer] = deque(maxlen=history_limit)
        self._violations: deque[SandboxViolation] = deque(maxlen=violation_log_limit)
        self._violations_by_type: Counter[str] = Counter()
        self._violations_by_severity: Counter[str] = Counter()
        self._policies: dict[str, SandboxPolicy] = {}
        for policy in default_policies() if policies is None else policies:
            self._policies[policy.id] = policy
        self._server_store = server_store
        self._violation_store = violation_store
        self._store_timeout = store_timeout
        self._history_limit = history_limit
        self._locks = KeyedLock()
        self._created_count = 0
        self._released_hours_total = 0.0
        self._released_count = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        server_store: RecordStore | None = None,
        violation_store: RecordStore | None = None,
    ) -> SandboxManager:
        return cls(
            server_store=server_store,
            violation_store=violation_store,
            store_timeout=settings.store_timeout_seconds,
            violation_log_limit=settings.sandbox_violation_log_limit,
            history_limit=settings.sandbox_history_limit,
        )

    # ------------------------------------------------------------------
    # Containment
    # ------------------------------------------------------------------

    async def sandbox_server(
        self,
        server_id: str,
        server_name: str,
        level: SandboxLevel,
        trigger: SandboxTrigger = SandboxTrigger.MANUAL,
        context: Mapping[str, Any] | None = None,
        actor: str | None = None,
        *,
        policy_ids: Iterable[str] = (),
    ) -> SandboxedServer:
        """Place a server in the sandbox at *level*.

        A server that already has a live record is escalated instead (and
        left alone if *level* is not stricter). A released record is archived
        and replaced by a fresh one.
        """
        level = SandboxLevel(level)
        trigger = SandboxTrigger(trigger)
        async with self._locks.hold(server_id):
            existing = self._servers.get(server_id)
            if existing is not None and not existing.is_released:
                server, violation = self._escalate_locked(
                    existing, level, trigger, context or {}, actor
                )
            else:
                server, violation = self._create_locked(
                    server_id, server_name, level, trigger, context or {}, actor
                )
            server.policy_ids.extend(p for p in policy_ids if p not in server.policy_ids)
            snapshot = copy.deepcopy(server)

        await self._persist(snapshot, violation)
        return snapshot

    async def update_sandbox_level(
        self,
        server_id: str,
        new_level: SandboxLevel,
        trigger: SandboxTrigger = SandboxTrigger.MANUAL,
        context: Mapping[str, Any] | None = None,
        actor: str | None = None,
    ) -> SandboxedServer:
        """Escalate a live sandbox record.

        No-op unless *new_level* is strictly more restrictive than the
        current level.

        Raises:
            ServerNotSandboxedError: No live record for *server_id*.
        """
        new_level = SandboxLevel(new_level)
        async with self._locks.hold(server_id):
            server = self._require_live(server_id)
            server, violation = self._escalate_locked(
                server, new_level, SandboxTrigger(trigger), context or {}, actor
            )
            snapshot = copy.deepcopy(server)

        await self._persist(snapshot, violation)
        return snapshot

    async def record_violation(
        self,
        server_id: str,
        violation_type: ViolationType,
        severity: Severity,
        description: str,
        metadata: Mapping[str, Any] | None = None,
        action_taken: str = "Blocked",
        related_ids: Iterable[str] = (),
    ) -> SandboxViolation:
        """Append a violation for a live sandbox record.

        Increments ``stats.violations`` by one, and ``stats.threats_blocked``
        by one when *action_taken* denotes a block. Never changes the level.

        Raises:
            ServerNotSandboxedError: No live record for *server_id*.
        """
        async with self._locks.hold(server_id):
            server = self._require_live(server_id)
            violation = self._record_locked(
                server,
                ViolationType(violation_type),
                Severity.parse(severity),
                description,
                dict(metadata or {}),
                action_taken,
                tuple(related_ids),
            )
            snapshot = copy.deepcopy(server)

        await self._persist(snapshot, violation)
        return violation

    async def release_server(
        self, server_id: str, reason: str, actor: str | None = None
    ) -> SandboxedServer:
        """Release a server from the sandbox. Terminal for this record.

        Raises:
            ServerNotSandboxedError: No live record for *server_id*.
        """
        async with self._locks.hold(server_id):
            server = self._require_live(server_id)
            now = datetime.now(UTC)
            server.status = SandboxStatus.RELEASED
            server.released_at = now
            server.released_by = actor or "system"
            server.updated_at = now
            self._append_history(
                server,
                SandboxHistoryEntry(
                    event=HistoryEvent.RELEASED,
                    details=f"Server released from sandbox: {reason}",
                    triggered_by=SandboxTrigger.MANUAL,
                    timestamp=now,
                    metadata={"reason": reason, "released_by": server.released_by},
                ),
            )
            self._released_hours_total += (now - server.stats.start_time).total_seconds() / 3600
            self._released_count += 1
            snapshot = copy.deepcopy(server)

        log.info(
            "sandbox_released",
            server_id=server_id,
            level=snapshot.level.value,
            reason=reason,
            actor=snapshot.released_by,
        )
        await self._persist(snapshot, None)
        return snapshot

    async def set_status(
        self,
        server_id: str,
        status: SandboxStatus,
        reason: str,
        actor: str | None = None,
    ) -> SandboxedServer:
        """Move a live record from ``active`` to ``monitoring`` or ``quarantined``.

        Raises:
            ServerNotSandboxedError: No live record for *server_id*.
            InvalidTransitionError: The transition is not allowed. Release
                goes through :meth:`release_server`.
        """
        status = SandboxStatus(status)
        async with self._locks.hold(server_id):
            server = self._require_live(server_id)
            if status not in _STATUS_TRANSITIONS[server.status]:
                raise InvalidTransitionError(
                    f"Cannot move server {server_id} from {server.status} to {status}"
                )
            previous = server.status
            now = datetime.now(UTC)
            server.status = status
            server.updated_at = now
            self._append_history(
                server,
                SandboxHistoryEntry(
                    event=HistoryEvent.STATUS_CHANGED,
                    details=f"Status changed from {previous} to {status}: {reason}",
                    triggered_by=SandboxTrigger.MANUAL,
                    timestamp=now,
                    metadata={"previous_status": previous.value, "actor": actor or "system"},
                ),
            )
            snapshot = copy.deepcopy(server)

        log.info(
            "sandbox_status_changed",
            server_id=server_id,
            previous_status=previous.value,
            status=status.value,
            reason=reason,
        )
        await self._persist(snapshot, None)
        return snapshot

    async def apply_security_event(
        self,
        *,
        server_id: str,
        server_name: str,
        target_level: SandboxLevel | None,
        trigger: SandboxTrigger,
        severity: Severity,
        description: str,
        context: Mapping[str, Any] | None = None,
    ) -> SandboxEventOutcome:
        """Run the escalation policy for one security event atomically.

        - No live record: sandbox at *target_level*.
        - Live record and *target_level* stricter: escalate.
        - Otherwise: log the event as a violation, level unchanged.

        A *target_level* of None (informational events) never creates a
        record; for a live record it is only logged.
        """
        context = dict(context or {})
        async with self._locks.hold(server_id):
            existing = self._servers.get(server_id)

            if existing is None or existing.is_released:
                if target_level is None:
                    return SandboxEventOutcome(
                        action=MiddlewareAction.NO_ACTION,
                        server_id=server_id,
                        message="Informational event for unsandboxed server, nothing to do",
                    )
                server, violation = self._create_locked(
                    server_id,
                    server_name,
                    target_level,
                    trigger,
                    {"severity": severity.value, "reason": description, **context},
                    None,
                )
                action = MiddlewareAction.SANDBOXED
                message = f"Server sandboxed at {target_level} level due to {severity} event"
                details: dict[str, Any] = {"new_level": target_level.value}
            else:
                previous = existing.level
                if target_level is not None and target_level.is_stricter_than(previous):
                    server, violation = self._escalate_locked(
                        existing,
                        target_level,
                        trigger,
                        {"severity": severity.value, "reason": description, **context},
                        None,
                    )
                    action = MiddlewareAction.ESCALATED
                    message = f"Sandbox level escalated to {target_level} due to {severity} event"
                    details = {"previous_level": previous.value, "new_level": target_level.value}
                else:
                    server = existing
                    violation = self._record_locked(
                        existing,
                        ViolationType.SECURITY,
                        severity,
                        description,
                        {"trigger": trigger.value, **context},
                        "Logged",
                        (),
                    )
                    action = MiddlewareAction.NO_ACTION
                    message = (
                        f"Event logged, no sandbox escalation needed "
                        f"(current level: {previous})"
                    )
                    details = {"current_level": previous.value}
            snapshot = copy.deepcopy(server)

        await self._persist(snapshot, violation)
        return SandboxEventOutcome(
            action=action,
            server_id=server_id,
            message=message,
            level=snapshot.level,
            violation_id=violation.id if violation else None,
            details=details,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_sandboxed_server(self, server_id: str) -> SandboxedServer | None:
        """Snapshot of the record for *server_id*; mutating it has no effect."""
        server = self._servers.get(server_id)
        return copy.deepcopy(server) if server is not None else None

    def list_sandboxed_servers(self, status: SandboxStatus | None = None) -> list[SandboxedServer]:
        return [
            copy.deepcopy(s)
            for s in self._servers.values()
            if status is None or s.status == status
        ]

    def active_restrictions(self, server_id: str) -> Restrictions | None:
        """Restrictions to enforce for *server_id*, or None when traffic passes freely."""
        server = self._servers.get(server_id)
        if server is None or not server.is_enforcing:
            return None
        return server.current_restrictions

    def get_level(self, server_id: str) -> SandboxLevel | None:
        server = self._servers.get(server_id)
        return server.level if server is not None else None

    def get_history(self, server_id: str) -> list[SandboxHistoryEntry]:
        server = self._servers.get(server_id)
        return copy.deepcopy(server.history) if server is not None else []

    def get_archived(self, server_id: str | None = None) -> list[SandboxedServer]:
        """Released records that were replaced by a later sandboxing."""
        return [
            copy.deepcopy(s)
            for s in self._archive
            if server_id is None or s.server_id == server_id
        ]

    def get_violations(
        self, server_id: str | None = None, limit: int | None = None
    ) -> list[SandboxViolation]:
        """Retained violations, oldest first; *limit* keeps the newest N."""
        violations = [v for v in self._violations if server_id is None or v.server_id == server_id]
        if limit is not None:
            violations = violations[-limit:] if limit > 0 else []
        return violations

    def get_metrics(self) -> SandboxMetrics:
        servers = list(self._servers.values())
        by_status = {s.value: 0 for s in SandboxStatus}
        by_level = {lv.value: 0 for lv in SandboxLevel}
        for server in servers:
            by_status[server.status.value] += 1
            by_level[server.level.value] += 1
        return SandboxMetrics(
            total_sandboxed=self._created_count,
            by_status=by_status,
            by_level=by_level,
            violations_by_type=dict(self._violations_by_type),
            violations_by_severity=dict(self._violations_by_severity),
            threats_blocked=sum(s.stats.threats_blocked for s in servers),
            released_count=self._released_count,
            avg_time_in_sandbox_hours=(
                round(self._released_hours_total / self._released_count, 4)
                if self._released_count
                else 0.0
            ),
        )

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def add_policy(self, policy: SandboxPolicy) -> str:
        """Register *policy*, replacing any policy with the same id."""
        policy.updated_at = datetime.now(UTC)
        self._policies[policy.id] = policy
        log.info("policy_added", policy_id=policy.id, name=policy.name)
        return policy.id

    def remove_policy(self, policy_id: str) -> bool:
        """Remove a policy.

        Raises:
            PolicyError: A live sandbox record references the policy.
        """
        if policy_id not in self._policies:
            return False
        in_use = [
            s.server_id
            for s in self._servers.values()
            if not s.is_released and policy_id in s.policy_ids
        ]
        if in_use:
            raise PolicyError(
                f"Cannot remove policy {policy_id}: in use by {len(in_use)} sandboxed server(s)"
            )
        del self._policies[policy_id]
        log.info("policy_removed", policy_id=policy_id)
        return True

    def get_policy(self, policy_id: str) -> SandboxPolicy | None:
        return self._policies.get(policy_id)

    def list_policies(self, active_only: bool = True) -> list[SandboxPolicy]:
        policies = list(self._policies.values())
        return [p for p in policies if p.is_active] if active_only else policies

    def check_server_for_sandboxing(
        self, server_id: str, metrics: Mapping[str, Any]
    ) -> PolicyDecision:
        """Evaluate the active policies against *metrics* for one server."""
        decision = evaluate_policies(self.list_policies(active_only=True), metrics)
        log.debug(
            "policy_check",
            server_id=server_id,
            should_sandbox=decision.should_sandbox,
            level=decision.level.value if decision.level else None,
            policy_id=decision.policy_id,
        )
        return decision

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def hydrate(self, server_id: str) -> SandboxedServer | None:
        """Load *server_id* from the store unless it is already in memory."""
        async with self._locks.hold(server_id):
            if server_id not in self._servers:
                record = await load_best_effort(
                    self._server_store, server_id, timeout=self._store_timeout
                )
                server = self._from_record(record) if record is not None else None
                if server is not None:
                    self._servers[server_id] = server
            server = self._servers.get(server_id)
            return copy.deepcopy(server) if server is not None else None

    async def hydrate_all(self) -> int:
        """Load every stored server and violation not already in memory.

        Returns:
            Number of server records loaded.
        """
        loaded = 0
        for record in await load_all_best_effort(self._server_store, timeout=self._store_timeout):
            server = self._from_record(record)
            if server is None:
                continue
            async with self._locks.hold(server.server_id):
                if server.server_id not in self._servers:
                    self._servers[server.server_id] = server
                    loaded += 1

        known = {v.id for v in self._violations}
        restored: list[SandboxViolation] = []
        for record in await load_all_best_effort(
            self._violation_store, timeout=self._store_timeout
        ):
            try:
                violation = SandboxViolation.from_dict(record)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("violation_record_invalid", error=str(e))
                continue
            if violation.id not in known:
                restored.append(violation)
        if restored:
            merged = sorted([*self._violations, *restored], key=lambda v: v.timestamp)
            self._violations.clear()
            self._violations.extend(merged)
            for violation in restored:
                self._violations_by_type[violation.violation_type.value] += 1
                self._violations_by_severity[violation.severity.value] += 1

        log.info("sandbox_hydrated", servers=loaded, violations=len(restored))
        return loaded

    @staticmethod
    def _from_record(record: dict[str, Any]) -> SandboxedServer | None:
        try:
            return SandboxedServer.from_dict(record)
        except (KeyError, TypeError, ValueError) as e:
            log.warning(
                "sandbox_record_invalid", server_id=record.get("server_id"), error=str(e)
            )
            return None

    async def _persist(
        self, server: SandboxedServer, violation: SandboxViolation | None
    ) -> None:
        await save_best_effort(
            self._server_store, server.server_id, server.to_dict(), timeout=self._store_timeout
        )
        if violation is not None:
            await save_best_effort(
                self._violation_store,
                violation.id,
                violation.to_dict(),
                timeout=self._store_timeout,
            )

    # ------------------------------------------------------------------
    # Internals; callers hold the server's lock
    # ------------------------------------------------------------------

    def _require_live(self, server_id: str) -> SandboxedServer:
        server = self._servers.get(server_id)
        if server is None or server.is_released:
            raise ServerNotSandboxedError(f"Server {server_id} is not currently sandboxed")
        return server

    def _create_locked(
        self,
        server_id: str,
        server_name: str,
        level: SandboxLevel,
        trigger: SandboxTrigger,
        context: Mapping[str, Any],
        actor: str | None,
    ) -> tuple[SandboxedServer, SandboxViolation]:
        previous = self._servers.get(server_id)
        if previous is not None:
            self._archive.append(previous)

        now = datetime.now(UTC)
        server = SandboxedServer(
            server_id=server_id,
            server_name=server_name or f"Server {server_id}",
            level=level,
            created_by=actor or "system",
            created_at=now,
            updated_at=now,
        )
        server.stats.start_time = now
        self._append_history(
            server,
            SandboxHistoryEntry(
                event=HistoryEvent.CREATED,
                details=f"Server placed in {level} sandbox",
                triggered_by=trigger,
                timestamp=now,
                metadata=dict(context),
            ),
        )
        self._servers[server_id] = server
        self._created_count += 1

        violation = self._record_locked(
            server,
            ViolationType.SECURITY,
            self._change_severity(level, context),
            f"Server placed in {level} sandbox",
            {"trigger": trigger.value, "new_level": level.value, **context},
            "Sandboxed",
            (),
        )
        log.info(
            "sandbox_created",
            server_id=server_id,
            level=level.value,
            trigger=trigger.value,
            archived_previous=previous is not None,
        )
        return server, violation

    def _escalate_locked(
        self,
        server: SandboxedServer,
        new_level: SandboxLevel,
        trigger: SandboxTrigger,
        context: Mapping[str, Any],
        actor: str | None,
    ) -> tuple[SandboxedServer, SandboxViolation | None]:
        old_level = server.level
        if not new_level.is_stricter_than(old_level):
            log.debug(
                "sandbox_level_unchanged",
                server_id=server.server_id,
                level=old_level.value,
                requested=new_level.value,
            )
            return server, None

        now = datetime.now(UTC)
        server.level = new_level
        server.current_restrictions = restrictions_for(new_level)
        server.updated_at = now
        self._append_history(
            server,
            SandboxHistoryEntry(
                event=HistoryEvent.LEVEL_CHANGED,
                details=f"Sandbox level changed from {old_level} to {new_level}",
                triggered_by=trigger,
                timestamp=now,
                metadata={"actor": actor or "system", **context},
            ),
        )
        violation = self._record_locked(
            server,
            ViolationType.SECURITY,
            self._change_severity(new_level, context),
            f"Sandbox level escalated from {old_level} to {new_level}",
            {
                "trigger": trigger.value,
                "previous_level": old_level.value,
                "new_level": new_level.value,
                **context,
            },
            "Escalated",
            (),
        )
        log.warning(
            "sandbox_escalated",
            server_id=server.server_id,
            previous_level=old_level.value,
            level=new_level.value,
            trigger=trigger.value,
        )
        return server, violation

    def _record_locked(
        self,
        server: SandboxedServer,
        violation_type: ViolationType,
        severity: Severity,
        description: str,
        metadata: dict[str, Any],
        action_taken: str,
        related_ids: tuple[str, ...],
    ) -> SandboxViolation:
        violation = SandboxViolation(
            server_id=server.server_id,
            violation_type=violation_type,
            severity=severity,
            description=description,
            action_taken=action_taken,
            metadata=metadata,
            related_ids=related_ids,
        )
        self._violations.append(violation)
        self._violations_by_type[violation_type.value] += 1
        self._violations_by_severity[severity.value] += 1

        server.stats.violations += 1
        if violation.is_block:
            server.stats.threats_blocked += 1
        server.stats.last_violation_time = violation.timestamp
        server.updated_at = violation.timestamp
        self._append_history(
            server,
            SandboxHistoryEntry(
                event=HistoryEvent.VIOLATION,
                details=f"Security violation: {description}",
                triggered_by=SandboxTrigger.POLICY,
                timestamp=violation.timestamp,
                metadata={"violation_id": violation.id, "severity": severity.value},
            ),
        )
        log.info(
            "sandbox_violation_recorded",
            server_id=server.server_id,
            violation_id=violation.id,
            violation_type=violation_type.value,
            severity=severity.value,
            action_taken=action_taken,
        )
        return violation

    def _append_history(self, server: SandboxedServer, entry: SandboxHistoryEntry) -> None:
        server.history.append(entry)
        overflow = len(server.history) - self._history_limit
        if overflow > 0:
            del server.history[:overflow]

    @staticmethod
    def _change_severity(level: SandboxLevel, context: Mapping[str, Any]) -> Severity:
        if context.get("severity") is not None:
            return Severity.parse(context["severity"])
        return _LEVEL_SEVERITY[level]
