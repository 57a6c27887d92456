"""Enforcement middleware for sandboxed servers.

Sits on the request path. Turns upstream security events into containment
decisions and applies the current restrictions to live traffic.

Inspection fails open: if anything goes wrong while inspecting, the traffic
is allowed and the error is logged. Blocking legitimate traffic by accident
is treated as worse than a missed block at this layer.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from aiohttp import web

from mcp_warden.logging import get_logger
from mcp_warden.reputation.models import EventType, SecurityEvent
from mcp_warden.sandbox.manager import SandboxManager, ServerNotSandboxedError
from mcp_warden.sandbox.models import (
    MiddlewareAction,
    RequestInspection,
    Restrictions,
    SandboxEventOutcome,
    SandboxLevel,
    SandboxTrigger,
    TrafficRequest,
    TrafficResponse,
    ViolationType,
)
from mcp_warden.security.models import Severity

log = get_logger("mcp_warden.sandbox.middleware")

SEVERITY_LEVELS: dict[Severity, SandboxLevel] = {
    Severity.LOW: SandboxLevel.LIGHT,
    Severity.MEDIUM: SandboxLevel.LIGHT,
    Severity.HIGH: SandboxLevel.MODERATE,
    Severity.CRITICAL: SandboxLevel.STRICT,
}

EVENT_TRIGGERS: dict[EventType, SandboxTrigger] = {
    EventType.SECURITY_INCIDENT: SandboxTrigger.THREAT_INTEL,
    EventType.PERFORMANCE_ISSUE: SandboxTrigger.ANOMALY,
    EventType.MANUAL_REVIEW: SandboxTrigger.MANUAL,
    EventType.POSITIVE_BEHAVIOR: SandboxTrigger.REPUTATION,
}

DEFAULT_REASONS: dict[EventType, str] = {
    EventType.SECURITY_INCIDENT: "Potential security threat detected",
    EventType.PERFORMANCE_ISSUE: "Anomalous behavior detected",
    EventType.MANUAL_REVIEW: "Manually triggered by administrator",
    EventType.POSITIVE_BEHAVIOR: "Positive behavior reported",
}

SANDBOX_VIOLATION_HEADER = "X-Sandbox-Violation"


class SandboxMiddleware:
    """Apply a :class:`SandboxManager`'s decisions to events and traffic."""

    def __init__(self, manager: SandboxManager):
        self.manager = manager

    async def process_security_event(
        self, event: SecurityEvent, server_name: str | None = None
    ) -> SandboxEventOutcome:
        """Sandbox, escalate or log a server in response to *event*.

        Never raises; failures come back as the ``error`` outcome.
        """
        try:
            if event.event_type == EventType.POSITIVE_BEHAVIOR:
                return SandboxEventOutcome(
                    action=MiddlewareAction.NO_ACTION,
                    server_id=event.server_id,
                    message="Positive behavior never changes containment",
                    level=self.manager.get_level(event.server_id),
                )

            target_level = SEVERITY_LEVELS.get(event.severity)
            outcome = await self.manager.apply_security_event(
                server_id=event.server_id,
                server_name=server_name or f"Server {event.server_id}",
                target_level=target_level,
                trigger=self._trigger_for(event),
                severity=event.severity,
                description=event.description or DEFAULT_REASONS[event.event_type],
                context={"event_id": event.id, "event_type": event.event_type.value},
            )
        except Exception as e:
            log.exception(
                "security_event_processing_failed",
                server_id=event.server_id,
                event_type=str(event.event_type),
                error=str(e),
            )
            return SandboxEventOutcome(
                action=MiddlewareAction.ERROR,
                server_id=event.server_id,
                message=f"Failed to process security event: {e}",
                details={"error": str(e)},
            )

        log.info(
            "security_event_processed",
            server_id=event.server_id,
            event_type=event.event_type.value,
            severity=event.severity.value,
            action=outcome.action.value,
            level=outcome.level.value if outcome.level else None,
        )
        return outcome

    async def inspect_request(self, request: TrafficRequest, server_id: str) -> RequestInspection:
        """Decide whether an outbound request from *server_id* may proceed."""
        try:
            restrictions = self.manager.active_restrictions(server_id)
            if restrictions is None or restrictions.network_access:
                return RequestInspection()

            violation = await self.manager.record_violation(
                server_id,
                ViolationType.NETWORK,
                Severity.HIGH,
                "Attempted network access while in sandbox",
                {
                    "method": request.method,
                    "path": request.path,
                    "destination": request.destination,
                },
                "Blocked by sandbox policy",
            )
            return RequestInspection(
                should_block=True,
                reason="Network access is restricted for this server",
                action_taken="Blocked",
                violation_id=violation.id,
            )
        except ServerNotSandboxedError:
            # released between the restriction lookup and the write
            return RequestInspection()
        except Exception as e:
            log.exception("request_inspection_failed", server_id=server_id, error=str(e))
            return RequestInspection(
                reason="Error during request inspection",
                action_taken="Allowed (error)",
            )

    async def inspect_response(
        self, request: TrafficRequest, response: TrafficResponse, server_id: str
    ) -> TrafficResponse:
        """Return *response* unchanged, or a 413 replacement when it is too large."""
        try:
            restrictions = self.manager.active_restrictions(server_id)
            if restrictions is None:
                return response

            size = response.content_length
            limit = restrictions.memory_limit_bytes
            if size <= limit:
                return response

            await self.manager.record_violation(
                server_id,
                ViolationType.RESOURCE,
                Severity.HIGH,
                "Response size exceeds memory limit",
                {
                    "content_length": size,
                    "limit": limit,
                    "url": request.url,
                    "method": request.method,
                },
                "Response body truncated",
            )
            body = json.dumps(
                {
                    "error": "Response too large",
                    "message": (
                        "Response exceeds the maximum allowed size of "
                        f"{restrictions.memory_limit_mb}MB"
                    ),
                }
            ).encode()
            return TrafficResponse(
                status=413,
                body=body,
                headers={
                    "Content-Type": "application/json",
                    SANDBOX_VIOLATION_HEADER: "response_too_large",
                },
            )
        except ServerNotSandboxedError:
            return response
        except Exception as e:
            log.exception("response_inspection_failed", server_id=server_id, error=str(e))
            return response

    def is_server_sandboxed(self, server_id: str) -> bool:
        return self.manager.active_restrictions(server_id) is not None

    def get_sandbox_level(self, server_id: str) -> SandboxLevel | None:
        return self.manager.get_level(server_id)

    def get_server_restrictions(self, server_id: str) -> Restrictions | None:
        server = self.manager.get_sandboxed_server(server_id)
        return server.current_restrictions if server is not None else None

    @staticmethod
    def _trigger_for(event: SecurityEvent) -> SandboxTrigger:
        requested = event.metadata.get("trigger")
        if requested is not None:
            try:
                return SandboxTrigger(str(requested))
            except ValueError:
                log.warning("unknown_sandbox_trigger", server_id=event.server_id, value=requested)
        return EVENT_TRIGGERS[event.event_type]


def traffic_request_from(request: web.Request) -> TrafficRequest:
    return TrafficRequest(
        method=request.method,
        path=request.path,
        destination=request.host,
        url=str(request.url),
        content_length=request.content_length,
    )


def _traffic_response_from(response: web.Response) -> TrafficResponse:
    headers = dict(response.headers)
    if not any(k.lower() == "content-length" for k in headers):
        length = response.content_length
        if length is not None:
            headers["Content-Length"] = str(length)
    body = response.body if isinstance(response.body, bytes) else b""
    return TrafficResponse(status=response.status, body=body, headers=headers)


def create_sandbox_middleware(
    sandbox: SandboxMiddleware,
    resolve_server_id: Callable[[web.Request], str | None],
) -> Any:
    """Create aiohttp middleware enforcing sandbox restrictions.

    Args:
        sandbox: The enforcement middleware to consult.
        resolve_server_id: Maps a request to the managed server it belongs
            to, or None for traffic that is not subject to sandboxing.
    """

    @web.middleware
    async def sandbox_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
        server_id = resolve_server_id(request)
        if not server_id:
            return await handler(request)  # type: ignore[no-any-return]

        traffic = traffic_request_from(request)
        inspection = await sandbox.inspect_request(traffic, server_id)
        if inspection.should_block:
            return web.json_response(
                {
                    "error": "Blocked by sandbox policy",
                    "reason": inspection.reason,
                    "violation_id": inspection.violation_id,
                },
                status=403,
            )

        response = await handler(request)
        if not isinstance(response, web.Response):
            return response  # type: ignore[no-any-return]

        original = _traffic_response_from(response)
        checked = await sandbox.inspect_response(traffic, original, server_id)
        if checked is original:
            return response
        return web.Response(status=checked.status, body=checked.body, headers=checked.headers)

    return sandbox_middleware
