"""Forensic logging for detected injection attempts.

The full payload is never logged; only a hash, its length and a short preview.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime

from mcp_warden.logging import get_logger
from mcp_warden.security.models import DetectionResult

log = get_logger("mcp_warden.security.forensics")


def log_detection_event(
    *,
    payload: str,
    result: DetectionResult,
    server_id: str | None = None,
    request_id: str = "",
) -> None:
    """Log a detailed forensic record for a malicious payload."""
    content_hash = hashlib.sha256(payload.encode("utf-8", errors="replace")).hexdigest()

    log.warning(
        "security_event",
        event_type="injection_detected",
        request_id=request_id,
        server_id=server_id,
        timestamp=datetime.now(UTC).isoformat(),
        risk_score=round(result.risk_score, 4),
        confidence=round(result.confidence, 4),
        finding_count=len(result.findings),
        findings=[
            {
                "category": f.category.value,
                "pattern": f.metadata.get("pattern", "heuristic"),
                "confidence": round(f.confidence, 3),
                "matched": str(f.metadata.get("matched_text", ""))[:100],
            }
            for f in result.findings
        ],
        content_hash=content_hash,
        content_length=len(payload),
        content_preview=payload[:200],
        truncated=result.truncated,
    )
