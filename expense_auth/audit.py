"""Audit logging for expense-auth.

Ring buffer of security-relevant events (authorization, PIN, admin
edits, session revocation) with summary statistics. Every event is
also written to the ``expense_auth.audit`` logger.
"""

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import Request

log = logging.getLogger("expense_auth.audit")


@dataclass
class AuditEvent:
    """Single audit log event."""

    timestamp: float
    action: str
    principal_id: str
    status: str
    details: Dict[str, Any] = field(default_factory=dict)
    source_ip: str = ""


def client_ip(request: Optional[Request]) -> str:
    """Client IP, honouring the first X-Forwarded-For hop."""
    if request is None:
        return ""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


class AuditLogger:
    """Ring buffer for audit events."""

    def __init__(self, buffer_size: int = 1000):
        self.events: deque = deque(maxlen=buffer_size)
        self.success_count = 0
        self.denied_count = 0

    def log_access(
        self,
        action: str,
        principal_id: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        request: Optional[Request] = None,
    ) -> AuditEvent:
        """Record an access decision.

        Args:
            action: Dotted action name, e.g. "auth.authorize"
            principal_id: Email, session ref, "admin" or "anonymous"
            status: "success", "denied" or "error"
            details: Extra context (never PINs or tokens)
            request: Source request, for the client IP
        """
        event = AuditEvent(
            timestamp=time.time(),
            action=action,
            principal_id=principal_id,
            status=status,
            details=details or {},
            source_ip=client_ip(request),
        )
        self.events.append(event)
        if status == "success":
            self.success_count += 1
        elif status == "denied":
            self.denied_count += 1

        log.info(
            f"audit action={action} principal={principal_id} status={status}",
            extra={"audit": asdict(event)},
        )
        return event

    def get_recent_events(
        self,
        limit: int = 100,
        action_filter: Optional[str] = None,
        status_filter: Optional[str] = None,
    ) -> List[AuditEvent]:
        """Most recent events, oldest first.

        Args:
            limit: Maximum number of events
            action_filter: Action prefix, e.g. "admin."
            status_filter: Exact status
        """
        events = [
            e for e in self.events
            if (action_filter is None or e.action.startswith(action_filter))
            and (status_filter is None or e.status == status_filter)
        ]
        return events[-limit:] if limit > 0 else []

    def get_summary(self, window_seconds: int = 600) -> Dict[str, Any]:
        """Counts by status for the recent window and all time."""
        cutoff = time.time() - window_seconds
        recent = [e for e in self.events if e.timestamp >= cutoff]
        return {
            "window_seconds": window_seconds,
            "total_events": len(recent),
            "success_count": sum(1 for e in recent if e.status == "success"),
            "denied_count": sum(1 for e in recent if e.status == "denied"),
            "all_time": {
                "success_count": self.success_count,
                "denied_count": self.denied_count,
            },
        }


# Global audit logger
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create the global audit logger."""
    global _audit_logger
    if _audit_logger is None:
        from expense_auth.config import AUDIT_BUFFER_SIZE
        _audit_logger = AuditLogger(buffer_size=AUDIT_BUFFER_SIZE)
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)."""
    global _audit_logger
    _audit_logger = None
