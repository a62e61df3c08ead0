"""
Audit Logging System.
Created: 2026-10-12

Append-only JSONL audit trail of provider events. Security violations
(code replay, redirect_uri mismatch, PKCE failure) are written at ALERT so
rate limiting or alerting can be layered on top of the file.
"""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pocketoidc.oidc import events as ev

logger = logging.getLogger("audit")


class AuditSeverity(str, Enum):
    INFO = "info"  # Normal operation (e.g. token issued)
    WARNING = "warning"  # Rejected request (e.g. invalid_grant)
    CRITICAL = "critical"  # Server-side failure
    ALERT = "alert"  # Security violation (e.g. code replay)


_SEVERITY_BY_EVENT = {
    ev.AUTHORIZATION_SUCCESS: AuditSeverity.INFO,
    ev.GRANT_SUCCESS: AuditSeverity.INFO,
    ev.INTERACTION_ENDED: AuditSeverity.INFO,
    ev.SESSION_ENDED: AuditSeverity.INFO,
    ev.AUTHORIZATION_ERROR: AuditSeverity.WARNING,
    ev.GRANT_ERROR: AuditSeverity.WARNING,
    ev.SERVER_ERROR: AuditSeverity.CRITICAL,
    ev.SECURITY_VIOLATION: AuditSeverity.ALERT,
}

AUDITED_EVENTS = frozenset(_SEVERITY_BY_EVENT)


@dataclass
class AuditEvent:
    """A single audit log entry."""

    id: str
    timestamp: str
    severity: AuditSeverity
    actor: str  # client_id that triggered the event, or "provider"
    action: str  # event name (e.g. "grant.success")
    status: str  # "success", "error", "violation"
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        severity: AuditSeverity,
        actor: str,
        action: str,
        status: str,
        **context: Any,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(tz=UTC).isoformat(),
            severity=severity,
            actor=actor,
            action=action,
            status=status,
            context=context,
        )


class AuditLogger:
    """
    Append-only audit logger.
    Writes to <config dir>/audit.jsonl unless a path is given.
    """

    def __init__(self, log_path: Path | None = None):
        if log_path is None:
            from pocketoidc.config import get_config_dir

            log_path = get_config_dir() / "audit.jsonl"
        self.log_path = log_path
        self._callbacks: list[Callable[[dict], None]] = []

    def on_log(self, callback: Callable[[dict], None]) -> None:
        """Register a callback to be called after each audit log write."""
        self._callbacks.append(callback)

    def log(self, event: AuditEvent) -> None:
        """Write an event to the audit log."""
        try:
            event_dict = asdict(event)
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event_dict, default=str) + "\n")
        except OSError as e:
            # Fall back to the system logger; the protocol flow must not fail on audit
            logger.critical(f"FAILED TO WRITE AUDIT LOG: {e} | Event: {event}")
            return
        for cb in self._callbacks:
            try:
                cb(event_dict)
            except Exception:
                logger.warning("Audit callback failed", exc_info=True)

    def __call__(self, name: str, payload: dict[str, Any]) -> None:
        """ProviderEvents subscriber entry point."""
        severity = _SEVERITY_BY_EVENT.get(name)
        if severity is None:
            return
        if severity == AuditSeverity.ALERT:
            status = "violation"
        elif severity == AuditSeverity.INFO:
            status = "success"
        else:
            status = "error"
        context = {k: v for k, v in payload.items() if k != "client_id"}
        self.log(
            AuditEvent.create(
                severity=severity,
                actor=str(payload.get("client_id") or "provider"),
                action=name,
                status=status,
                **context,
            )
        )

    def attach(self, events: ev.ProviderEvents) -> None:
        for name in AUDITED_EVENTS:
            events.subscribe(name, self)
