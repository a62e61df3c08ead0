# Provider event hooks.
# Created: 2026-10-12
#
# Subscribers are called synchronously at fixed points of the flow. A failing
# subscriber is logged and skipped; it never changes the protocol outcome.

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

AUTHORIZATION_VALIDATED = "authorization.validated"
AUTHORIZATION_SUCCESS = "authorization.success"
AUTHORIZATION_ERROR = "authorization.error"
INTERACTION_STARTED = "interaction.started"
INTERACTION_ENDED = "interaction.ended"
SESSION_ENDED = "session.ended"
GRANT_SUCCESS = "grant.success"
GRANT_ERROR = "grant.error"
SECURITY_VIOLATION = "security.violation"
SERVER_ERROR = "server_error"

EVENT_NAMES = frozenset(
    {
        AUTHORIZATION_VALIDATED,
        AUTHORIZATION_SUCCESS,
        AUTHORIZATION_ERROR,
        INTERACTION_STARTED,
        INTERACTION_ENDED,
        SESSION_ENDED,
        GRANT_SUCCESS,
        GRANT_ERROR,
        SECURITY_VIOLATION,
        SERVER_ERROR,
    }
)

Subscriber = Callable[[str, dict[str, Any]], None]


class ProviderEvents:
    """Synchronous observer registry. ``"*"`` receives every event."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}

    def subscribe(self, name: str, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for *name*. Returns a function that unsubscribes it."""
        if name != "*" and name not in EVENT_NAMES:
            raise ValueError(f"Unknown event: {name}")
        self._subscribers.setdefault(name, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    def emit(self, name: str, **payload: Any) -> None:
        for callback in [*self._subscribers.get(name, ()), *self._subscribers.get("*", ())]:
            try:
                callback(name, payload)
            except Exception:
                logger.warning("Event subscriber failed for %s", name, exc_info=True)


def log_event(name: str, payload: dict[str, Any]) -> None:
    """Subscriber writing one log line per event. Payloads never carry secrets."""
    fields = " ".join(f"{k}={v}" for k, v in sorted(payload.items()) if v is not None)
    if name in (SECURITY_VIOLATION, SERVER_ERROR):
        logger.warning("%s %s", name, fields)
    elif name.endswith(".error"):
        logger.info("%s %s", name, fields)
    else:
        logger.debug("%s %s", name, fields)
