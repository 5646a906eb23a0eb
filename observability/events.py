"""
Structured JSON event emission.

Every event uses the same envelope (ts, session_id, component, event_type,
severity, correlation_id, pii) and is written as one JSON line to stdout and
kept in the in-memory event store for the control API.
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .event_store import event_store


class Component(str, Enum):
    """Event-producing components."""

    VOICE_SESSION = "voice_session"
    DISPATCHER = "dispatcher"
    PIN_AUTH = "pin_auth"
    NOTIFIER = "notifier"
    CONTROL_API = "control_api"


class Severity(str, Enum):
    """Event severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


DEFAULT_PII = {"contains_pii": False, "fields": [], "handling": "none"}


class EventEmitter:
    """Emits structured JSON events for one component."""

    def __init__(self, component: Component):
        self.component = component

    def emit(
        self,
        event_type: str,
        session_id: str,
        severity: Severity = Severity.INFO,
        correlation_id: Optional[str] = None,
        pii: Optional[Dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": session_id,
            "component": self.component.value,
            "event_type": event_type,
            "severity": severity.value,
            "correlation_id": correlation_id or session_id,
            "pii": pii or DEFAULT_PII,
        }
        event.update(kwargs)

        sys.stdout.write(json.dumps(event, ensure_ascii=False, default=str))
        sys.stdout.write("\n")
        sys.stdout.flush()

        event_store.store(event)

    def session_state_changed(self, session_id: str, from_state: str, to_state: str) -> None:
        """Emit session.state_changed."""
        self.emit(
            "session.state_changed",
            session_id,
            from_state=from_state,
            to_state=to_state,
        )

    def function_dispatched(
        self,
        session_id: str,
        function: str,
        success: bool,
        latency_ms: int,
        call_id: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        """Emit function.dispatched (one per dispatch, success or not)."""
        self.emit(
            "function.dispatched",
            session_id,
            severity=Severity.INFO if success else Severity.WARN,
            correlation_id=call_id,
            function=function,
            success=success,
            error_type=error_type,
            latency_ms=latency_ms,
        )

    def function_result_sent(
        self,
        session_id: str,
        call_id: Optional[str],
        function: Optional[str],
        success: bool,
    ) -> None:
        """Emit function.result_sent once a result has been handed to the engine."""
        self.emit(
            "function.result_sent",
            session_id,
            correlation_id=call_id,
            function=function,
            success=success,
        )

    def pin_checked(
        self,
        session_id: str,
        operation: str,
        success: bool,
        reason: Optional[str] = None,
    ) -> None:
        """Emit pin.checked. The PIN itself is never part of the event."""
        self.emit(
            "pin.checked",
            session_id,
            severity=Severity.INFO if success else Severity.WARN,
            operation=operation,
            success=success,
            reason=reason,
        )
