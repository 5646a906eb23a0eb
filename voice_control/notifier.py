"""
Outbound webhook notification.

Best-effort, fire-and-forget side effect: one POST, no retry, independent of
the caller's authentication state. Failures are reported in the outcome and
never raised, so a broken webhook cannot abort a voice session.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter, Severity

NOTIFICATION_SOURCE = "vapi-function-call"

logger = get_logger(LogComponent.NOTIFIER)


@dataclass
class NotificationOutcome:
    """Result of one delivery attempt. `delivered` is False on any failure."""

    delivered: bool
    webhook_url: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    status: Optional[int] = None
    response_text: Optional[str] = None
    error: Optional[str] = None
    latency_ms: int = 0

    def to_result(self) -> Dict[str, Any]:
        """Function-result envelope for the voice engine."""
        timestamp = datetime.now(timezone.utc).isoformat()
        if self.delivered:
            return {
                "success": True,
                "message": "Webhook notification sent successfully",
                "webhook_url": self.webhook_url,
                "response_status": self.status,
                "response_data": self.response_text,
                "sent_payload": self.payload,
                "timestamp": timestamp,
            }
        result: Dict[str, Any] = {
            "success": False,
            "error": self.error,
            "webhook_url": self.webhook_url,
            "timestamp": timestamp,
        }
        if self.status is not None:
            result["response_status"] = self.status
        return result


def build_payload(message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """`{message, timestamp, source, **data}`; keys in data override the defaults."""
    return {
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": NOTIFICATION_SOURCE,
        **(data or {}),
    }


class WebhookNotifier:
    """Posts notification payloads to one fixed endpoint."""

    def __init__(self, url: Optional[str], timeout_seconds: float = 10):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.emitter = EventEmitter(ObsComponent.NOTIFIER)

    async def notify(
        self,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        session_id: str = "control",
    ) -> NotificationOutcome:
        payload = build_payload(message, data)

        if not self.url:
            logger.warning("Notification webhook URL not configured; skipping", session_id=session_id)
            return self._report(NotificationOutcome(
                delivered=False,
                webhook_url=None,
                payload=payload,
                error="Webhook URL not configured",
            ), session_id)

        start_ts = time.time()
        logger.info("Sending webhook notification", webhook_url=self.url, session_id=session_id)
        try:
            async with aiohttp.ClientSession() as s:
                async with s.post(
                    self.url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as resp:
                    text = await resp.text()
                    latency_ms = int((time.time() - start_ts) * 1000)
                    if not 200 <= resp.status < 300:
                        return self._report(NotificationOutcome(
                            delivered=False,
                            webhook_url=self.url,
                            payload=payload,
                            status=resp.status,
                            response_text=text,
                            error=f"Webhook request failed with status {resp.status}: {text}",
                            latency_ms=latency_ms,
                        ), session_id)
                    return self._report(NotificationOutcome(
                        delivered=True,
                        webhook_url=self.url,
                        payload=payload,
                        status=resp.status,
                        response_text=text,
                        latency_ms=latency_ms,
                    ), session_id)
        except Exception as e:
            return self._report(NotificationOutcome(
                delivered=False,
                webhook_url=self.url,
                payload=payload,
                error=f"Failed to send webhook notification: {str(e) or type(e).__name__}",
                latency_ms=int((time.time() - start_ts) * 1000),
            ), session_id)

    def _report(self, outcome: NotificationOutcome, session_id: str) -> NotificationOutcome:
        if outcome.delivered:
            logger.info(
                "Webhook notification delivered",
                webhook_url=outcome.webhook_url,
                status=outcome.status,
                latency_ms=outcome.latency_ms,
                session_id=session_id,
            )
        else:
            logger.warning(
                "Webhook notification failed",
                webhook_url=outcome.webhook_url,
                status=outcome.status,
                error=outcome.error,
                latency_ms=outcome.latency_ms,
                session_id=session_id,
            )
        self.emitter.emit(
            "notification.sent",
            session_id,
            severity=Severity.INFO if outcome.delivered else Severity.WARN,
            delivered=outcome.delivered,
            status=outcome.status,
            latency_ms=outcome.latency_ms,
        )
        return outcome
