"""
Voice engine connection.

The engine (speech recognition, TTS, LLM) is a remote service. The session
talks to it only through the VoiceEngine interface: start/stop the call, send
a message, subscribe to named events. The engine instance is created once at
startup and injected into the session; tests inject a fake.

WebhookEngine is the production implementation: call control goes over the
engine REST API (aiohttp), events arrive as HTTP callbacks on
POST /engine/events, and messages sent while an event is handled are returned
in that callback's HTTP response.
"""
from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from contextvars import ContextVar
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

import aiohttp

from logging_setup import get_logger, Component
from .errors import TransportError, redact_detail

logger = get_logger(Component.VOICE_ENGINE)


class EngineEvent(str, Enum):
    """Events emitted by the voice engine."""

    CALL_START = "call-start"
    CALL_END = "call-end"
    SPEECH_START = "speech-start"
    SPEECH_END = "speech-end"
    MESSAGE = "message"
    FUNCTION_CALL = "function-call"
    TOOL_CALLS = "tool-calls"
    ERROR = "error"


EventHandler = Callable[[Any], Any]


class VoiceEngine(Protocol):
    async def start(self, assistant: Dict[str, Any]) -> None: ...

    async def stop(self) -> None: ...

    async def send(self, message: Dict[str, Any]) -> None: ...

    def on(self, event: str, handler: EventHandler) -> None: ...


class EventChannel:
    """Named-event fan-out. Handlers may be plain or async callables."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    def on(self, event: str | EngineEvent, handler: EventHandler) -> None:
        key = event.value if isinstance(event, EngineEvent) else event
        self._handlers[key].append(handler)

    async def emit(self, event: str | EngineEvent, payload: Any = None) -> None:
        key = event.value if isinstance(event, EngineEvent) else event
        handlers = list(self._handlers.get(key, ()))
        if not handlers:
            logger.debug("No handler for engine event", engine_event=key)
        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # Don't crash the event stream - log and continue
                logger.exception("Engine event handler failed", engine_event=key, error_type=type(e).__name__)


_outbox: ContextVar[Optional[List[Dict[str, Any]]]] = ContextVar("engine_outbox", default=None)


class WebhookEngine(EventChannel):
    """Engine reached over its REST API, with events delivered by HTTP callback."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        timeout_seconds: float = 10,
    ):
        super().__init__()
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.call_id: Optional[str] = None
        self._pending: List[Dict[str, Any]] = []

    @classmethod
    def from_settings(cls, settings: Any) -> "WebhookEngine":
        api_key = settings.engine_api_key if settings.has_valid_engine_key() else None
        if api_key is None:
            logger.warning("Voice engine not configured - missing or invalid public key")
        return cls(settings.engine_api_url, api_key, timeout_seconds=settings.engine_timeout_seconds)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.api_url}{path}"
        try:
            async with aiohttp.ClientSession() as s:
                async with s.request(
                    method,
                    url,
                    json=json_body,
                    headers=self._headers(),
                    timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                ) as resp:
                    text = await resp.text()
                    if not 200 <= resp.status < 300:
                        logger.error("Voice engine request rejected", method=method, url=url, status=resp.status)
                        raise TransportError.from_response(resp.status, resp.reason, text)
                    if not text:
                        return None
                    try:
                        return await resp.json(content_type=None)
                    except ValueError:
                        return None
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Voice engine unreachable", method=method, url=url, error=redact_detail(str(e)), error_type=type(e).__name__)
            raise TransportError(f"Failed to connect to voice engine: {e}") from e

    async def start(self, assistant: Dict[str, Any]) -> None:
        if not self.api_key:
            raise TransportError("Please configure your voice engine credentials (ENGINE_API_KEY)")
        data = await self._request("POST", "/call/web", {"assistant": assistant})
        self.call_id = data.get("id") if isinstance(data, dict) else None
        logger.info("Voice engine call created", call_id=self.call_id)

    async def stop(self) -> None:
        call_id, self.call_id = self.call_id, None
        if not call_id or not self.api_key:
            return
        await self._request("DELETE", f"/call/{call_id}")
        logger.info("Voice engine call stopped", call_id=call_id)

    async def send(self, message: Dict[str, Any]) -> None:
        outbox = _outbox.get()
        if outbox is not None:
            outbox.append(message)
        else:
            self._pending.append(message)

    async def deliver(self, event: str | EngineEvent, payload: Any = None) -> List[Dict[str, Any]]:
        """
        Run the handlers for one engine callback.

        Returns the messages sent while handling it, preceded by anything
        queued since the previous callback.
        """
        collected: List[Dict[str, Any]] = []
        token = _outbox.set(collected)
        try:
            await self.emit(event, payload)
        finally:
            _outbox.reset(token)
        pending, self._pending = self._pending, []
        return pending + collected


def translate_server_message(body: Mapping[str, Any]) -> List[Tuple[str, Any]]:
    """
    Map one engine callback body to (event, payload) pairs.

    Accepts either `{"event": name, "payload": ...}` or an engine server
    message `{"message": {"type": ..., ...}}`.
    """
    if isinstance(body.get("event"), str):
        return [(body["event"], body.get("payload"))]

    message = body.get("message")
    if not isinstance(message, Mapping):
        return []

    kind = message.get("type")
    if kind == "status-update":
        status = message.get("status")
        if status == "in-progress":
            return [(EngineEvent.CALL_START.value, message)]
        if status == "ended":
            return [(EngineEvent.CALL_END.value, message)]
        return [(EngineEvent.MESSAGE.value, message)]
    if kind == "end-of-call-report":
        return [(EngineEvent.CALL_END.value, message)]
    if kind == "function-call":
        return [(EngineEvent.MESSAGE.value, message), (EngineEvent.FUNCTION_CALL.value, message)]
    if kind == "tool-calls":
        return [(EngineEvent.TOOL_CALLS.value, message)]
    if kind == "error":
        return [(EngineEvent.ERROR.value, message)]
    return [(EngineEvent.MESSAGE.value, message)]
