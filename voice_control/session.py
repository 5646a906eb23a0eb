"""
Voice session lifecycle.

One VoiceSession per client process. Status moves idle -> connecting ->
active -> ended (and back to connecting on the next start). `listening` and
`speaking` only change while active. The message log survives the end of a
call and is cleared by the next start.

Engine events are handled as they arrive. No handler raises: faults end up in
the session's error slot or in a failed function result.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter
from .dispatcher import FunctionCall, FunctionDispatcher, failure_result, parse_function_call, parse_tool_calls
from .engine import EngineEvent, VoiceEngine
from .errors import MalformedCallError, describe_engine_error

logger = get_logger(LogComponent.VOICE_SESSION)

PROGRESS_NOTES = {
    "get_current_time": "Getting current time...",
    "verify_pin": "Verifying PIN...",
    "send_webhook_notification": "Sending notification...",
}


class SessionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDED = "ended"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionMessage:
    role: str
    content: str
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp.isoformat()}


def _new_session_id() -> str:
    return str(uuid.uuid4())


class VoiceSession:
    """State machine driven by local start/end calls and by engine events."""

    def __init__(
        self,
        engine: VoiceEngine,
        dispatcher: FunctionDispatcher,
        assistant_config: Optional[Dict[str, Any]] = None,
        *,
        session_id_factory: Callable[[], str] = _new_session_id,
    ):
        self.engine = engine
        self.dispatcher = dispatcher
        self.assistant_config = assistant_config or {}
        self._new_id = session_id_factory

        self.session_id = self._new_id()
        self.status = SessionStatus.IDLE
        self.listening = False
        self.speaking = False
        self.transcript = ""
        self.messages: List[SessionMessage] = []
        self.error: Optional[str] = None

        # result per call id seen during the current call; pending while the first copy runs
        self._answered: Dict[str, asyncio.Future] = {}
        self._attached = False
        self.emitter = EventEmitter(ObsComponent.VOICE_SESSION)
        self.logger = logger.with_session(self.session_id)

    # --- wiring ---

    def attach(self) -> "VoiceSession":
        """Subscribe to the engine's events. Safe to call more than once."""
        if self._attached:
            return self
        self.engine.on(EngineEvent.CALL_START.value, self._on_call_start)
        self.engine.on(EngineEvent.CALL_END.value, self._on_call_end)
        self.engine.on(EngineEvent.SPEECH_START.value, self._on_speech_start)
        self.engine.on(EngineEvent.SPEECH_END.value, self._on_speech_end)
        self.engine.on(EngineEvent.MESSAGE.value, self._on_message)
        self.engine.on(EngineEvent.FUNCTION_CALL.value, self._on_function_call)
        self.engine.on(EngineEvent.TOOL_CALLS.value, self._on_tool_calls)
        self.engine.on(EngineEvent.ERROR.value, self._on_error)
        self._attached = True
        return self

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def _transition(self, new_status: SessionStatus) -> SessionStatus:
        old_status = self.status
        self.status = new_status
        if old_status != new_status:
            self.emitter.session_state_changed(self.session_id, old_status.value, new_status.value)
        return old_status

    def _reset_call_state(self) -> None:
        self.session_id = self._new_id()
        self.logger = logger.with_session(self.session_id)
        self.messages = []
        self.transcript = ""
        self.error = None
        self.listening = False
        self.speaking = False
        self._answered = {}

    def _record_error(self, message: Optional[str]) -> None:
        self.error = message or "Unknown error occurred"

    def _record_engine_error(self, error: Any) -> None:
        self._record_error(f"Voice engine error: {describe_engine_error(error)}")

    # --- local control ---

    async def start(self) -> None:
        """Ask the engine for a call. Active once the engine confirms with call-start."""
        if self.status in (SessionStatus.CONNECTING, SessionStatus.ACTIVE):
            self.logger.warning("Start ignored; call already in progress", status=self.status.value)
            return

        previous = self.status
        self._reset_call_state()
        self._transition(SessionStatus.CONNECTING)
        self.logger.info(
            "Starting voice call",
            functions=[f.get("name") for f in self.assistant_config.get("functions", [])],
        )
        try:
            await self.engine.start(self.assistant_config)
        except Exception as e:
            self.logger.error("Failed to start voice call", error=describe_engine_error(e), error_type=type(e).__name__)
            if self.status == SessionStatus.CONNECTING:
                self._transition(previous)
            self._record_engine_error(e)

    async def end(self) -> None:
        """Hang up. No-op when there is no call; the session ends even if the engine stop fails."""
        if self.status in (SessionStatus.IDLE, SessionStatus.ENDED):
            self.logger.debug("End ignored; no call in progress", status=self.status.value)
            return
        try:
            await self.engine.stop()
        except Exception as e:
            self.logger.error("Failed to stop voice call", error=describe_engine_error(e), error_type=type(e).__name__)
            self._record_engine_error(e)
        self._finish_call("local_end")

    async def send_message(self, text: str) -> bool:
        """Inject a user message into the live conversation."""
        if not self.is_active:
            return False
        try:
            await self.engine.send({"type": "add-message", "message": {"role": "user", "content": text}})
        except Exception as e:
            self.logger.error("Failed to send message", error=describe_engine_error(e))
            self._record_engine_error(e)
            return False
        self.messages.append(SessionMessage(role="user", content=text))
        return True

    def _finish_call(self, reason: str) -> None:
        self.listening = False
        self.speaking = False
        if self.status != SessionStatus.ENDED:
            self._transition(SessionStatus.ENDED)
            self.logger.info("Call ended", reason=reason, messages=len(self.messages))

    # --- engine events ---

    def _on_call_start(self, _payload: Any = None) -> None:
        if self.status == SessionStatus.ACTIVE:
            self.logger.debug("Duplicate call-start ignored")
            return
        if self.status in (SessionStatus.IDLE, SessionStatus.ENDED):
            # call started on the engine side without a local start()
            self._reset_call_state()
        self._transition(SessionStatus.ACTIVE)
        self.logger.info("Call started")

    def _on_call_end(self, _payload: Any = None) -> None:
        if self.status == SessionStatus.IDLE:
            return
        self._finish_call("engine_call_end")

    def _on_speech_start(self, _payload: Any = None) -> None:
        if self.is_active:
            self.listening = True

    def _on_speech_end(self, _payload: Any = None) -> None:
        if self.is_active:
            self.listening = False

    def _on_message(self, message: Any) -> None:
        if not isinstance(message, Mapping):
            return
        kind = message.get("type")

        if kind == "transcript":
            if message.get("transcriptType") != "final" or not self.is_active:
                return
            text = message.get("transcript")
            if isinstance(text, str) and text.strip():
                self.transcript = text
                self.messages.append(SessionMessage(role=message.get("role") or "user", content=text))

        elif kind == "function-call":
            if not self.is_active:
                return
            call = message.get("functionCall") if isinstance(message.get("functionCall"), Mapping) else message
            name = call.get("name") or call.get("functionName")
            note = PROGRESS_NOTES.get(name, "Processing...") if isinstance(name, str) else "Processing..."
            self.messages.append(SessionMessage(role="system", content=note))

        elif kind == "speech-update":
            if self.is_active and message.get("role") == "assistant":
                self.speaking = message.get("status") == "started"

    async def _on_function_call(self, payload: Any) -> None:
        await self._handle_function_call(payload)

    async def _on_tool_calls(self, payload: Any) -> None:
        calls = parse_tool_calls(payload)
        await asyncio.gather(*(self._handle_function_call(call) for call in calls))

    def _on_error(self, error: Any) -> None:
        self.logger.warning("Voice engine reported an error", error=describe_engine_error(error))
        self._record_engine_error(error)

    # --- function calls ---

    async def _handle_function_call(self, payload: Any) -> None:
        try:
            call = parse_function_call(payload)
        except MalformedCallError as e:
            self.logger.warning("Malformed function call", error=str(e), call_id=e.call_id)
            await self._send_result(e.call_id, None, failure_result(str(e), e.category))
            return

        if call.call_id is None:
            self.logger.warning("Function call without call id", function=call.name)
            result = await self._dispatch(call)
        elif call.call_id in self._answered:
            # redelivered call: answer again with the first result, never dispatch twice
            self.logger.info("Repeated function call; resending result", call_id=call.call_id, function=call.name)
            result = await self._answered[call.call_id]
        else:
            pending = asyncio.get_running_loop().create_future()
            self._answered[call.call_id] = pending
            try:
                result = await self._dispatch(call)
            except BaseException:
                if self._answered.get(call.call_id) is pending:
                    del self._answered[call.call_id]
                pending.cancel()
                raise
            pending.set_result(result)

        await self._send_result(call.call_id, call.name, result)

    async def _dispatch(self, call: FunctionCall) -> Dict[str, Any]:
        if not self.is_active:
            self.logger.warning("Function call outside an active call", function=call.name, status=self.status.value)

        result = await self.dispatcher.dispatch_call(call, session_id=self.session_id)
        if not result.get("success"):
            self._record_error(result.get("error"))
        return result

    async def _send_result(self, call_id: Optional[str], name: Optional[str], result: Dict[str, Any]) -> None:
        message = {"type": "function-result", "functionCallId": call_id, "result": result}
        try:
            await self.engine.send(message)
        except Exception as e:
            self.logger.error("Failed to send function result", call_id=call_id, function=name, error=describe_engine_error(e))
            self._record_engine_error(e)
            return
        self.emitter.function_result_sent(self.session_id, call_id=call_id, function=name, success=bool(result.get("success")))

    # --- read model ---

    def snapshot(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "listening": self.listening,
            "speaking": self.speaking,
            "transcript": self.transcript,
            "error": self.error,
            "messages": [m.to_dict() for m in self.messages],
        }
