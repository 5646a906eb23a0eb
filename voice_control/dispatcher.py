"""
Function-call dispatch.

Engine payloads arrive in several shapes (flat `functionName`/`parameters`,
OpenAI-style `function: {name, arguments}` with JSON-string arguments, tool
call lists). parse_function_call reduces every shape to one FunctionCall.

FunctionDispatcher.dispatch never raises: unknown names, bad parameters,
handler faults and unserializable results all come back as
`{success: False, error, error_type, timestamp}`.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ValidationError

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter
from .errors import (
    ErrorCategory,
    InvalidParametersError,
    MalformedCallError,
    UnknownFunctionError,
    classify_error,
    redact_detail,
)
from .functions import CallContext, FunctionRegistry

logger = get_logger(LogComponent.DISPATCHER)


@dataclass(frozen=True)
class FunctionCall:
    """One function invocation requested by the engine."""

    call_id: Optional[str]
    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _call_id_of(payload: Mapping[str, Any]) -> Optional[str]:
    call_id = _first(payload.get("functionCallId"), payload.get("toolCallId"), payload.get("id"))
    return str(call_id) if call_id is not None else None


def parse_function_call(payload: Any) -> FunctionCall:
    """
    Build a FunctionCall from one engine payload.

    Raises MalformedCallError (carrying whatever call id was found) when the
    payload has no function name or its arguments cannot be decoded.
    """
    if not isinstance(payload, Mapping):
        raise MalformedCallError(f"Function call payload must be an object, got {type(payload).__name__}")

    # some engines wrap the call one level deeper
    if isinstance(payload.get("functionCall"), Mapping):
        inner = dict(payload["functionCall"])
        inner.setdefault("functionCallId", _call_id_of(payload))
        payload = inner

    call_id = _call_id_of(payload)
    nested = payload.get("function") if isinstance(payload.get("function"), Mapping) else {}

    name = _first(payload.get("functionName"), payload.get("name"), nested.get("name"))
    if not isinstance(name, str) or not name.strip():
        raise MalformedCallError("Function name not found in call", call_id=call_id)

    raw_params = _first(payload.get("parameters"), payload.get("arguments"), nested.get("arguments"))
    if raw_params is None:
        parameters: Dict[str, Any] = {}
    elif isinstance(raw_params, str):
        if not raw_params.strip():
            parameters = {}
        else:
            try:
                parameters = json.loads(raw_params)
            except json.JSONDecodeError as e:
                raise MalformedCallError(f"Function arguments are not valid JSON: {e.msg}", call_id=call_id) from e
    else:
        parameters = raw_params

    if not isinstance(parameters, Mapping):
        raise MalformedCallError("Function arguments must be an object", call_id=call_id)

    return FunctionCall(call_id=call_id, name=name.strip(), parameters=dict(parameters))


def parse_tool_calls(payload: Any) -> List[Any]:
    """
    Split a tool-calls payload into individual call payloads.

    Accepts a list, an object carrying `toolCalls` / `toolCallList` /
    `toolWithToolCallList`, or a single call object.
    """
    if payload is None:
        return []
    if isinstance(payload, list):
        return list(payload)
    if isinstance(payload, Mapping):
        for key in ("toolCalls", "toolCallList"):
            if isinstance(payload.get(key), list):
                return list(payload[key])
        if isinstance(payload.get("toolWithToolCallList"), list):
            return [item.get("toolCall", item) if isinstance(item, Mapping) else item
                    for item in payload["toolWithToolCallList"]]
    return [payload]


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_plain_data(value: Any) -> Any:
    """
    Deep JSON clone. The output holds only dict/list/str/int/float/bool/None.

    Raises TypeError for values with no JSON form and ValueError for cycles.
    """
    return json.loads(json.dumps(value, default=_json_default))


def failure_result(error: str, error_type: str) -> Dict[str, Any]:
    return {
        "success": False,
        "error": error,
        "error_type": error_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class FunctionDispatcher:
    """Resolves a function name in the registry, runs it, normalizes the result."""

    def __init__(self, registry: FunctionRegistry):
        self.registry = registry
        self.emitter = EventEmitter(ObsComponent.DISPATCHER)

    async def dispatch(
        self,
        name: Any,
        parameters: Any = None,
        *,
        session_id: str = "control",
        call_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        start_ts = time.perf_counter()
        log = logger.with_session(session_id)
        log.info(
            "Function call received",
            function=name,
            call_id=call_id,
            parameter_keys=sorted(str(k) for k in parameters) if isinstance(parameters, Mapping) else None,
        )

        try:
            raw = await self._invoke(name, parameters, CallContext(session_id=session_id, call_id=call_id))
        except Exception as e:
            category = classify_error(e)
            if category == ErrorCategory.HANDLER_FAILED:
                log.exception("Function handler failed", function=name, call_id=call_id, error_type=type(e).__name__)
            else:
                log.warning("Function call rejected", function=name, call_id=call_id, error=redact_detail(str(e)), error_category=category)
            result = failure_result(str(e) or type(e).__name__, category)
        else:
            try:
                result = to_plain_data(raw)
            except (TypeError, ValueError) as e:
                log.error("Function result is not serializable", function=name, call_id=call_id, error=str(e))
                result = failure_result(f"Function result is not serializable: {e}", ErrorCategory.HANDLER_FAILED)
            if not isinstance(result, dict):
                result = {"success": True, "result": result}

        success = bool(result.get("success"))
        latency_ms = int((time.perf_counter() - start_ts) * 1000)
        self.emitter.function_dispatched(
            session_id,
            function=str(name),
            success=success,
            latency_ms=latency_ms,
            call_id=call_id,
            error_type=None if success else result.get("error_type", result.get("reason")),
        )
        return result

    async def dispatch_call(self, call: FunctionCall, *, session_id: str = "control") -> Dict[str, Any]:
        return await self.dispatch(call.name, call.parameters, session_id=session_id, call_id=call.call_id)

    async def _invoke(self, name: Any, parameters: Any, ctx: CallContext) -> Any:
        spec = self.registry.get(name)
        if spec is None:
            raise UnknownFunctionError(name)

        if parameters is None:
            parameters = {}
        if not isinstance(parameters, Mapping):
            raise InvalidParametersError(spec.name, "parameters must be an object")
        try:
            params = spec.params_model.model_validate(dict(parameters))
        except ValidationError as e:
            raise InvalidParametersError(spec.name, _describe_validation_error(e)) from e

        return await spec.handler(params, ctx)


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "parameters"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)
