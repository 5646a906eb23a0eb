"""
Functions the assistant may call during a voice session.

Each function is a FunctionSpec: a name, the JSON schema advertised to the
engine, a pydantic model for its parameters, and an async handler. The
registry is the closed set of callable names; anything else is rejected by
the dispatcher.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Type
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from logging_setup import get_logger, Component
from .credentials import CredentialStore
from .errors import NotAuthenticatedError, ProfileNotFoundError
from .notifier import WebhookNotifier
from .pin import analyze_pin_input
from .pin_service import PinService

logger = get_logger(Component.FUNCTIONS)


@dataclass(frozen=True)
class CallContext:
    """Where a call came from: the voice session and the engine's call id."""

    session_id: str = "control"
    call_id: Optional[str] = None


# --- Parameter records ---


class FunctionParams(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GetCurrentTimeParams(FunctionParams):
    format: Literal["12h", "24h"] = "12h"
    timezone: Optional[str] = None

    @field_validator("format", mode="before")
    @classmethod
    def _accept_long_form(cls, value: Any) -> Any:
        if value is None:
            return "12h"
        if isinstance(value, str):
            return {"12-hour": "12h", "24-hour": "24h"}.get(value.strip().lower(), value.strip().lower())
        return value


class VerifyPinParams(FunctionParams):
    # string or number; shape is checked by normalize_pin, not here
    pin: Any = Field(...)


class WebhookNotificationParams(FunctionParams):
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value


class DebugPinInputParams(FunctionParams):
    pin: Any = Field(...)


class NoParams(FunctionParams):
    pass


Handler = Callable[[Any, CallContext], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    description: str
    parameters_schema: Dict[str, Any]
    params_model: Type[FunctionParams]
    handler: Handler
    debug: bool = False

    def tool_definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters_schema,
        }


class FunctionRegistry:
    """Closed name -> FunctionSpec mapping."""

    def __init__(self) -> None:
        self._specs: Dict[str, FunctionSpec] = {}

    def register(self, spec: FunctionSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Function already registered: {spec.name}")
        self._specs[spec.name] = spec

    def get(self, name: Any) -> Optional[FunctionSpec]:
        if not isinstance(name, str):
            return None
        return self._specs.get(name)

    def names(self) -> List[str]:
        return list(self._specs)

    def tool_definitions(self) -> List[Dict[str, Any]]:
        return [spec.tool_definition() for spec in self._specs.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """None for the host's local zone; raises ValueError for unknown names."""
    if name is None or name.strip().lower() in ("", "local"):
        return None
    if name.strip().upper() in ("UTC", "GMT", "Z"):
        return timezone.utc
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e


class AssistantFunctions:
    """Handlers for the registered functions."""

    def __init__(
        self,
        pin_service: PinService,
        notifier: WebhookNotifier,
        store: CredentialStore,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.pin_service = pin_service
        self.notifier = notifier
        self.store = store
        self._now = now

    async def get_current_time(self, params: GetCurrentTimeParams, ctx: CallContext) -> Dict[str, Any]:
        tz = resolve_timezone(params.timezone)
        now = self._now().astimezone(tz)

        if params.format == "24h":
            time_string = now.strftime("%H:%M:%S")
        else:
            hour = now.hour % 12 or 12
            time_string = f"{hour}:{now:%M:%S} {'AM' if now.hour < 12 else 'PM'}"
        date_string = f"{now:%A}, {now:%B} {now.day}, {now.year}"

        return {
            "success": True,
            "current_time": time_string,
            "current_date": date_string,
            "full_datetime": f"{date_string} at {time_string}",
            "format": params.format,
            "timezone": params.timezone if tz is not None else now.tzname(),
            "timestamp": now.isoformat(),
        }

    async def verify_pin(self, params: VerifyPinParams, ctx: CallContext) -> Dict[str, Any]:
        return await self.pin_service.verify_pin(params.pin, session_id=ctx.session_id)

    async def send_webhook_notification(self, params: WebhookNotificationParams, ctx: CallContext) -> Dict[str, Any]:
        outcome = await self.notifier.notify(params.message, params.data, session_id=ctx.session_id)
        return outcome.to_result()

    async def debug_pin_input(self, params: DebugPinInputParams, ctx: CallContext) -> Dict[str, Any]:
        analysis = analyze_pin_input(params.pin)
        logger.debug("PIN input analysed", type=analysis["type"], length=analysis["length"], session_id=ctx.session_id)
        return {
            "success": True,
            "message": "PIN input debug completed",
            "analysis": analysis,
            "recommendations": [
                "Check if PIN contains non-digit characters",
                "Verify PIN length is exactly 6 digits",
                "Ensure the engine is sending the PIN as expected",
            ],
        }

    async def debug_user_profile(self, params: NoParams, ctx: CallContext) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        try:
            user = await self.store.get_current_user()
        except NotAuthenticatedError:
            return {"success": False, "error": "User not authenticated", "user": None, "timestamp": now}

        profile = None
        profile_error = None
        try:
            found = await self.store.get_profile(user.id)
            profile = {
                "id": found.id,
                "email": found.email,
                "pin_created_at": found.pin_created_at,
                "pin_updated_at": found.pin_updated_at,
            }
            has_pin = found.has_pin
            pin_length = len(found.pin_code) if found.pin_code else 0
        except ProfileNotFoundError as e:
            profile_error = str(e)
            has_pin = False
            pin_length = 0

        return {
            "success": True,
            "user": {"id": user.id, "email": user.email, "created_at": user.created_at},
            "profile": profile,
            "profile_error": profile_error,
            "has_pin_set": has_pin,
            "pin_length": pin_length,
            "timestamp": now,
        }


def build_registry(functions: AssistantFunctions, include_debug: bool = True) -> FunctionRegistry:
    """Registry with the production functions, plus the debug ones if asked."""
    registry = FunctionRegistry()
    specs = [
        FunctionSpec(
            name="get_current_time",
            description="Get the current time in a specified format and timezone",
            parameters_schema={
                "type": "object",
                "properties": {
                    "format": {
                        "type": "string",
                        "description": "Time format (12h or 24h)",
                        "enum": ["12h", "24h"],
                    },
                    "timezone": {
                        "type": "string",
                        "description": "IANA timezone (e.g., UTC, Europe/Amsterdam, America/New_York)",
                    },
                },
            },
            params_model=GetCurrentTimeParams,
            handler=functions.get_current_time,
        ),
        FunctionSpec(
            name="verify_pin",
            description="Verify user PIN code for authentication",
            parameters_schema={
                "type": "object",
                "properties": {
                    "pin": {"type": "string", "description": "The 6-digit PIN code to verify"},
                },
                "required": ["pin"],
            },
            params_model=VerifyPinParams,
            handler=functions.verify_pin,
        ),
        FunctionSpec(
            name="send_webhook_notification",
            description="Send a POST request to the notification webhook with custom data",
            parameters_schema={
                "type": "object",
                "properties": {
                    "message": {"type": "string", "description": "The message to send to the webhook"},
                    "data": {"type": "object", "description": "Additional data to include in the webhook payload"},
                },
                "required": ["message"],
            },
            params_model=WebhookNotificationParams,
            handler=functions.send_webhook_notification,
        ),
        FunctionSpec(
            name="debug_pin_input",
            description="Debug PIN input to see how the PIN parameter is being sent",
            parameters_schema={
                "type": "object",
                "properties": {"pin": {"type": "string", "description": "The PIN to debug"}},
                "required": ["pin"],
            },
            params_model=DebugPinInputParams,
            handler=functions.debug_pin_input,
            debug=True,
        ),
        FunctionSpec(
            name="debug_user_profile",
            description="Report the signed-in user and whether a PIN is configured",
            parameters_schema={"type": "object", "properties": {}},
            params_model=NoParams,
            handler=functions.debug_user_profile,
            debug=True,
        ),
    ]
    for spec in specs:
        if spec.debug and not include_debug:
            continue
        registry.register(spec)
    return registry
