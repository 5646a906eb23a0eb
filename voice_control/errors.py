"""
Error taxonomy for the voice control service.

Every fault that can occur while handling an engine event maps to one of the
classes below. The dispatcher and the session event handlers catch them and
turn them into a uniform `{success: False, error, timestamp}` result or into
the session's error slot; none of them escapes to the engine.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Optional


class ErrorCategory:
    """Stable error categories (used in results and events)."""

    # PIN format
    PIN_WRONG_TYPE = "pin.wrong_type"
    PIN_WRONG_LENGTH = "pin.wrong_length"

    # Authentication
    NOT_AUTHENTICATED = "auth.not_authenticated"
    PROFILE_NOT_FOUND = "auth.profile_not_found"
    NO_PIN_CONFIGURED = "auth.no_pin_configured"

    # Backing store
    STORE_FAILURE = "store.failure"

    # Dispatch
    UNKNOWN_FUNCTION = "dispatch.unknown_function"
    INVALID_PARAMETERS = "dispatch.invalid_parameters"
    MALFORMED_CALL = "dispatch.malformed_call"
    HANDLER_FAILED = "dispatch.handler_failed"

    # Engine transport
    TRANSPORT = "transport.error"

    UNKNOWN_ERROR = "unknown_error"


class VoiceControlError(Exception):
    """Base class. `category` is one of ErrorCategory."""

    category = ErrorCategory.UNKNOWN_ERROR

    @property
    def user_message(self) -> str:
        return str(self)


class PinValidationReason(str, Enum):
    WRONG_TYPE = "wrong_type"
    WRONG_LENGTH = "wrong_length"


class PinValidationError(VoiceControlError):
    """Malformed PIN input."""

    def __init__(self, reason: PinValidationReason, digit_count: Optional[int] = None, number: Any = None):
        self.reason = reason
        self.digit_count = digit_count
        if reason == PinValidationReason.WRONG_TYPE:
            message = "PIN must be a 6-digit number"
        elif number is not None:
            # fractional or negative numbers; a digit count would be misleading
            message = f"PIN must be exactly 6 digits, not a negative or fractional number. Received: {number}"
        else:
            message = f"PIN must be exactly 6 digits. Received: {digit_count} digits"
        super().__init__(message)

    @property
    def category(self) -> str:
        if self.reason == PinValidationReason.WRONG_TYPE:
            return ErrorCategory.PIN_WRONG_TYPE
        return ErrorCategory.PIN_WRONG_LENGTH


class AuthError(VoiceControlError):
    """Authentication could not be established for the current user."""


class NotAuthenticatedError(AuthError):
    category = ErrorCategory.NOT_AUTHENTICATED

    def __init__(self, message: str = "User not authenticated. Please log in first."):
        super().__init__(message)


class ProfileNotFoundError(AuthError):
    category = ErrorCategory.PROFILE_NOT_FOUND

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("User profile not found. Please set up your profile first.")


class NoPinConfiguredError(AuthError):
    category = ErrorCategory.NO_PIN_CONFIGURED

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("No PIN code set. Please create a PIN first.")


class StoreFailure(VoiceControlError):
    """Backing store unreachable or write rejected."""

    category = ErrorCategory.STORE_FAILURE


class DispatchError(VoiceControlError):
    """A function call could not be routed to a handler."""


class UnknownFunctionError(DispatchError):
    category = ErrorCategory.UNKNOWN_FUNCTION

    def __init__(self, name: Optional[str]):
        self.name = name
        super().__init__(f"Unknown function: {name}")


class InvalidParametersError(DispatchError):
    category = ErrorCategory.INVALID_PARAMETERS

    def __init__(self, name: str, detail: str):
        self.name = name
        self.detail = detail
        super().__init__(f"Invalid parameters for {name}: {detail}")


class MalformedCallError(DispatchError):
    """Engine payload that cannot be turned into a FunctionCall."""

    category = ErrorCategory.MALFORMED_CALL

    def __init__(self, message: str, call_id: Optional[str] = None):
        self.call_id = call_id
        super().__init__(message)


class TransportError(VoiceControlError):
    """Engine start/stop/send failure, optionally carrying an HTTP response."""

    category = ErrorCategory.TRANSPORT

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        reason: Optional[str] = None,
        body: Optional[str] = None,
    ):
        self.status = status
        self.reason = reason
        self.body = body
        super().__init__(message)

    @classmethod
    def from_response(cls, status: int, reason: Optional[str], body: Optional[str]) -> "TransportError":
        return cls(format_http_error(status, reason, body), status=status, reason=reason, body=body)


def format_http_error(status: Any, reason: Optional[str], body: Optional[str]) -> str:
    """
    Format an HTTP error the way the engine's web client reports it:
    "API Error 401: Unauthorized - <message|error|body>".
    """
    text = f"API Error {status}: {reason or 'Request failed'}"
    if body:
        detail = body
        try:
            parsed = json.loads(body)
        except (TypeError, ValueError):
            parsed = None
        if isinstance(parsed, dict):
            detail = parsed.get("message") or parsed.get("error") or body
        text += f" - {detail}"
    return text


def describe_engine_error(error: Any) -> str:
    """
    Turn whatever the engine reported as an error into one readable string.

    Handles TransportError, HTTP-response-shaped dicts (status/statusText/body),
    dicts with message/error, exceptions, and plain strings.
    """
    if isinstance(error, TransportError):
        return str(error) or "Failed to connect to voice engine"

    if isinstance(error, dict):
        if "status" in error and ("statusText" in error or "body" in error):
            body = error.get("body")
            if body is not None and not isinstance(body, str):
                body = json.dumps(body, default=str)
            return format_http_error(error.get("status"), error.get("statusText"), body)
        nested = error.get("error")
        if isinstance(nested, (dict, str)) and nested:
            return describe_engine_error(nested)
        message = error.get("message") or error.get("errorMsg")
        if message:
            return str(message)
        return "Unknown error occurred"

    if isinstance(error, BaseException):
        return str(error) or type(error).__name__

    if error:
        return str(error)
    return "Unknown error occurred"


def classify_error(error: BaseException) -> str:
    """Map any exception to an ErrorCategory value."""
    if isinstance(error, VoiceControlError):
        return error.category
    return ErrorCategory.HANDLER_FAILED


def redact_detail(detail: str) -> str:
    """Hide error details that may carry credentials."""
    lowered = detail.lower()
    if any(word in lowered for word in ("secret", "password", "apikey", "api_key", "token")):
        return "[redacted: potential secret]"
    return detail
