"""
PIN verification and management.

verify_pin is read-only and idempotent: concurrent calls for the same user are
independent reads. create/update/delete are assumed to be issued serially by
the signed-in user; there is no cross-request lock.

Note: PINs are stored and compared as plain digit strings.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from logging_setup import get_logger, Component as LogComponent
from observability.events import Component as ObsComponent, EventEmitter
from .credentials import AuthenticatedUser, CredentialStore
from .errors import (
    AuthError,
    NoPinConfiguredError,
    NotAuthenticatedError,
    PinValidationError,
    ProfileNotFoundError,
    StoreFailure,
)
from .pin import normalize_pin

logger = get_logger(LogComponent.PIN_AUTH)


class PinFailure:
    """`reason` values carried by failed PIN results."""

    INVALID_FORMAT = "invalid_format"
    NOT_AUTHENTICATED = "not_authenticated"
    PROFILE_NOT_FOUND = "profile_not_found"
    NO_PIN_CONFIGURED = "no_pin_configured"
    PIN_MISMATCH = "pin_mismatch"
    CURRENT_PIN_MISMATCH = "current_pin_mismatch"
    STORE_FAILURE = "store_failure"


_AUTH_REASONS = {
    NotAuthenticatedError: PinFailure.NOT_AUTHENTICATED,
    ProfileNotFoundError: PinFailure.PROFILE_NOT_FOUND,
    NoPinConfiguredError: PinFailure.NO_PIN_CONFIGURED,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _failure(error: str, reason: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "error": error, "reason": reason, **extra, "timestamp": _now_iso()}


class PinService:
    """PIN flows composed from normalize_pin and a CredentialStore."""

    def __init__(self, store: CredentialStore):
        self.store = store
        self.emitter = EventEmitter(ObsComponent.PIN_AUTH)
        self.last_error: Optional[str] = None

    def _fail(self, operation: str, session_id: str, error: str, reason: str, **extra: Any) -> Dict[str, Any]:
        self.last_error = error
        self.emitter.pin_checked(session_id, operation=operation, success=False, reason=reason)
        logger.info("PIN operation rejected", operation=operation, reason=reason, session_id=session_id)
        return _failure(error, reason, **extra)

    def _from_error(self, operation: str, session_id: str, error: Exception) -> Dict[str, Any]:
        if isinstance(error, AuthError):
            return self._fail(operation, session_id, str(error), _AUTH_REASONS.get(type(error), PinFailure.NOT_AUTHENTICATED))
        return self._fail(operation, session_id, str(error), PinFailure.STORE_FAILURE)

    async def _stored_pin(self, user: AuthenticatedUser) -> str:
        stored = await self.store.get_stored_pin(user.id)
        if not stored:
            raise NoPinConfiguredError(user.id)
        return str(stored)

    async def verify_pin(self, raw_pin: Any, session_id: str = "control") -> Dict[str, Any]:
        """
        Check a raw PIN against the signed-in user's stored PIN.

        Failure reasons are distinguishable (invalid_format, not_authenticated,
        profile_not_found, no_pin_configured, pin_mismatch, store_failure).
        """
        try:
            pin = normalize_pin(raw_pin)
        except PinValidationError as e:
            return self._fail("verify", session_id, str(e), PinFailure.INVALID_FORMAT)

        try:
            user = await self.store.get_current_user()
            stored = await self._stored_pin(user)
        except (AuthError, StoreFailure) as e:
            return self._from_error("verify", session_id, e)

        if stored != pin:
            logger.info("PIN verification failed", user_id=user.id, session_id=session_id)
            return self._fail("verify", session_id, "Invalid PIN code. Please try again.", PinFailure.PIN_MISMATCH)

        self.last_error = None
        self.emitter.pin_checked(session_id, operation="verify", success=True)
        logger.info("PIN verified", user_id=user.id, session_id=session_id)
        return {
            "success": True,
            "message": "PIN verified successfully",
            "user_id": user.id,
            "timestamp": _now_iso(),
        }

    async def create_pin(self, raw_pin: Any, session_id: str = "control") -> Dict[str, Any]:
        """Set the PIN for the signed-in user (first PIN or overwrite)."""
        try:
            pin = normalize_pin(raw_pin)
        except PinValidationError as e:
            return self._fail("create", session_id, str(e), PinFailure.INVALID_FORMAT)

        try:
            user = await self.store.get_current_user()
            profile = await self.store.set_pin(user.id, pin)
        except (AuthError, StoreFailure) as e:
            return self._from_error("create", session_id, e)

        self.last_error = None
        self.emitter.pin_checked(session_id, operation="create", success=True)
        return {"success": True, "profile": _public_profile(profile), "timestamp": _now_iso()}

    async def update_pin(self, current_pin: Any, new_pin: Any, session_id: str = "control") -> Dict[str, Any]:
        """
        Replace the stored PIN.

        The current PIN must equal the stored one (current_pin_mismatch) and the
        new PIN must be a valid 6-digit PIN (invalid_format); the two failures
        are reported separately.
        """
        try:
            user = await self.store.get_current_user()
            stored = await self._stored_pin(user)
        except (AuthError, StoreFailure) as e:
            return self._from_error("update", session_id, e)

        try:
            current = normalize_pin(current_pin)
        except PinValidationError:
            current = None
        if current != stored:
            return self._fail("update", session_id, "Current PIN is incorrect", PinFailure.CURRENT_PIN_MISMATCH)

        try:
            pin = normalize_pin(new_pin)
        except PinValidationError as e:
            return self._fail("update", session_id, f"New {e}", PinFailure.INVALID_FORMAT)

        try:
            profile = await self.store.set_pin(user.id, pin)
        except (AuthError, StoreFailure) as e:
            return self._from_error("update", session_id, e)

        self.last_error = None
        self.emitter.pin_checked(session_id, operation="update", success=True)
        return {"success": True, "profile": _public_profile(profile), "timestamp": _now_iso()}

    async def delete_pin(self, session_id: str = "control") -> Dict[str, Any]:
        try:
            user = await self.store.get_current_user()
            profile = await self.store.clear_pin(user.id)
        except (AuthError, StoreFailure) as e:
            return self._from_error("delete", session_id, e)

        self.last_error = None
        self.emitter.pin_checked(session_id, operation="delete", success=True)
        return {"success": True, "profile": _public_profile(profile), "timestamp": _now_iso()}

    async def get_profile(self) -> Dict[str, Any]:
        """Profile of the signed-in user; the row is created when missing."""
        try:
            user = await self.store.get_current_user()
            profile = await self.store.ensure_profile(user)
        except (AuthError, StoreFailure) as e:
            self.last_error = str(e)
            return _failure(str(e), _AUTH_REASONS.get(type(e), PinFailure.STORE_FAILURE))
        return {"success": True, "profile": _public_profile(profile), "timestamp": _now_iso()}


def _public_profile(profile: Any) -> Dict[str, Any]:
    """Profile fields safe to hand to callers (the PIN itself is withheld)."""
    return {
        "id": profile.id,
        "email": profile.email,
        "has_pin": profile.has_pin,
        "pin_created_at": profile.pin_created_at,
        "pin_updated_at": profile.pin_updated_at,
    }
