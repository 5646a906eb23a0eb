"""
Control API for the UI.

- Session: read state, start/end the call, inject a user message, query events
- Identity: bind the signed-in user's access token
- PIN management: profile, create/update/delete PIN, verify PIN

Failures come back as HTTPException with a stable detail
`{"error": ..., "reason": ...}`; no internal traces.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from logging_setup import get_logger, Component as LogComponent
from observability.event_store import event_store
from observability.events import Component as ObsComponent, EventEmitter, Severity
from .pin_service import PinFailure
from .services import Services
from .session import SessionStatus

router = APIRouter(prefix="/control", tags=["control"])
emitter = EventEmitter(ObsComponent.CONTROL_API)
logger = get_logger(LogComponent.CONTROL_API)

_STATUS_BY_REASON = {
    PinFailure.INVALID_FORMAT: 422,
    PinFailure.NOT_AUTHENTICATED: 401,
    PinFailure.PROFILE_NOT_FOUND: 404,
    PinFailure.NO_PIN_CONFIGURED: 404,
    PinFailure.PIN_MISMATCH: 403,
    PinFailure.CURRENT_PIN_MISMATCH: 403,
    PinFailure.STORE_FAILURE: 502,
}


def get_services(request: Request) -> Services:
    return request.app.state.services


def _new_correlation_id() -> str:
    return f"cmd_{int(time.time() * 1000)}"


def _raise_for_failure(result: Dict[str, Any]) -> Dict[str, Any]:
    if result.get("success"):
        return result
    reason = result.get("reason", PinFailure.STORE_FAILURE)
    raise HTTPException(
        status_code=_STATUS_BY_REASON.get(reason, 400),
        detail={"error": result.get("error"), "reason": reason},
    )


# --- Session ---


class MessageView(BaseModel):
    role: str
    content: str
    timestamp: str


class SessionView(BaseModel):
    session_id: str
    status: str
    listening: bool
    speaking: bool
    transcript: str
    error: Optional[str] = None
    messages: List[MessageView] = Field(default_factory=list)


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, description="User message injected into the conversation")


@router.get("/session", response_model=SessionView)
async def get_session(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.session.snapshot()


@router.post("/session/start", response_model=SessionView)
async def start_session(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """
    Start a voice call. The session is `connecting` until the engine reports
    call-start on the engine webhook.
    """
    session = services.session
    correlation_id = _new_correlation_id()
    emitter.emit(
        "control.command_received",
        session_id=session.session_id,
        correlation_id=correlation_id,
        command="session.start",
    )

    await session.start()

    if session.status not in (SessionStatus.CONNECTING, SessionStatus.ACTIVE):
        emitter.emit(
            "control.command_applied",
            session_id=session.session_id,
            severity=Severity.ERROR,
            correlation_id=correlation_id,
            command="session.start",
            result="error",
        )
        logger.error("Session start failed", session_id=session.session_id, error=session.error)
        raise HTTPException(status_code=502, detail={"error": session.error, "reason": "start_failed"})

    emitter.emit(
        "control.command_applied",
        session_id=session.session_id,
        correlation_id=correlation_id,
        command="session.start",
        result="ok",
    )
    return session.snapshot()


@router.post("/session/end", response_model=SessionView)
async def end_session(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """End the call. Safe from any state."""
    session = services.session
    correlation_id = _new_correlation_id()
    emitter.emit(
        "control.command_received",
        session_id=session.session_id,
        correlation_id=correlation_id,
        command="session.end",
    )
    await session.end()
    emitter.emit(
        "control.command_applied",
        session_id=session.session_id,
        correlation_id=correlation_id,
        command="session.end",
        result="ok",
        status=session.status.value,
    )
    return session.snapshot()


@router.post("/session/messages", response_model=SessionView)
async def send_session_message(
    req: SendMessageRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    session = services.session
    if not session.is_active:
        raise HTTPException(status_code=409, detail={"error": "No active call", "reason": "session_not_active"})
    if not await session.send_message(req.text):
        raise HTTPException(status_code=502, detail={"error": session.error, "reason": "send_failed"})
    return session.snapshot()


@router.get("/session/events")
async def get_session_events(
    event_type: Optional[str] = Query(None, description="Filter by event_type"),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Max events to return"),
    services: Services = Depends(get_services),
) -> dict:
    """Structured events recorded for the current session."""
    since_dt: Optional[datetime] = None
    if since:
        try:
            # + in a query string may arrive as a space
            since_dt = datetime.fromisoformat(since.replace(" ", "+").replace("Z", "+00:00"))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid since timestamp: {since}")
        if since_dt.tzinfo is None:
            raise HTTPException(status_code=400, detail=f"since must include a timezone: {since}")

    session_id = services.session.session_id
    events = event_store.query(session_id=session_id, event_type=event_type, since=since_dt, limit=limit)
    return {"session_id": session_id, "events": events, "count": len(events)}


# --- Identity and PIN management ---


class IdentityRequest(BaseModel):
    access_token: Optional[str] = Field(None, description="Access token of the signed-in user; null signs out")


class PinRequest(BaseModel):
    # string or number; format is checked by the PIN service
    pin: Any = Field(...)


class UpdatePinRequest(BaseModel):
    current_pin: Any = Field(...)
    new_pin: Any = Field(...)


@router.put("/identity")
async def bind_identity(req: IdentityRequest, services: Services = Depends(get_services)) -> dict:
    services.store.bind_access_token(req.access_token)
    profile = await services.pin_service.get_profile() if req.access_token else None
    return {
        "authenticated": bool(profile and profile.get("success")),
        "profile": profile.get("profile") if profile and profile.get("success") else None,
    }


@router.get("/profile")
async def get_profile(services: Services = Depends(get_services)) -> dict:
    return _raise_for_failure(await services.pin_service.get_profile())


@router.post("/pin")
async def create_pin(req: PinRequest, services: Services = Depends(get_services)) -> dict:
    return _raise_for_failure(await services.pin_service.create_pin(req.pin))


@router.put("/pin")
async def update_pin(req: UpdatePinRequest, services: Services = Depends(get_services)) -> dict:
    return _raise_for_failure(await services.pin_service.update_pin(req.current_pin, req.new_pin))


@router.delete("/pin")
async def delete_pin(services: Services = Depends(get_services)) -> dict:
    return _raise_for_failure(await services.pin_service.delete_pin())


@router.post("/pin/verify")
async def verify_pin(req: PinRequest, services: Services = Depends(get_services)) -> dict:
    return _raise_for_failure(await services.pin_service.verify_pin(req.pin))
