"""
HTTP server: engine webhook, control API and health check.

The engine posts every event to POST /engine/events. Messages the session
sends while handling it (function results) are returned in the response
body, both raw and in the engine's `results: [{toolCallId, result}]` form.
"""
import json
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request

from logging_setup import get_logger, Component
from .control_api import router as control_router
from .engine import translate_server_message
from .services import Services, build_services

logger = get_logger(Component.WEBHOOK_SERVER)


def _tool_results(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {"toolCallId": m.get("functionCallId"), "result": m.get("result")}
        for m in messages
        if m.get("type") == "function-result"
    ]


def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(title="Voice Control Server")
    app.state.services = services or build_services()
    app.include_router(control_router)

    @app.post("/engine/events")
    async def handle_engine_event(request: Request):
        """
        Voice engine webhook.
        Accepts `{"event": name, "payload": ...}` or an engine server message.
        """
        body = await request.body()
        try:
            body_json = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Failed to parse engine event body as JSON", body_size=len(body))
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(body_json, dict):
            raise HTTPException(status_code=400, detail="Engine event body must be an object")

        events = translate_server_message(body_json)
        if not events:
            logger.warning("Unrecognized engine event", keys=sorted(body_json))
            raise HTTPException(status_code=400, detail="Unrecognized engine event")

        engine = app.state.services.engine
        messages: List[Dict[str, Any]] = []
        for event, payload in events:
            logger.debug("Processing engine event", engine_event=event, body_size=len(body))
            if hasattr(engine, "deliver"):
                messages.extend(await engine.deliver(event, payload))
            else:
                await engine.emit(event, payload)

        return {"status": "ok", "messages": messages, "results": _tool_results(messages)}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        session = app.state.services.session
        return {"status": "ok", "component": "voice_control", "session_status": session.status.value}

    return app


app = create_app()
