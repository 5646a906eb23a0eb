"""
Entry point for running the voice control server.

Usage:
    python -m voice_control

Starts the FastAPI server (engine webhook + control API) on HOST:PORT,
default http://0.0.0.0:8000
"""
import uvicorn
from logging_setup import setup_logging

from .config import get_config

if __name__ == "__main__":
    settings = get_config()
    setup_logging(level=settings.log_level, use_json=settings.log_json)

    uvicorn.run(
        "voice_control.webhook_server:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
