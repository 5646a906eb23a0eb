"""
Process-wide wiring: one credential store, one engine, one voice session.

Built once at startup (or per test with injected fakes) and handed to the
HTTP routers through app.state.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

from logging_setup import get_logger, Component
from .assistant import build_assistant_config
from .config import Settings, get_config
from .credentials import CredentialStore, InMemoryCredentialStore, SupabaseCredentialStore
from .dispatcher import FunctionDispatcher
from .engine import VoiceEngine, WebhookEngine
from .functions import AssistantFunctions, FunctionRegistry, build_registry
from .notifier import WebhookNotifier
from .pin_service import PinService
from .session import VoiceSession

logger = get_logger(Component.VOICE_SESSION)


@dataclass
class Services:
    settings: Settings
    store: CredentialStore
    pin_service: PinService
    notifier: WebhookNotifier
    registry: FunctionRegistry
    dispatcher: FunctionDispatcher
    engine: VoiceEngine
    assistant_config: Dict[str, Any]
    session: VoiceSession


def build_store(settings: Settings) -> CredentialStore:
    if settings.has_supabase:
        return SupabaseCredentialStore.from_settings(settings)
    logger.warning("Supabase not configured - using in-memory credential store")
    return InMemoryCredentialStore()


def build_services(
    settings: Optional[Settings] = None,
    engine: Optional[VoiceEngine] = None,
    store: Optional[CredentialStore] = None,
    notifier: Optional[WebhookNotifier] = None,
) -> Services:
    settings = settings or get_config()
    store = store if store is not None else build_store(settings)
    notifier = notifier or WebhookNotifier(settings.notify_webhook_url, timeout_seconds=settings.notify_timeout_seconds)
    engine = engine if engine is not None else WebhookEngine.from_settings(settings)

    pin_service = PinService(store)
    functions = AssistantFunctions(pin_service, notifier, store)
    registry = build_registry(functions, include_debug=settings.debug_functions)
    dispatcher = FunctionDispatcher(registry)
    assistant_config = build_assistant_config(registry, settings.assistant_profile)
    session = VoiceSession(engine, dispatcher, assistant_config).attach()

    logger.info(
        "Voice control services ready",
        functions=registry.names(),
        credential_store=type(store).__name__,
        notify_configured=bool(settings.notify_webhook_url),
    )
    return Services(
        settings=settings,
        store=store,
        pin_service=pin_service,
        notifier=notifier,
        registry=registry,
        dispatcher=dispatcher,
        engine=engine,
        assistant_config=assistant_config,
        session=session,
    )
