"""
Shared fixtures: a scripted voice engine, an in-memory credential store with
one signed-in user (PIN 048213), and the service objects wired around them.
"""
import json
from datetime import datetime, timedelta, timezone

import aiohttp
import pytest

from observability.event_store import event_store
from voice_control.credentials import InMemoryCredentialStore
from voice_control.dispatcher import FunctionDispatcher
from voice_control.engine import EventChannel
from voice_control.functions import AssistantFunctions, build_registry
from voice_control.notifier import WebhookNotifier
from voice_control.pin_service import PinService
from voice_control.session import VoiceSession

USER_ID = "user-1"
USER_EMAIL = "user@example.com"
STORED_PIN = "048213"


class FakeEngine(EventChannel):
    """In-process engine: records start/stop/send, events are emitted by the test."""

    def __init__(self, fail_start=None, fail_stop=None, fail_send=None):
        super().__init__()
        self.fail_start = fail_start
        self.fail_stop = fail_stop
        self.fail_send = fail_send
        self.started_with = []
        self.stop_calls = 0
        self.sent = []

    async def start(self, assistant):
        self.started_with.append(assistant)
        if self.fail_start:
            raise self.fail_start

    async def stop(self):
        self.stop_calls += 1
        if self.fail_stop:
            raise self.fail_stop

    async def send(self, message):
        if self.fail_send:
            raise self.fail_send
        self.sent.append(message)

    def results(self):
        return [m for m in self.sent if m.get("type") == "function-result"]


class TickingClock:
    """Returns a later time on every call."""

    def __init__(self, start=datetime(2024, 1, 5, 12, 0, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture(autouse=True)
def cleanup_events():
    """Clear stored events between tests."""
    yield
    event_store.clear()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store(clock):
    """Store with one user holding PIN 048213, signed in."""
    s = InMemoryCredentialStore(now=clock)
    s.register_user(USER_ID, USER_EMAIL, pin_code=STORED_PIN)
    s.bind_access_token(USER_ID)
    return s


@pytest.fixture
def notifier():
    return WebhookNotifier(None)


@pytest.fixture
def pin_service(store):
    return PinService(store)


@pytest.fixture
def functions(pin_service, notifier, store):
    return AssistantFunctions(pin_service, notifier, store)


@pytest.fixture
def registry(functions):
    return build_registry(functions)


@pytest.fixture
def dispatcher(registry):
    return FunctionDispatcher(registry)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def session(engine, dispatcher, registry):
    assistant = {"firstMessage": "Hello! How can I help you today?", "functions": registry.tool_definitions()}
    return VoiceSession(engine, dispatcher, assistant).attach()


class FakeResponse:
    def __init__(self, status=200, body="", reason="OK"):
        self.status = status
        self.reason = reason
        self._body = body

    async def text(self):
        return self._body

    async def json(self, content_type=None):
        return json.loads(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeHttp:
    """
    Stand-in for aiohttp.ClientSession. `respond` is a FakeResponse or an
    exception to raise; every request is recorded.
    """

    def __init__(self):
        self.respond = FakeResponse()
        self.requests = []

    def __call__(self, *args, **kwargs):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        if isinstance(self.respond, BaseException):
            raise self.respond
        return self.respond

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)


@pytest.fixture
def fake_http(monkeypatch):
    """Route aiohttp.ClientSession to a FakeHttp."""
    http = FakeHttp()
    monkeypatch.setattr(aiohttp, "ClientSession", http)
    return http
