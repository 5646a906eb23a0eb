"""
Control API tests.

Verifies:
- session read/start/end/messages and the events query
- identity binding and PIN management with stable error details
"""
import pytest
from fastapi.testclient import TestClient

from conftest import STORED_PIN, USER_ID, FakeEngine
from voice_control.config import Settings
from voice_control.credentials import InMemoryCredentialStore
from voice_control.errors import TransportError
from voice_control.services import build_services
from voice_control.webhook_server import create_app


@pytest.fixture
def control_store(clock):
    s = InMemoryCredentialStore(now=clock)
    s.register_user(USER_ID, "user@example.com", pin_code=STORED_PIN)
    return s


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def services(fake_engine, control_store):
    return build_services(Settings(), engine=fake_engine, store=control_store)


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


@pytest.fixture
def signed_in(client):
    res = client.put("/control/identity", json={"access_token": USER_ID})
    assert res.status_code == 200
    return client


# --- Session ---


def test_get_session_idle(client):
    res = client.get("/control/session")

    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "idle"
    assert body["listening"] is False
    assert body["messages"] == []


def test_start_and_end_session(client, fake_engine, capsys):
    res = client.post("/control/session/start")
    assert res.status_code == 200
    assert res.json()["status"] == "connecting"

    assembled = fake_engine.started_with[0]
    assert "verify_pin" in [f["name"] for f in assembled["functions"]]
    assert assembled["firstMessage"] == "Hello! How can I help you today?"

    res = client.post("/engine/events", json={"event": "call-start"})
    assert res.status_code == 200
    assert client.get("/control/session").json()["status"] == "active"

    res = client.post("/control/session/end")
    assert res.status_code == 200
    assert res.json()["status"] == "ended"

    out = capsys.readouterr().out
    assert "control.command_received" in out
    assert "control.command_applied" in out


def test_start_failure_returns_stable_error(control_store):
    engine = FakeEngine(fail_start=TransportError.from_response(401, "Unauthorized", '{"message": "Invalid key"}'))
    client = TestClient(create_app(build_services(Settings(), engine=engine, store=control_store)))

    res = client.post("/control/session/start")

    assert res.status_code == 502
    assert res.json()["detail"] == {
        "error": "Voice engine error: API Error 401: Unauthorized - Invalid key",
        "reason": "start_failed",
    }
    assert client.get("/control/session").json()["status"] == "idle"


def test_end_from_idle_is_ok(client, fake_engine):
    res = client.post("/control/session/end")

    assert res.status_code == 200
    assert res.json()["status"] == "idle"
    assert fake_engine.stop_calls == 0


def test_send_message_requires_active_call(client):
    res = client.post("/control/session/messages", json={"text": "hello"})

    assert res.status_code == 409
    assert res.json()["detail"]["reason"] == "session_not_active"


def test_send_message(client, fake_engine):
    client.post("/control/session/start")
    client.post("/engine/events", json={"event": "call-start"})

    res = client.post("/control/session/messages", json={"text": "hello"})

    assert res.status_code == 200
    assert res.json()["messages"][-1]["content"] == "hello"
    assert fake_engine.sent[-1]["type"] == "add-message"


def test_send_message_rejects_empty_text(client):
    assert client.post("/control/session/messages", json={"text": ""}).status_code == 422


def test_session_events(client):
    client.post("/control/session/start")
    client.post("/engine/events", json={"event": "call-start"})

    res = client.get("/control/session/events", params={"event_type": "session.state_changed"})

    assert res.status_code == 200
    body = res.json()
    assert body["count"] == 2
    assert [e["to_state"] for e in body["events"]] == ["connecting", "active"]


def test_session_events_invalid_since(client):
    res = client.get("/control/session/events", params={"since": "yesterday"})

    assert res.status_code == 400


# --- Identity and PIN ---


def test_identity_binding(client):
    res = client.put("/control/identity", json={"access_token": USER_ID})

    assert res.json()["authenticated"] is True
    assert res.json()["profile"]["id"] == USER_ID

    res = client.put("/control/identity", json={"access_token": None})
    assert res.json() == {"authenticated": False, "profile": None}


def test_identity_unknown_token(client):
    res = client.put("/control/identity", json={"access_token": "forged"})

    assert res.json()["authenticated"] is False


def test_verify_pin_requires_sign_in(client):
    res = client.post("/control/pin/verify", json={"pin": STORED_PIN})

    assert res.status_code == 401
    assert res.json()["detail"]["reason"] == "not_authenticated"


def test_verify_pin(signed_in):
    res = signed_in.post("/control/pin/verify", json={"pin": 48213})

    assert res.status_code == 200
    assert res.json()["success"] is True


def test_verify_pin_mismatch(signed_in):
    res = signed_in.post("/control/pin/verify", json={"pin": "111111"})

    assert res.status_code == 403
    assert res.json()["detail"] == {"error": "Invalid PIN code. Please try again.", "reason": "pin_mismatch"}


def test_verify_pin_invalid_format(signed_in):
    res = signed_in.post("/control/pin/verify", json={"pin": "12"})

    assert res.status_code == 422
    assert res.json()["detail"]["reason"] == "invalid_format"


def test_profile_hides_pin(signed_in):
    res = signed_in.get("/control/profile")

    assert res.status_code == 200
    profile = res.json()["profile"]
    assert profile["has_pin"] is True
    assert "pin_code" not in profile
    assert STORED_PIN not in res.text


def test_pin_management_flow(signed_in):
    res = signed_in.put("/control/pin", json={"current_pin": "000000", "new_pin": "123456"})
    assert res.status_code == 403
    assert res.json()["detail"]["reason"] == "current_pin_mismatch"

    res = signed_in.put("/control/pin", json={"current_pin": STORED_PIN, "new_pin": "123456"})
    assert res.status_code == 200
    assert signed_in.post("/control/pin/verify", json={"pin": "123456"}).status_code == 200

    res = signed_in.delete("/control/pin")
    assert res.status_code == 200
    assert res.json()["profile"]["has_pin"] is False

    res = signed_in.post("/control/pin/verify", json={"pin": "123456"})
    assert res.status_code == 404
    assert res.json()["detail"]["reason"] == "no_pin_configured"

    res = signed_in.post("/control/pin", json={"pin": "654321"})
    assert res.status_code == 200
    assert res.json()["profile"]["has_pin"] is True
