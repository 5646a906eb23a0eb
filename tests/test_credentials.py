"""
Credential store tests: in-memory store and the Supabase adapter
(driven through a mocked supabase client).
"""
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from postgrest.exceptions import APIError

from voice_control.credentials import (
    AuthenticatedUser,
    InMemoryCredentialStore,
    SupabaseCredentialStore,
    UserProfile,
    pin_update_fields,
)
from voice_control.errors import NotAuthenticatedError, ProfileNotFoundError, StoreFailure


# --- pin_update_fields ---


def test_first_pin_sets_created_and_updated():
    now = datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc)
    fields = pin_update_fields(UserProfile(id="u1"), "123456", now)

    assert fields == {
        "pin_code": "123456",
        "pin_created_at": now.isoformat(),
        "pin_updated_at": now.isoformat(),
    }


def test_replacing_pin_keeps_created_at():
    now = datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc)
    previous = UserProfile(id="u1", pin_code="048213", pin_created_at="2023-01-01T00:00:00+00:00")
    fields = pin_update_fields(previous, "123456", now)

    assert "pin_created_at" not in fields
    assert fields["pin_updated_at"] == now.isoformat()


def test_user_profile_from_row():
    profile = UserProfile.from_row({"id": 7, "email": "a@b.c", "pin_code": 48213})

    assert profile.id == "7"
    assert profile.pin_code == "48213"
    assert profile.has_pin


# --- InMemoryCredentialStore ---


@pytest.mark.asyncio
async def test_in_memory_requires_access_token(clock):
    store = InMemoryCredentialStore(now=clock)
    store.register_user("u1", "u1@example.com")

    with pytest.raises(NotAuthenticatedError):
        await store.get_current_user()

    store.bind_access_token("not-a-token")
    with pytest.raises(NotAuthenticatedError):
        await store.get_current_user()

    store.bind_access_token("u1")
    user = await store.get_current_user()
    assert user.id == "u1"
    assert user.email == "u1@example.com"


@pytest.mark.asyncio
async def test_in_memory_custom_access_token(clock):
    store = InMemoryCredentialStore(now=clock)
    store.register_user("u1", access_token="jwt-abc")
    store.bind_access_token("jwt-abc")

    assert (await store.get_current_user()).id == "u1"


@pytest.mark.asyncio
async def test_in_memory_pin_lifecycle(clock):
    store = InMemoryCredentialStore(now=clock)
    store.register_user("u1")

    assert await store.get_stored_pin("u1") is None

    first = await store.set_pin("u1", "048213")
    assert first.pin_code == "048213"
    assert first.pin_created_at == first.pin_updated_at

    second = await store.set_pin("u1", "123456")
    assert second.pin_code == "123456"
    assert second.pin_created_at == first.pin_created_at
    assert second.pin_updated_at > first.pin_updated_at

    cleared = await store.clear_pin("u1")
    assert cleared.pin_code is None
    assert not cleared.has_pin


@pytest.mark.asyncio
async def test_in_memory_missing_profile(clock):
    store = InMemoryCredentialStore(now=clock)
    user = store.register_user("u1", with_profile=False)

    with pytest.raises(ProfileNotFoundError):
        await store.get_profile("u1")
    with pytest.raises(ProfileNotFoundError):
        await store.get_stored_pin("u1")
    with pytest.raises(StoreFailure):
        await store.set_pin("u1", "123456")

    created = await store.ensure_profile(user)
    assert created.id == "u1"
    assert not created.has_pin


@pytest.mark.asyncio
async def test_in_memory_get_profile_returns_copy(store):
    profile = await store.get_profile("user-1")
    profile.pin_code = "999999"

    assert await store.get_stored_pin("user-1") == "048213"


# --- SupabaseCredentialStore ---


def _select_chain(client):
    return client.table.return_value.select.return_value.eq.return_value.maybe_single.return_value


@pytest.fixture
def supabase_client():
    return MagicMock()


@pytest.fixture
def supabase_store(supabase_client, clock):
    s = SupabaseCredentialStore(supabase_client, table="user_profiles", now=clock)
    s.bind_access_token("jwt-abc")
    return s


@pytest.mark.asyncio
async def test_supabase_current_user(supabase_store, supabase_client):
    supabase_client.auth.get_user.return_value = SimpleNamespace(
        user=SimpleNamespace(id="u1", email="u1@example.com", created_at="2024-01-01T00:00:00+00:00")
    )

    user = await supabase_store.get_current_user()

    assert user == AuthenticatedUser(id="u1", email="u1@example.com", created_at="2024-01-01T00:00:00+00:00")
    supabase_client.auth.get_user.assert_called_once_with("jwt-abc")


@pytest.mark.asyncio
async def test_supabase_current_user_without_token(supabase_client, clock):
    store = SupabaseCredentialStore(supabase_client, now=clock)

    with pytest.raises(NotAuthenticatedError):
        await store.get_current_user()
    supabase_client.auth.get_user.assert_not_called()


@pytest.mark.asyncio
async def test_supabase_rejected_token_is_not_authenticated(supabase_store, supabase_client):
    supabase_client.auth.get_user.side_effect = RuntimeError("invalid JWT")

    with pytest.raises(NotAuthenticatedError):
        await supabase_store.get_current_user()


@pytest.mark.asyncio
async def test_supabase_stored_pin(supabase_store, supabase_client):
    _select_chain(supabase_client).execute.return_value = SimpleNamespace(data={"id": "u1", "pin_code": "048213"})

    assert await supabase_store.get_stored_pin("u1") == "048213"
    supabase_client.table.assert_called_with("user_profiles")


@pytest.mark.asyncio
async def test_supabase_missing_row(supabase_store, supabase_client):
    # maybe_single().execute() returns None when no row matches
    _select_chain(supabase_client).execute.return_value = None

    with pytest.raises(ProfileNotFoundError):
        await supabase_store.get_stored_pin("u1")


@pytest.mark.asyncio
async def test_supabase_not_found_code(supabase_store, supabase_client):
    _select_chain(supabase_client).execute.side_effect = APIError(
        {"code": "PGRST116", "message": "JSON object requested, multiple (or no) rows returned"}
    )

    with pytest.raises(ProfileNotFoundError):
        await supabase_store.get_profile("u1")


@pytest.mark.asyncio
async def test_supabase_unreachable_is_store_failure(supabase_store, supabase_client):
    _select_chain(supabase_client).execute.side_effect = ConnectionError("connection refused")

    with pytest.raises(StoreFailure):
        await supabase_store.get_stored_pin("u1")


@pytest.mark.asyncio
async def test_supabase_ensure_profile_inserts_missing_row(supabase_store, supabase_client):
    _select_chain(supabase_client).execute.return_value = None
    insert = supabase_client.table.return_value.insert
    insert.return_value.execute.return_value = SimpleNamespace(data=[{"id": "u1", "email": "u1@example.com"}])

    profile = await supabase_store.ensure_profile(AuthenticatedUser(id="u1", email="u1@example.com"))

    assert profile.id == "u1"
    assert not profile.has_pin
    insert.assert_called_once_with({"id": "u1", "email": "u1@example.com"})


@pytest.mark.asyncio
async def test_supabase_set_first_pin(supabase_store, supabase_client):
    _select_chain(supabase_client).execute.return_value = SimpleNamespace(data={"id": "u1", "pin_code": None})
    update = supabase_client.table.return_value.update
    update.return_value.eq.return_value.execute.return_value = SimpleNamespace(
        data=[{"id": "u1", "pin_code": "123456"}]
    )

    profile = await supabase_store.set_pin("u1", "123456")

    fields = update.call_args.args[0]
    assert fields["pin_code"] == "123456"
    assert "pin_created_at" in fields
    assert profile.pin_code == "123456"


@pytest.mark.asyncio
async def test_supabase_update_without_row_is_store_failure(supabase_store, supabase_client):
    update = supabase_client.table.return_value.update
    update.return_value.eq.return_value.execute.return_value = SimpleNamespace(data=[])

    with pytest.raises(StoreFailure):
        await supabase_store.clear_pin("u1")
