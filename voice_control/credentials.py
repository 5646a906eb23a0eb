"""
Credential store adapter.

Thin async facade over the profile store that holds each user's PIN. Two
implementations:
- SupabaseCredentialStore: `user_profiles` table + Supabase auth
- InMemoryCredentialStore: development mode and tests

Failures surface as typed errors (errors.AuthError / errors.StoreFailure);
nothing is retried and nothing silently falls back to a default.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from logging_setup import get_logger, Component
from .errors import NotAuthenticatedError, ProfileNotFoundError, StoreFailure

logger = get_logger(Component.CREDENTIAL_STORE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class AuthenticatedUser:
    """Identity of the signed-in user. Resolved per call, never cached."""

    id: str
    email: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class UserProfile:
    """Row of the profile table."""

    id: str
    email: Optional[str] = None
    pin_code: Optional[str] = None
    pin_created_at: Optional[str] = None
    pin_updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserProfile":
        pin_code = row.get("pin_code")
        return cls(
            id=str(row["id"]),
            email=row.get("email"),
            pin_code=str(pin_code) if pin_code is not None else None,
            pin_created_at=_iso(row.get("pin_created_at")),
            pin_updated_at=_iso(row.get("pin_updated_at")),
        )

    @property
    def has_pin(self) -> bool:
        return bool(self.pin_code)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CredentialStore(Protocol):
    """Operations the PIN flow needs from the profile store."""

    def bind_access_token(self, access_token: Optional[str]) -> None: ...

    async def get_current_user(self) -> AuthenticatedUser: ...

    async def get_profile(self, user_id: str) -> UserProfile: ...

    async def ensure_profile(self, user: AuthenticatedUser) -> UserProfile: ...

    async def get_stored_pin(self, user_id: str) -> Optional[str]: ...

    async def set_pin(self, user_id: str, new_pin: str) -> UserProfile: ...

    async def clear_pin(self, user_id: str) -> UserProfile: ...


def pin_update_fields(previous: Optional[UserProfile], new_pin: str, now: datetime) -> Dict[str, Any]:
    """
    Columns written when a PIN is set.

    pin_created_at is only written when no PIN existed before; pin_updated_at
    is always refreshed.
    """
    stamp = now.isoformat()
    fields: Dict[str, Any] = {"pin_code": new_pin, "pin_updated_at": stamp}
    if previous is None or not previous.has_pin:
        fields["pin_created_at"] = stamp
    return fields


class InMemoryCredentialStore:
    """Dictionary-backed store. Users are registered with an access token."""

    def __init__(self, now: Callable[[], datetime] = _utcnow):
        self._now = now
        self._users: Dict[str, AuthenticatedUser] = {}
        self._profiles: Dict[str, UserProfile] = {}
        self._access_token: Optional[str] = None

    def register_user(
        self,
        user_id: str,
        email: Optional[str] = None,
        *,
        access_token: Optional[str] = None,
        pin_code: Optional[str] = None,
        with_profile: bool = True,
    ) -> AuthenticatedUser:
        """Add a user (and by default a profile row). Token defaults to the user id."""
        user = AuthenticatedUser(id=user_id, email=email, created_at=self._now().isoformat())
        self._users[access_token or user_id] = user
        if with_profile:
            profile = UserProfile(id=user_id, email=email)
            if pin_code is not None:
                profile.pin_code = pin_code
                profile.pin_created_at = profile.pin_updated_at = self._now().isoformat()
            self._profiles[user_id] = profile
        return user

    def bind_access_token(self, access_token: Optional[str]) -> None:
        self._access_token = access_token

    async def get_current_user(self) -> AuthenticatedUser:
        user = self._users.get(self._access_token) if self._access_token else None
        if user is None:
            raise NotAuthenticatedError()
        return user

    async def get_profile(self, user_id: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise ProfileNotFoundError(user_id)
        return UserProfile(**profile.to_dict())

    async def ensure_profile(self, user: AuthenticatedUser) -> UserProfile:
        if user.id not in self._profiles:
            self._profiles[user.id] = UserProfile(id=user.id, email=user.email)
        return await self.get_profile(user.id)

    async def get_stored_pin(self, user_id: str) -> Optional[str]:
        return (await self.get_profile(user_id)).pin_code

    async def set_pin(self, user_id: str, new_pin: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise StoreFailure(f"Cannot update PIN: no profile row for user {user_id}")
        for key, value in pin_update_fields(profile, new_pin, self._now()).items():
            setattr(profile, key, value)
        return await self.get_profile(user_id)

    async def clear_pin(self, user_id: str) -> UserProfile:
        profile = self._profiles.get(user_id)
        if profile is None:
            raise StoreFailure(f"Cannot clear PIN: no profile row for user {user_id}")
        profile.pin_code = None
        profile.pin_updated_at = self._now().isoformat()
        return await self.get_profile(user_id)


class SupabaseCredentialStore:
    """
    Profile store backed by Supabase.

    The supabase client is synchronous; every call runs in a worker thread so
    the event loop keeps serving engine events.
    """

    NOT_FOUND_CODE = "PGRST116"

    def __init__(
        self,
        client: Any,
        table: str = "user_profiles",
        now: Callable[[], datetime] = _utcnow,
    ):
        self._client = client
        self._table = table
        self._now = now
        self._access_token: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Any) -> "SupabaseCredentialStore":
        from supabase import create_client

        client = create_client(settings.supabase_url, settings.supabase_key)
        return cls(client, table=settings.profiles_table)

    def bind_access_token(self, access_token: Optional[str]) -> None:
        self._access_token = access_token

    async def _run(self, operation: str, fn: Callable[[], Any]) -> Any:
        from postgrest.exceptions import APIError

        try:
            return await asyncio.to_thread(fn)
        except APIError as e:
            if getattr(e, "code", None) == self.NOT_FOUND_CODE:
                raise
            logger.error("Profile store operation failed", operation=operation, error=str(e), code=getattr(e, "code", None))
            raise StoreFailure(f"{operation} failed: {getattr(e, 'message', None) or e}") from e
        except Exception as e:
            logger.error("Profile store unreachable", operation=operation, error=str(e), error_type=type(e).__name__)
            raise StoreFailure(f"{operation} failed: {e}") from e

    async def get_current_user(self) -> AuthenticatedUser:
        if not self._access_token:
            raise NotAuthenticatedError()
        token = self._access_token
        try:
            response = await asyncio.to_thread(lambda: self._client.auth.get_user(token))
        except Exception as e:
            logger.warning("Auth lookup failed", error=str(e), error_type=type(e).__name__)
            raise NotAuthenticatedError() from e
        user = getattr(response, "user", None)
        if user is None:
            raise NotAuthenticatedError()
        return AuthenticatedUser(id=str(user.id), email=getattr(user, "email", None), created_at=_iso(getattr(user, "created_at", None)))

    async def _select_profile(self, user_id: str, columns: str = "*") -> Optional[Dict[str, Any]]:
        from postgrest.exceptions import APIError

        query = self._client.table(self._table).select(columns).eq("id", user_id).maybe_single()
        try:
            response = await self._run("select profile", query.execute)
        except APIError:
            return None
        data = getattr(response, "data", None) if response is not None else None
        return data if isinstance(data, dict) else None

    async def get_profile(self, user_id: str) -> UserProfile:
        row = await self._select_profile(user_id)
        if row is None:
            raise ProfileNotFoundError(user_id)
        return UserProfile.from_row(row)

    async def ensure_profile(self, user: AuthenticatedUser) -> UserProfile:
        row = await self._select_profile(user.id)
        if row is not None:
            return UserProfile.from_row(row)
        logger.info("Creating missing profile row", user_id=user.id)
        insert = self._client.table(self._table).insert({"id": user.id, "email": user.email})
        response = await self._run("create profile", insert.execute)
        return UserProfile.from_row(self._first_row(response, "create profile"))

    async def get_stored_pin(self, user_id: str) -> Optional[str]:
        row = await self._select_profile(user_id, "id, pin_code")
        if row is None:
            raise ProfileNotFoundError(user_id)
        pin_code = row.get("pin_code")
        return str(pin_code) if pin_code else None

    async def set_pin(self, user_id: str, new_pin: str) -> UserProfile:
        row = await self._select_profile(user_id)
        previous = UserProfile.from_row(row) if row is not None else None
        fields = pin_update_fields(previous, new_pin, self._now())
        update = self._client.table(self._table).update(fields).eq("id", user_id)
        response = await self._run("update PIN", update.execute)
        return UserProfile.from_row(self._first_row(response, "update PIN"))

    async def clear_pin(self, user_id: str) -> UserProfile:
        fields = {"pin_code": None, "pin_updated_at": self._now().isoformat()}
        update = self._client.table(self._table).update(fields).eq("id", user_id)
        response = await self._run("clear PIN", update.execute)
        return UserProfile.from_row(self._first_row(response, "clear PIN"))

    @staticmethod
    def _first_row(response: Any, operation: str) -> Dict[str, Any]:
        data = getattr(response, "data", None)
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]
        if isinstance(data, dict):
            return data
        raise StoreFailure(f"{operation} failed: no profile row returned")
