"""
Voice control configuration.

Loads settings from environment variables. `.env_local` / `.env.local` in the
repository root are read first (local dev convenience) without overriding
variables that are already exported.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ENGINE_KEY_PLACEHOLDER = "your_vapi_public_key_here"
DEFAULT_ENGINE_API_URL = "https://api.vapi.ai"


def load_env_files(root: Optional[Path] = None) -> None:
    """Best-effort load of local env files; existing variables win."""
    root = root or Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    "8000  # comment" -> 8000, unset or garbage -> default
    """
    value = os.environ.get(key)
    if not value:
        return default
    value = value.split("#")[0].strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_bool_env(key: str, default: bool) -> bool:
    value = os.environ.get(key)
    if value is None or not value.strip():
        return default
    return value.split("#")[0].strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Voice control service configuration."""

    # Voice engine
    engine_api_url: str = DEFAULT_ENGINE_API_URL
    engine_api_key: Optional[str] = None
    engine_timeout_seconds: int = 10

    # Credential store (Supabase); in-memory store when unset
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    profiles_table: str = "user_profiles"

    # Outbound notification webhook
    notify_webhook_url: Optional[str] = None
    notify_timeout_seconds: int = 10

    # Assistant
    assistant_profile: str = "default"
    debug_functions: bool = True

    # Server / logging
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        """Load configuration from environment variables."""
        return cls(
            engine_api_url=os.environ.get("ENGINE_API_URL", DEFAULT_ENGINE_API_URL).rstrip("/"),
            engine_api_key=os.environ.get("ENGINE_API_KEY") or os.environ.get("VAPI_PUBLIC_KEY"),
            engine_timeout_seconds=_parse_int_env("ENGINE_TIMEOUT_SECONDS", default=10),
            supabase_url=os.environ.get("SUPABASE_URL") or None,
            supabase_key=os.environ.get("SUPABASE_KEY") or os.environ.get("SUPABASE_ANON_KEY") or None,
            profiles_table=os.environ.get("PROFILES_TABLE", "user_profiles"),
            notify_webhook_url=os.environ.get("NOTIFY_WEBHOOK_URL") or None,
            notify_timeout_seconds=_parse_int_env("NOTIFY_TIMEOUT_SECONDS", default=10),
            assistant_profile=os.environ.get("ASSISTANT_PROFILE", "default"),
            debug_functions=_parse_bool_env("ASSISTANT_DEBUG_FUNCTIONS", default=True),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_parse_int_env("PORT", default=8000),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_json=_parse_bool_env("LOG_JSON", default=True),
        )

    def has_valid_engine_key(self) -> bool:
        """Engine public key is set, not the placeholder, and UUID-shaped."""
        key = self.engine_api_key
        return bool(
            key
            and key != ENGINE_KEY_PLACEHOLDER
            and len(key) > 10
            and "-" in key
        )

    @property
    def has_supabase(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def get_config() -> Settings:
    """Get or create the global settings instance."""
    global _config
    if _config is None:
        load_env_files()
        _config = Settings.from_env()
    return _config


def reset_config() -> None:
    global _config
    _config = None


_config: Optional[Settings] = None
