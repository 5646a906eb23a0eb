"""
Assistant configuration handed to the voice engine on start.

Profiles live in voice_control/assistants/ as YAML (PyYAML safe_load, so pure
JSON files work too). The profile supplies model, voice and greeting; the
advertised functions always come from the function registry, so the engine
never hears about a name the dispatcher would reject.
"""
import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .functions import FunctionRegistry

SYSTEM_PROMPT = (
    "You are a helpful voice assistant. IMPORTANT: You must ALWAYS verify the user's 6-digit PIN "
    "before taking any action. Follow these steps strictly: 1) If no PIN is provided, ask for it. "
    "2) Use the verify_pin function to validate the PIN. 3) Only after successful PIN verification, "
    "proceed with the requested action. If verification fails, inform the user and ask for the "
    "correct PIN. Keep all responses brief and focused."
)

FALLBACK_PROFILE: Dict[str, Any] = {
    "name": "default",
    "model": {
        "provider": "openai",
        "model": "gpt-3.5-turbo",
        "messages": [{"role": "system", "content": SYSTEM_PROMPT}],
    },
    "voice": {"provider": "playht", "voiceId": "jennifer"},
    "firstMessage": "Hello! How can I help you today?",
}


def _get_profiles_dir() -> Path:
    return Path(__file__).parent / "assistants"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Assistant profile {path} must contain a mapping at top-level")
        return data


def load_profile(name: str = "default", profiles_dir: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load an assistant profile by name.

    Resolution order: <name>.yaml, <name>.yml, <name>.json, then the same for
    "default", then the built-in fallback.
    """
    profiles_dir = profiles_dir or _get_profiles_dir()
    for candidate_name in (name, "default"):
        for suffix in (".yaml", ".yml", ".json"):
            candidate = profiles_dir / f"{candidate_name}{suffix}"
            if candidate.exists():
                return _load_file(candidate)
    return copy.deepcopy(FALLBACK_PROFILE)


def build_assistant_config(
    registry: FunctionRegistry,
    name: str = "default",
    profiles_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    profile = load_profile(name, profiles_dir)
    config = {k: v for k, v in profile.items() if k != "name"}
    config["functions"] = registry.tool_definitions()
    return config
