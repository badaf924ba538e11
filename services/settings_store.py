"""Persistent key-value settings and endpoint profile management."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from models import BUILTIN_PROFILES, DEFAULT_PROFILE_ID, EndpointProfile
from utils import io_utils

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "Qwen/Qwen3-235B-A22B-Instruct-2507-tput"


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env(*names: str, default: Optional[str] = None) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return default


@dataclass
class EvaluatorConfig:
    """Environment-driven runtime settings."""

    output_base: Path
    settings_path: Path
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    test_mode: bool = False
    timeout_seconds: int = 120
    max_upload_mb: int = 50

    @classmethod
    def load(cls) -> "EvaluatorConfig":
        output_base = Path(os.getenv("OUTPUT_BASE") or "./data").expanduser()
        settings_path = os.getenv("DMP_SETTINGS_PATH")
        return cls(
            output_base=output_base,
            settings_path=Path(settings_path).expanduser() if settings_path else output_base / "settings.json",
            api_key=_get_env("AI_API_KEY", "TOGETHER_API_KEY", "OPENAI_API_KEY"),
            model=_get_env("AI_MODEL", default=DEFAULT_MODEL) or DEFAULT_MODEL,
            test_mode=_bool_env("DMP_TEST_MODE", False),
            timeout_seconds=max(_int_env("AI_TIMEOUT_SECONDS", 120), 1),
            max_upload_mb=max(_int_env("MAX_UPLOAD_MB", 50), 1),
        )


class ProfileError(ValueError):
    """Raised when a profile cannot be saved, found or deleted."""


class SettingsStore:
    """Key-value settings shared by the orchestrator and the model client.

    Values are kept in a JSON file when ``path`` is given, otherwise in memory.
    ``defaults`` seed keys that have never been stored.
    """

    def __init__(self, path: Optional[Path] = None, *, defaults: Optional[Dict[str, Any]] = None) -> None:
        self.path = path
        self._defaults: Dict[str, Any] = dict(defaults or {})
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = self._load()

    @classmethod
    def from_config(cls, config: EvaluatorConfig) -> "SettingsStore":
        return cls(
            config.settings_path,
            defaults={
                "api_key": config.api_key,
                "model": config.model,
                "test_mode": config.test_mode,
            },
        )

    # ------------------------------------------------------------------
    # Generic access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key in self._data:
                return self._data[key]
        return self._defaults.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
            self._save()

    # ------------------------------------------------------------------
    # Typed settings
    # ------------------------------------------------------------------

    def get_api_key(self) -> Optional[str]:
        return self.get("api_key") or None

    def set_api_key(self, api_key: Optional[str]) -> None:
        self.set("api_key", api_key.strip() if api_key else None)

    def get_model(self) -> str:
        return self.get("model") or DEFAULT_MODEL

    def set_model(self, model: Optional[str]) -> None:
        self.set("model", model.strip() if model else None)

    def is_test_mode(self) -> bool:
        return bool(self.get("test_mode", False))

    def set_test_mode(self, enabled: bool) -> None:
        self.set("test_mode", bool(enabled))

    # ------------------------------------------------------------------
    # Endpoint profiles
    # ------------------------------------------------------------------

    def get_active_profile_id(self) -> str:
        return self.get("active_profile_id") or DEFAULT_PROFILE_ID

    def set_active_profile_id(self, profile_id: str) -> None:
        if self.get_profile(profile_id) is None:
            raise ProfileError(f"Profile '{profile_id}' not found")
        self.set("active_profile_id", profile_id)

    def get_custom_profiles(self) -> Dict[str, EndpointProfile]:
        raw = self.get("custom_profiles") or {}
        profiles: Dict[str, EndpointProfile] = {}
        for profile_id, payload in raw.items():
            try:
                profiles[profile_id] = EndpointProfile.model_validate(payload)
            except ValidationError as exc:
                logger.warning("Ignoring invalid stored profile %s: %s", profile_id, exc)
        return profiles

    def get_profile(self, profile_id: str) -> Optional[EndpointProfile]:
        builtin = BUILTIN_PROFILES.get(profile_id)
        if builtin is not None:
            return builtin.model_copy(deep=True)
        return self.get_custom_profiles().get(profile_id)

    def get_active_profile(self) -> EndpointProfile:
        profile = self.get_profile(self.get_active_profile_id())
        return profile or BUILTIN_PROFILES[DEFAULT_PROFILE_ID].model_copy(deep=True)

    def all_profiles(self) -> Dict[str, EndpointProfile]:
        profiles = {key: value.model_copy(deep=True) for key, value in BUILTIN_PROFILES.items()}
        profiles.update(self.get_custom_profiles())
        return profiles

    def is_custom_profile(self, profile_id: str) -> bool:
        return profile_id not in BUILTIN_PROFILES and profile_id in self.get_custom_profiles()

    def save_profile(self, profile_id: str, profile: EndpointProfile) -> None:
        profile_id = profile_id.strip()
        if not profile_id:
            raise ProfileError("Profile id must not be blank")
        if profile_id in BUILTIN_PROFILES:
            raise ProfileError(f"Cannot overwrite built-in profile '{profile_id}'")

        raw = dict(self.get("custom_profiles") or {})
        raw[profile_id] = profile.model_dump(mode="json")
        self.set("custom_profiles", raw)

    def delete_profile(self, profile_id: str) -> None:
        if profile_id in BUILTIN_PROFILES:
            raise ProfileError(f"Cannot delete built-in profile '{profile_id}'")

        raw = dict(self.get("custom_profiles") or {})
        if profile_id not in raw:
            raise ProfileError(f"Profile '{profile_id}' not found")
        raw.pop(profile_id)
        self.set("custom_profiles", raw)

        if self.get("active_profile_id") == profile_id:
            self.set("active_profile_id", DEFAULT_PROFILE_ID)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> Dict[str, Any]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            data = io_utils.read_json_file(str(self.path))
        except json.JSONDecodeError as exc:
            logger.warning("Settings file %s is not valid JSON (%s); starting empty", self.path, exc.msg)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self) -> None:
        if self.path is None:
            return
        io_utils.write_json(self.path, self._data)
