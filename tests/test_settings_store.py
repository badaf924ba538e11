from __future__ import annotations

import json

import pytest

from models import BUILTIN_PROFILES, DEFAULT_PROFILE_ID, EndpointProfile
from services.settings_store import DEFAULT_MODEL, EvaluatorConfig, ProfileError, SettingsStore


def _custom_profile(**overrides) -> EndpointProfile:
    data = {"name": "Local", "endpoint": "http://localhost:8080/v1/chat/completions"}
    data.update(overrides)
    return EndpointProfile(**data)


def test_values_persist_across_instances(tmp_path):
    path = tmp_path / "settings.json"
    store = SettingsStore(path)
    store.set_api_key("  sk-abc  ")
    store.set_model("org/model")
    store.set_test_mode(True)

    reloaded = SettingsStore(path)

    assert reloaded.get_api_key() == "sk-abc"
    assert reloaded.get_model() == "org/model"
    assert reloaded.is_test_mode() is True


def test_defaults_seed_unset_keys_and_stored_values_win(tmp_path):
    store = SettingsStore(tmp_path / "settings.json", defaults={"api_key": "env-key", "model": "env/model"})
    assert store.get_api_key() == "env-key"

    store.set_api_key("stored-key")

    assert store.get_api_key() == "stored-key"
    assert store.get_model() == "env/model"


def test_clearing_a_value_falls_back_to_default(settings_store):
    settings_store.set_model("org/model")
    settings_store.set_model(None)

    assert settings_store.get_model() == DEFAULT_MODEL


def test_invalid_settings_file_starts_empty(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{broken", encoding="utf-8")

    assert SettingsStore(path).get_api_key() is None


def test_in_memory_store_writes_nothing(tmp_path):
    store = SettingsStore()
    store.set_test_mode(True)

    assert store.is_test_mode()
    assert list(tmp_path.iterdir()) == []


def test_builtin_profiles_are_available_and_default_is_active(settings_store):
    assert settings_store.get_active_profile_id() == DEFAULT_PROFILE_ID
    assert set(settings_store.all_profiles()) == set(BUILTIN_PROFILES)
    assert settings_store.get_active_profile().endpoint == BUILTIN_PROFILES["together"].endpoint


def test_builtin_profiles_cannot_be_changed(settings_store):
    with pytest.raises(ProfileError):
        settings_store.save_profile("openai", _custom_profile())
    with pytest.raises(ProfileError):
        settings_store.delete_profile("together")


def test_custom_profile_round_trip(settings_store):
    settings_store.save_profile("local", _custom_profile(max_tokens=2000))

    assert settings_store.is_custom_profile("local")
    assert settings_store.get_profile("local").max_tokens == 2000

    settings_store.set_active_profile_id("local")
    assert settings_store.get_active_profile().name == "Local"

    settings_store.delete_profile("local")
    assert settings_store.get_profile("local") is None
    assert settings_store.get_active_profile_id() == DEFAULT_PROFILE_ID


def test_activating_unknown_profile_fails(settings_store):
    with pytest.raises(ProfileError):
        settings_store.set_active_profile_id("missing")


def test_deleting_unknown_profile_fails(settings_store):
    with pytest.raises(ProfileError):
        settings_store.delete_profile("missing")


def test_invalid_stored_profile_is_ignored(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps({"custom_profiles": {"broken": {"name": "Broken", "endpoint": "ftp://x"}}}),
        encoding="utf-8",
    )

    assert SettingsStore(path).get_custom_profiles() == {}


def test_profile_requires_api_key_placeholder():
    with pytest.raises(ValueError):
        _custom_profile(auth_header_template="Bearer hardcoded")


def test_profile_accepts_camel_case_fields():
    profile = EndpointProfile.model_validate(
        {
            "name": "Camel",
            "endpoint": "https://example.org/chat",
            "authHeaderTemplate": "Key {API_KEY}",
            "modelParamName": "engine",
            "maxTokens": 10,
        }
    )

    request = profile.build_request("secret", "m", [])

    assert request.headers["Authorization"] == "Key secret"
    assert request.body["engine"] == "m"
    assert request.body["max_tokens"] == 10


def test_streaming_profile_requests_stream():
    request = _custom_profile(stream=True).build_request("k", "m", [])

    assert request.body["stream"] is True


def test_preview_request_uses_placeholders():
    preview = BUILTIN_PROFILES["openai"].preview_request()

    assert preview.startswith("requests.post(")
    assert "Bearer YOUR_API_KEY" in preview
    assert "SELECTED_MODEL" in preview


def test_config_reads_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("OUTPUT_BASE", str(tmp_path))
    monkeypatch.delenv("DMP_SETTINGS_PATH", raising=False)
    monkeypatch.delenv("AI_API_KEY", raising=False)
    monkeypatch.setenv("TOGETHER_API_KEY", "together-key")
    monkeypatch.setenv("DMP_TEST_MODE", "yes")
    monkeypatch.setenv("AI_TIMEOUT_SECONDS", "not-a-number")

    config = EvaluatorConfig.load()

    assert config.output_base == tmp_path
    assert config.settings_path == tmp_path / "settings.json"
    assert config.api_key == "together-key"
    assert config.test_mode is True
    assert config.timeout_seconds == 120

    store = SettingsStore.from_config(config)
    assert store.get_api_key() == "together-key"
    assert store.is_test_mode()
