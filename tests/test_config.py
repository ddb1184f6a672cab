"""Settings loading and the model registry."""

import pytest
from pydantic import ValidationError

from formfind.config import DEFAULT_DIRECTIVE, ModelEntry, ModelRegistry, Settings


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("CHAT_MODEL", "openai:gpt-4o-mini")
    monkeypatch.setenv("TURN_TIMEOUT_SECONDS", "30")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("SERPAPI_KEY", "  ")
    settings = Settings.from_env()
    assert settings.chat_model == "openai:gpt-4o-mini"
    assert settings.turn_timeout_seconds == 30.0
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.serpapi_key is None


def test_defaults():
    settings = Settings()
    assert settings.directive_text == DEFAULT_DIRECTIVE
    assert settings.directive_history_limit == 2
    assert settings.turn_timeout_seconds == 60.0
    assert settings.chat_model == "google:gemini-2.0-flash-exp"


def test_timeouts_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(turn_timeout_seconds=0)


class TestModelRegistry:
    def test_entry_parse(self):
        entry = ModelEntry.parse("Google:gemini-2.0-flash-exp")
        assert entry.provider == "google"
        assert entry.model_id == "gemini-2.0-flash-exp"
        with pytest.raises(ValueError):
            ModelEntry.parse("no-provider")

    def test_test_mode_swaps_registry_only(self):
        registry = ModelRegistry.from_settings(Settings(test_mode=True))
        assert registry.selectors() == [
            "artifact-model",
            "chat-model",
            "chat-model-reasoning",
            "title-model",
        ]
        assert {e.provider for e in registry.entries.values()} == {"mock"}

    def test_production_registry(self):
        registry = ModelRegistry.from_settings(
            Settings(test_mode=False, reasoning_model="openai:o3-mini")
        )
        assert registry.get("chat-model").provider == "google"
        assert registry.get("chat-model-reasoning").extract_reasoning is True
        assert registry.get("artifact-model") is None

    def test_reasoning_selector_optional(self):
        registry = ModelRegistry.from_settings(Settings(test_mode=False))
        assert registry.get("chat-model-reasoning") is None
