from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


DEFAULT_DIRECTIVE = """You are FormFind, a furniture design AI focused on generating visual designs.

PRIMARY FOCUS:
- Generate furniture design images immediately when requested
- Create photorealistic furniture based on user specifications
- Help users find similar purchasable products matching their design interests

APPROACH:
- Prioritize visual output over lengthy explanations
- Generate designs directly without excessive text descriptions
- Only provide detailed design rationales when specifically asked
- Keep responses brief and focused on the visual output

When analyzing user-provided images, identify key design elements and offer relevant shopping suggestions.

Your main goal is to help users visualize furniture designs and find real products to purchase."""


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/formfind", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/formfind", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Swap the model registry for deterministic mock models and allow runtime resets.",
    )
    # Model registry, each entry is "<provider>:<model id>"
    chat_model: str = env_field("google:gemini-2.0-flash-exp", "CHAT_MODEL")
    title_model: str = env_field("google:gemini-2.0-flash-exp", "TITLE_MODEL")
    reasoning_model: str | None = env_field(
        None,
        "REASONING_MODEL",
        description="Registers chat-model-reasoning when set; <think> tags are split into reasoning",
    )
    google_api_key: str | None = env_field(None, "GOOGLE_GENERATIVE_AI_API_KEY")
    google_base_url: str = env_field(
        "https://generativelanguage.googleapis.com/v1beta", "GOOGLE_API_BASE_URL"
    )
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    # Visual search
    serpapi_key: str | None = env_field(None, "SERPAPI_KEY")
    serpapi_base_url: str = env_field("https://serpapi.com/search", "SERPAPI_BASE_URL")
    public_base_url: str = env_field("http://localhost:8000", "PUBLIC_BASE_URL")
    max_image_bytes: int = env_field(10 * 1024 * 1024, "MAX_IMAGE_BYTES")
    # Turn handling
    turn_timeout_seconds: float = env_field(
        60.0, "TURN_TIMEOUT_SECONDS", description="Upper bound on a single generation"
    )
    turn_lock_wait_seconds: float = env_field(
        10.0,
        "TURN_LOCK_WAIT_SECONDS",
        description="How long a turn waits for another turn on the same chat",
    )
    stream_smoothing_delay_ms: int = env_field(10, "STREAM_SMOOTHING_DELAY_MS")
    directive_text: str = env_field(DEFAULT_DIRECTIVE, "DIRECTIVE_TEXT")
    directive_history_limit: int = env_field(2, "DIRECTIVE_HISTORY_LIMIT")
    chat_rate_limit_per_minute: int = env_field(60, "CHAT_RATE_LIMIT_PER_MINUTE")
    chat_rate_limit_window_seconds: int = env_field(60, "CHAT_RATE_LIMIT_WINDOW_SECONDS")
    session_ttl_minutes: int = env_field(60 * 24 * 30, "SESSION_TTL_MINUTES")
    # HTTP
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", "reasoning_model", "serpapi_key", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("turn_timeout_seconds", "turn_lock_wait_seconds")
    @classmethod
    def _positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value


@dataclass(frozen=True)
class ModelEntry:
    """One selectable model: which backend serves it and under what id."""

    provider: str
    model_id: str
    extract_reasoning: bool = False

    @classmethod
    def parse(cls, value: str, *, extract_reasoning: bool = False) -> "ModelEntry":
        provider, sep, model_id = value.partition(":")
        if not sep or not provider or not model_id:
            raise ValueError(f"model must look like '<provider>:<model>', got {value!r}")
        return cls(provider=provider.strip().lower(), model_id=model_id.strip(), extract_reasoning=extract_reasoning)


@dataclass(frozen=True)
class ModelRegistry:
    """Selector string to model mapping, built once at process start."""

    entries: Dict[str, ModelEntry] = field(default_factory=dict)

    def get(self, selector: str) -> ModelEntry | None:
        return self.entries.get(selector)

    def selectors(self) -> List[str]:
        return sorted(self.entries)

    @classmethod
    def for_tests(cls) -> "ModelRegistry":
        return cls(
            entries={
                "chat-model": ModelEntry("mock", "chat"),
                "chat-model-reasoning": ModelEntry("mock", "reasoning", extract_reasoning=True),
                "title-model": ModelEntry("mock", "title"),
                "artifact-model": ModelEntry("mock", "artifact"),
            }
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelRegistry":
        if settings.test_mode:
            return cls.for_tests()
        entries = {
            "chat-model": ModelEntry.parse(settings.chat_model),
            "title-model": ModelEntry.parse(settings.title_model),
        }
        if settings.reasoning_model:
            entries["chat-model-reasoning"] = ModelEntry.parse(
                settings.reasoning_model, extract_reasoning=True
            )
        return cls(entries=entries)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
