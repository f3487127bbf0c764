from __future__ import annotations

import os
from dataclasses import dataclass


MAX_STEPS_CEILING = 5


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _getenv_choice(name: str, default: str, choices: set[str]) -> str:
    value = _getenv_str(name, default).strip().lower()
    if value not in choices:
        return default
    return value


@dataclass(frozen=True, slots=True)
class AgentConfig:
    # Deployment
    app_env: str = "development"  # development | production
    structured_logging: bool = True

    # Model provider (tests default to the scripted fake)
    llm_provider: str = "fake"  # fake | openai | gemini
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_timeout_ms: int = 15000
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash-lite"

    # Generation loop
    max_steps: int = MAX_STEPS_CEILING
    tool_timeout_ms: int = 10000
    listing_provider: str = "static"  # static | llm
    listing_count: int = 5

    # Conversation storage
    store_backend: str = "memory"  # memory | file
    store_dir: str = ""

    # Per-session backpressure
    session_queue_max: int = 4
    outbound_queue_max: int = 256
    stream_settle_timeout_ms: int = 30000

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def effective_max_steps(self) -> int:
        # The ceiling holds regardless of configuration.
        return max(1, min(MAX_STEPS_CEILING, int(self.max_steps)))

    @staticmethod
    def from_env() -> "AgentConfig":
        return AgentConfig(
            app_env=_getenv_choice("APP_ENV", "development", {"development", "production"}),
            structured_logging=_getenv_bool("STRUCTURED_LOGGING", True),
            llm_provider=_getenv_choice("LLM_PROVIDER", "fake", {"fake", "openai", "gemini"}),
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            openai_model=_getenv_str("OPENAI_MODEL", "gpt-4o-mini"),
            openai_timeout_ms=_getenv_int("OPENAI_TIMEOUT_MS", 15000),
            gemini_api_key=_getenv_str("GEMINI_API_KEY", _getenv_str("GOOGLE_GENERATIVE_AI_API_KEY", "")),
            gemini_model=_getenv_str("GEMINI_MODEL", "gemini-2.5-flash-lite"),
            max_steps=_getenv_int("MAX_STEPS", MAX_STEPS_CEILING),
            tool_timeout_ms=_getenv_int("TOOL_TIMEOUT_MS", 10000),
            listing_provider=_getenv_choice("LISTING_PROVIDER", "static", {"static", "llm"}),
            listing_count=max(1, _getenv_int("LISTING_COUNT", 5)),
            store_backend=_getenv_choice("STORE_BACKEND", "memory", {"memory", "file"}),
            store_dir=_getenv_str("STORE_DIR", ""),
            session_queue_max=max(1, _getenv_int("SESSION_QUEUE_MAX", 4)),
            outbound_queue_max=max(1, _getenv_int("OUTBOUND_QUEUE_MAX", 256)),
            stream_settle_timeout_ms=max(0, _getenv_int("STREAM_SETTLE_TIMEOUT_MS", 30000)),
        )
