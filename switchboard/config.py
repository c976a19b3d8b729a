from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from switchboard.logging import get_logger

logger = get_logger(__name__)


class ContextStoreProvider(str, Enum):
    """Backends available for live session contexts."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the routing and tool engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/switchboard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables in-memory fallbacks and the canned model backend",
    )
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Permit in-memory queue and context store when Redis is unreachable",
    )
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8000, "PORT", ge=1, le=65535)

    # Context store
    context_store_provider: ContextStoreProvider = env_field(
        ContextStoreProvider.MEMORY, "CONTEXT_STORE_PROVIDER"
    )
    context_ttl_seconds: int = env_field(3600, "CONTEXT_TTL_SECONDS", ge=1)
    context_sweep_interval_seconds: int = env_field(
        60, "CONTEXT_SWEEP_INTERVAL_SECONDS", ge=1
    )

    # Tool enforcement
    enable_permission_checks: bool = env_field(True, "ENABLE_PERMISSION_CHECKS")
    enable_rate_limiting: bool = env_field(True, "ENABLE_RATE_LIMITING")
    rate_limit_sweep_interval_seconds: int = env_field(
        60, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS", ge=1
    )

    # Tool execution
    tool_timeout_seconds: float = env_field(10.0, "TOOL_TIMEOUT_SECONDS", gt=0)
    tool_fetch_timeout_seconds: float = env_field(10.0, "TOOL_FETCH_TIMEOUT_SECONDS", gt=0)
    tool_fetch_connect_timeout_seconds: float = env_field(
        5.0, "TOOL_FETCH_CONNECT_TIMEOUT_SECONDS", gt=0
    )
    tool_network_allowlist: list[str] = env_field(
        [],
        "TOOL_NETWORK_ALLOWLIST",
        description="Comma separated hosts reachable from tool fetch; empty allows any host",
    )
    tool_fetch_proxy_url: str | None = env_field(None, "TOOL_FETCH_PROXY_URL")
    connector_service_url: str = env_field(
        "http://localhost:3001", "CONNECTOR_SERVICE_URL"
    )
    connector_timeout_seconds: float = env_field(30.0, "CONNECTOR_TIMEOUT_SECONDS", gt=0)

    # Outbound dispatch
    dispatch_attempts: int = env_field(5, "DISPATCH_ATTEMPTS", ge=1)
    dispatch_backoff_ms: int = env_field(3000, "DISPATCH_BACKOFF_MS", ge=0)
    queue_poll_interval_seconds: float = env_field(1.0, "QUEUE_POLL_INTERVAL_SECONDS", gt=0)
    use_queue_for_incoming_webhooks: bool = env_field(
        True, "USE_QUEUE_FOR_INCOMING_WEBHOOKS"
    )
    provider_timeout_seconds: float = env_field(30.0, "PROVIDER_TIMEOUT_SECONDS", gt=0)

    # Message processing
    llm_api_key: str | None = env_field(None, "LLM_API_KEY")
    llm_base_url: str = env_field("https://api.openai.com/v1", "LLM_BASE_URL")
    llm_default_model: str = env_field("gpt-4o-mini", "LLM_DEFAULT_MODEL")
    llm_timeout_seconds: float = env_field(60.0, "LLM_TIMEOUT_SECONDS", gt=0)
    max_tool_rounds: int = env_field(3, "MAX_TOOL_ROUNDS", ge=0)
    history_limit: int = env_field(100, "HISTORY_LIMIT", ge=1)
    external_context_max_chars: int = env_field(4000, "EXTERNAL_CONTEXT_MAX_CHARS", ge=100)
    serialize_user_messages: bool = env_field(
        True,
        "SERIALIZE_USER_MESSAGES",
        description="Process messages from one channel user one at a time within a process",
    )
    log_external_context_json: bool = env_field(False, "LOG_EXTERNAL_CONTEXT_JSON")
    log_enhanced_system_prompt: bool = env_field(False, "LOG_ENHANCED_SYSTEM_PROMPT")

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

    @field_validator("context_store_provider", mode="before")
    @classmethod
    def _validate_provider(cls, value: Any) -> ContextStoreProvider:
        if isinstance(value, str):
            value = value.strip().lower()
        try:
            return ContextStoreProvider(value)
        except ValueError:
            logger.warning("unknown_context_store_provider", provider=value)
            return ContextStoreProvider.MEMORY

    @field_validator("tool_network_allowlist", mode="before")
    @classmethod
    def _split_allowlist(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [host.strip().lower() for host in value.split(",") if host.strip()]
        return [str(host).strip().lower() for host in value if str(host).strip()]

    @field_validator("connector_service_url", "llm_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


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
