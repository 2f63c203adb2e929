from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowkernel.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime defaults for the workflow engine and its built-in tools."""

    default_llm_timeout_s: float = env_field(
        120, "FLOW_LLM_TIMEOUT", description="Default timeout for llm steps"
    )
    default_tool_timeout_s: float = env_field(
        30, "FLOW_TOOL_TIMEOUT", description="Default timeout for tool, http, file and shell steps"
    )
    default_workflow_timeout_s: float = env_field(
        300, "FLOW_WORKFLOW_TIMEOUT", description="Timeout for a whole workflow run"
    )
    retry_backoff_ms: int = env_field(500, "FLOW_RETRY_BACKOFF_MS")
    llm_schema_max_attempts: int = env_field(3, "FLOW_SCHEMA_MAX_ATTEMPTS")
    loop_max_history_bytes: int = env_field(1024 * 1024, "FLOW_LOOP_MAX_HISTORY_BYTES")
    shell_max_output_bytes: int = env_field(1024 * 1024, "FLOW_SHELL_MAX_OUTPUT")
    file_max_size_bytes: int = env_field(10 * 1024 * 1024, "FLOW_FILE_MAX_SIZE")
    http_max_redirects: int = env_field(0, "FLOW_HTTP_MAX_REDIRECTS")
    dns_cache_ttl_s: float = env_field(30, "FLOW_DNS_CACHE_TTL")
    tool_workers: int = env_field(
        8, "FLOW_TOOL_WORKERS", description="Thread pool size for blocking tool work"
    )

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

    @field_validator(
        "default_llm_timeout_s",
        "default_tool_timeout_s",
        "default_workflow_timeout_s",
        "llm_schema_max_attempts",
        "tool_workers",
    )
    @classmethod
    def _require_positive(cls, value):
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator(
        "retry_backoff_ms",
        "loop_max_history_bytes",
        "shell_max_output_bytes",
        "file_max_size_bytes",
        "http_max_redirects",
        "dns_cache_ttl_s",
    )
    @classmethod
    def _require_non_negative(cls, value):
        if value < 0:
            raise ValueError("must not be negative")
        return value


def get_settings() -> Settings:
    settings = Settings.from_env()
    logger.debug("settings_loaded", **settings.model_dump())
    return settings
