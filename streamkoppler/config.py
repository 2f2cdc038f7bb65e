"""Configuration models and loaders for streamkoppler.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "streamkoppler/config.yaml"

Protocol = Literal["anthropic", "openai", "responses"]

_DEFAULT_PATHS: dict[str, str] = {
    "anthropic": "/v1/messages",
    "openai": "/v1/chat/completions",
    "responses": "/v1/responses",
}


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class RetryConfig(BaseModel):
    """Bounded retry policy for one upstream request."""

    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True
    retry_server_errors: bool = False

    @model_validator(mode="after")
    def _validate_bounds(self) -> "RetryConfig":
        """Reject policies that can never run or never terminate."""
        if self.max_attempts < 1:
            raise ValueError("retry.max_attempts must be >= 1")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be >= 0")
        if self.backoff_multiplier < 1.0:
            raise ValueError("retry.backoff_multiplier must be >= 1.0")
        return self


class DecodingConfig(BaseModel):
    """Thresholds and switches shared by the protocol decoders."""

    text_word_threshold: int = 20
    text_char_threshold: int = 160
    text_max_delay_ms: int = 200
    anthropic_thinking_flush_chars: int = 20
    openai_thinking_flush_chars: int = 10
    responses_thinking_flush_chars: int = 500
    output_thinking: bool = True
    repair_duplicate_fragments: bool = True
    thinking_placeholder: str = "<think/>"

    @field_validator(
        "text_word_threshold",
        "text_char_threshold",
        "anthropic_thinking_flush_chars",
        "openai_thinking_flush_chars",
        "responses_thinking_flush_chars",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        """Flush thresholds must be at least one unit."""
        if value < 1:
            raise ValueError("flush thresholds must be >= 1")
        return value


class ProviderConfig(BaseModel):
    """One upstream endpoint and the wire protocol it speaks."""

    name: str
    protocol: Protocol
    base_url: str
    path: str | None = None
    api_key: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    anthropic_version: str = "2023-06-01"
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 300.0

    @model_validator(mode="after")
    def _fill_defaults(self) -> "ProviderConfig":
        """Derive the request path from the protocol when not set."""
        if not urlparse(self.base_url).scheme:
            raise ValueError(f"provider '{self.name}' base_url must include a scheme")
        if self.path is None:
            self.path = _DEFAULT_PATHS[self.protocol]
        return self

    @field_validator("headers", mode="before")
    @classmethod
    def _none_to_empty_dict(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for headers as no extra headers."""
        if value is None:
            return {}
        return value


class EngineConfig(BaseModel):
    """Top-level streamkoppler configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8090"
    providers: list[ProviderConfig] = Field(default_factory=list)
    retry: RetryConfig | None = None
    decoding: DecodingConfig | None = None
    client_cache_ttl_seconds: float | None = None
    client_cache_sweep_seconds: float | None = None
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _validate_and_fill(self) -> "EngineConfig":
        """Validate service address, provider names, and fill defaults."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8090")
        names = [provider.name for provider in self.providers]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"duplicate provider names: {', '.join(duplicates)}")
        if self.retry is None:
            self.retry = RetryConfig()
        if self.decoding is None:
            self.decoding = DecodingConfig()
        if self.client_cache_ttl_seconds is None:
            self.client_cache_ttl_seconds = 300.0
        if self.client_cache_sweep_seconds is None:
            self.client_cache_sweep_seconds = 60.0
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("providers", mode="before")
    @classmethod
    def _none_to_empty_list(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for list fields as an empty list."""
        if value is None:
            return []
        return value

    def provider(self, name: str) -> ProviderConfig:
        """Return the provider with the given name."""
        for provider in self.providers:
            if provider.name == name:
                return provider
        raise KeyError(f"unknown provider: {name}")


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


_ENV_MAP = {
    "service_base_url": "STREAMKOPPLER_SERVICE_BASE_URL",
    "client_cache_ttl_seconds": "STREAMKOPPLER_CLIENT_CACHE_TTL_SECONDS",
    "client_cache_sweep_seconds": "STREAMKOPPLER_CLIENT_CACHE_SWEEP_SECONDS",
    "retry.max_attempts": "STREAMKOPPLER_RETRY_MAX_ATTEMPTS",
    "retry.initial_delay_ms": "STREAMKOPPLER_RETRY_INITIAL_DELAY_MS",
    "retry.max_delay_ms": "STREAMKOPPLER_RETRY_MAX_DELAY_MS",
    "retry.retry_server_errors": "STREAMKOPPLER_RETRY_SERVER_ERRORS",
    "decoding.output_thinking": "STREAMKOPPLER_OUTPUT_THINKING",
    "decoding.repair_duplicate_fragments": "STREAMKOPPLER_REPAIR_DUPLICATE_FRAGMENTS",
    "logging.level": "STREAMKOPPLER_LOG_LEVEL",
    "logging.json": "STREAMKOPPLER_LOG_JSON",
}

_INT_KEYS = {"retry.max_attempts", "retry.initial_delay_ms", "retry.max_delay_ms"}
_FLOAT_KEYS = {"client_cache_ttl_seconds", "client_cache_sweep_seconds"}
_BOOL_KEYS = {
    "retry.retry_server_errors",
    "decoding.output_thinking",
    "decoding.repair_duplicate_fragments",
    "logging.json",
}


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    out = dict(data)
    for key, env_name in _ENV_MAP.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key in _INT_KEYS:
            cast: Any = int(value)
        elif key in _FLOAT_KEYS:
            cast = float(value)
        elif key in _BOOL_KEYS:
            cast = value.lower() in {"1", "true", "yes", "on"}
        else:
            cast = value

        section, _, field = key.partition(".")
        if not field:
            out[section] = cast
            continue
        nested = dict(out.get(section) or {})
        nested[field] = cast
        out[section] = nested

    return out


def load_config(path: str | None = None) -> EngineConfig:
    """Load, merge, and validate engine configuration."""
    final_path = path or os.getenv("STREAMKOPPLER_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return EngineConfig.model_validate(raw)
