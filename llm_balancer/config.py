from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

DEFAULT_PORT = 8080
DEFAULT_TIMEOUT_SECONDS = 180.0
DEFAULT_RETRY = 3
DEFAULT_MODE = "random"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class ConfigLoadError(ValueError):
    pass


class NoBackendsConfiguredError(ConfigLoadError):
    def __init__(self) -> None:
        super().__init__("No backends configured.")


class SelectionMode(str, Enum):
    ROUND_ROBIN = "round-robin"
    WEIGHTED_RANDOM = "random"


def parse_duration_seconds(value: Any) -> float:
    """Accept plain seconds or a duration string such as ``90s`` or ``1m30s``."""
    if isinstance(value, bool):
        raise ValueError("Expected a duration, got a boolean.")
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"Expected a duration, got {type(value).__name__}.")

    text = value.strip().lower()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if position != len(text):
        raise ValueError(f"Invalid duration '{value}'.")
    return total


class ServerConfig(BaseModel):
    port: int = DEFAULT_PORT

    @field_validator("port", mode="before")
    @classmethod
    def _default_port(cls, value: Any) -> Any:
        if value in (None, 0):
            return DEFAULT_PORT
        return value


class BackendConfig(BaseModel):
    name: str
    url: str
    api_key: str | None = None
    api_key_env: str | None = None
    weight: int = 1
    default_model: str | None = None
    models: list[str] = Field(default_factory=list)

    @field_validator("name", "url")
    @classmethod
    def _require_non_empty(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("must not be empty")
        return normalized

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @property
    def effective_weight(self) -> int:
        return self.weight if self.weight > 0 else 1

    @property
    def chat_completions_url(self) -> str:
        return f"{self.url.rstrip('/')}/chat/completions"

    def resolved_default_model(self) -> str:
        if self.default_model:
            return self.default_model
        if self.models:
            return self.models[0]
        return ""

    def resolved_api_key(self) -> str:
        if self.api_key_env:
            env_value = os.getenv(self.api_key_env, "").strip()
            if env_value:
                return env_value
        return self.api_key or ""


class BalancerConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    retry: int = DEFAULT_RETRY
    mode: str = DEFAULT_MODE
    backends: list[BackendConfig] = Field(default_factory=list)

    @field_validator("server", mode="before")
    @classmethod
    def _default_server(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, value: Any) -> float:
        if value is None:
            return DEFAULT_TIMEOUT_SECONDS
        seconds = parse_duration_seconds(value)
        if seconds < 0:
            raise ValueError("timeout must not be negative")
        return seconds or DEFAULT_TIMEOUT_SECONDS

    @field_validator("retry", mode="before")
    @classmethod
    def _default_retry(cls, value: Any) -> Any:
        if value in (None, 0):
            return DEFAULT_RETRY
        return value

    @field_validator("retry")
    @classmethod
    def _positive_retry(cls, value: int) -> int:
        if value < 1:
            raise ValueError("retry must be at least 1")
        return value

    @field_validator("mode", mode="before")
    @classmethod
    def _default_mode(cls, value: Any) -> Any:
        if value is None:
            return DEFAULT_MODE
        if isinstance(value, str) and not value.strip():
            return DEFAULT_MODE
        return value

    @field_validator("backends", mode="before")
    @classmethod
    def _default_backends(cls, value: Any) -> Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _unique_backend_names(self) -> BalancerConfig:
        seen: set[str] = set()
        for backend in self.backends:
            if backend.name in seen:
                raise ValueError(f"Duplicate backend name '{backend.name}'.")
            seen.add(backend.name)
        return self

    @property
    def selection_mode(self) -> SelectionMode:
        if self.mode == SelectionMode.ROUND_ROBIN.value:
            return SelectionMode.ROUND_ROBIN
        return SelectionMode.WEIGHTED_RANDOM


def load_balancer_config(config_path: str | Path) -> BalancerConfig:
    path = Path(config_path)
    if not path.exists():
        raise ConfigLoadError(
            f"Balancer config not found at '{config_path}'. "
            "Create it or set BALANCER_CONFIG_PATH."
        )

    try:
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigLoadError(f"Could not read '{config_path}': {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigLoadError(f"Expected YAML object in '{config_path}'.")

    try:
        config = BalancerConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigLoadError(f"Invalid balancer config '{config_path}': {exc}") from exc

    if not config.backends:
        raise NoBackendsConfiguredError()
    return config
