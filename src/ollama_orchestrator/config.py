"""Configuration loading and validation for the orchestrator."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from platformdirs import user_config_path
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError
from .models import GenerationSettings

import tomllib

LOGGER = logging.getLogger(__name__)

APP_NAME = "ollama-orchestrator"
CONFIG_DIR = user_config_path(APP_NAME)
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _required_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class OllamaConfig(BaseModel):
    """Ollama endpoint and default model."""

    host: str = "http://localhost:11434"
    model: str = "llama3.2"
    timeout: int = Field(default=120, ge=1, le=3600)

    @field_validator("host", "model", mode="before")
    @classmethod
    def _validate_required_string(cls, value: Any) -> str:
        return _required_string(value)


class ChatConfig(BaseModel):
    """How prompts are assembled and responses delivered."""

    show_live_response: bool = True
    context_length: int = Field(default=4096, ge=128, le=1_000_000)
    system_prompt: str = ""

    @field_validator("system_prompt", mode="before")
    @classmethod
    def _normalize_prompt(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("system_prompt must be a string.")
        return value.strip()


class GenerationConfig(BaseModel):
    """Default sampling options; chats may override them individually."""

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, ge=0.0, le=1.0)
    top_k: int = Field(default=40, ge=1, le=100)
    repeat_penalty: float = Field(default=1.1, ge=0.5, le=2.0)
    max_tokens: int = -1
    num_thread: int = Field(default=4, ge=1)

    @field_validator("max_tokens")
    @classmethod
    def _validate_max_tokens(cls, value: int) -> int:
        if value != -1 and value < 1:
            raise ValueError("max_tokens must be -1 (unlimited) or at least 1.")
        return value

    def to_settings(self) -> GenerationSettings:
        return GenerationSettings(**self.model_dump())


class RetryConfig(BaseModel):
    """Backoff policy applied to retryable generation failures."""

    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    max_delay_seconds: float = Field(default=10.0, ge=0.0, le=600.0)

    @model_validator(mode="after")
    def _validate_delay_order(self) -> RetryConfig:
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must not be below base_delay_seconds.")
        return self


class TitleConfig(BaseModel):
    """Automatic chat title generation."""

    enabled: bool = True
    timeout_seconds: float = Field(default=30.0, gt=0.0, le=600.0)
    # Empty means "use the chat's own model".
    model: str = ""

    @field_validator("model", mode="before")
    @classmethod
    def _normalize_model(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("title model must be a string.")
        return value.strip()


class FilesConfig(BaseModel):
    """Limits applied while reading attached files."""

    max_text_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    max_image_bytes: int = Field(default=20 * 1024 * 1024, ge=1)


class SecurityConfig(BaseModel):
    """Security policy for remote host access."""

    allow_remote_hosts: bool = False
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "::1"]

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def _validate_allowed_hosts(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("allowed_hosts must be a list.")
        normalized_hosts = [
            item.strip().lower()
            for item in value
            if isinstance(item, str) and item.strip()
        ]
        if not normalized_hosts:
            raise ValueError("allowed_hosts must contain at least one host.")
        return normalized_hosts


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/ollama-orchestrator/orchestrator.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _required_string(value)


class PersistenceConfig(BaseModel):
    """Chat store location; an empty directory means the platform data dir."""

    enabled: bool = True
    directory: str = ""

    @field_validator("directory", mode="before")
    @classmethod
    def _normalize_directory(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("directory must be a string.")
        return value.strip()


class Config(BaseModel):
    """Root configuration model for all sections."""

    model_config = ConfigDict(populate_by_name=True)
    ollama: OllamaConfig = OllamaConfig()
    chat: ChatConfig = ChatConfig()
    generation: GenerationConfig = GenerationConfig()
    retry: RetryConfig = RetryConfig()
    title: TitleConfig = TitleConfig()
    files: FilesConfig = FilesConfig()
    security: SecurityConfig = SecurityConfig()
    logging: LoggingConfig = LoggingConfig()
    persistence: PersistenceConfig = PersistenceConfig()

    @model_validator(mode="after")
    def _validate_security_policy(self) -> Config:
        parsed = urlparse(self.ollama.host)
        scheme = parsed.scheme.lower()
        hostname = (parsed.hostname or "").strip().lower()

        if scheme not in {"http", "https"}:
            raise ValueError("ollama.host must use http or https scheme.")
        if not hostname:
            raise ValueError("ollama.host must include a hostname.")
        if not self.security.allow_remote_hosts and hostname not in set(
            self.security.allowed_hosts
        ):
            raise ValueError(
                "ollama.host is not in security.allowed_hosts while allow_remote_hosts is false."
            )
        return self


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump()


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _safe_default_config() -> dict[str, dict[str, Any]]:
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate merged config and fall back to safe defaults when possible."""
    try:
        return Config.model_validate(raw).model_dump()
    except ValidationError as exc:
        LOGGER.warning(
            "config.invalid",
            extra={"event": "config.invalid", "errors": exc.error_count(), "reason": str(exc)},
        )
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, dict[str, Any]]:
    """Load configuration from TOML, merge onto defaults and validate.

    A missing file yields the defaults. An unreadable or invalid file is
    logged and replaced by the defaults rather than aborting startup.
    """
    target_path = config_path or CONFIG_PATH

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning(
                "config.parse_failed",
                extra={
                    "event": "config.parse_failed",
                    "path": str(target_path),
                    "reason": str(exc),
                },
            )
            raw_data = {}

    merged = _deep_merge(DEFAULT_CONFIG, raw_data)
    return _validate_config(merged)


@dataclass(frozen=True)
class ConfiguredChatSettings:
    """Read-only chat settings view built from a validated config mapping."""

    model: str
    show_live_response: bool
    context_length: int
    system_prompt: str
    generation: GenerationSettings

    @classmethod
    def from_config(cls, config: dict[str, dict[str, Any]]) -> ConfiguredChatSettings:
        chat = config.get("chat", DEFAULT_CONFIG["chat"])
        return cls(
            model=str(config.get("ollama", DEFAULT_CONFIG["ollama"])["model"]),
            show_live_response=bool(chat["show_live_response"]),
            context_length=int(chat["context_length"]),
            system_prompt=str(chat["system_prompt"]),
            generation=GenerationConfig.model_validate(
                config.get("generation", DEFAULT_CONFIG["generation"])
            ).to_settings(),
        )
