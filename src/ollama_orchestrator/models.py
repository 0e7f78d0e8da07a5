"""Domain models: chats, messages, generation settings and processed files."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import ResponseFormatError

DEFAULT_CHAT_TITLE = "New Chat"
DEFAULT_TITLE_PREFIX = "New chat with "


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid4().hex


def default_title_for_model(model_name: str) -> str:
    return f"{DEFAULT_TITLE_PREFIX}{model_name}" if model_name else DEFAULT_CHAT_TITLE


def is_default_title(title: str) -> bool:
    return title == DEFAULT_CHAT_TITLE or title.startswith(DEFAULT_TITLE_PREFIX)


class GenerationSettings(BaseModel):
    """Sampling options forwarded to Ollama."""

    model_config = ConfigDict(frozen=True)

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

    @classmethod
    def validated(cls, **values: Any) -> GenerationSettings:
        """Build settings with out-of-range values clamped into range."""
        defaults = cls()
        temperature = float(values.get("temperature", defaults.temperature))
        top_p = float(values.get("top_p", defaults.top_p))
        top_k = int(values.get("top_k", defaults.top_k))
        repeat_penalty = float(values.get("repeat_penalty", defaults.repeat_penalty))
        max_tokens = int(values.get("max_tokens", defaults.max_tokens))
        num_thread = int(values.get("num_thread", defaults.num_thread))
        return cls(
            temperature=min(max(temperature, 0.0), 2.0),
            top_p=min(max(top_p, 0.0), 1.0),
            top_k=min(max(top_k, 1), 100),
            repeat_penalty=min(max(repeat_penalty, 0.5), 2.0),
            max_tokens=-1 if max_tokens == -1 else max(max_tokens, 1),
            num_thread=max(num_thread, 1),
        )

    def warnings(self) -> list[str]:
        """Return advisories for values that are legal but likely unhelpful."""
        notes: list[str] = []
        if self.temperature > 1.5:
            notes.append("High temperature may produce very random responses")
        if self.temperature < 0.1:
            notes.append("Very low temperature may produce repetitive responses")
        if self.top_p < 0.1:
            notes.append("Very low top_p may limit response diversity")
        if self.top_k < 5:
            notes.append("Very low top_k may produce repetitive responses")
        if self.repeat_penalty > 1.5:
            notes.append("High repeat penalty may produce incoherent responses")
        if 0 < self.max_tokens < 50:
            notes.append("Very low max_tokens may cut off responses")
        if self.num_thread > 8:
            notes.append("High thread count may not improve performance")
        return notes

    def to_ollama_options(self) -> dict[str, Any]:
        """Return only the values that differ from the defaults."""
        defaults = GenerationSettings()
        options: dict[str, Any] = {}
        if self.temperature != defaults.temperature:
            options["temperature"] = self.temperature
        if self.top_p != defaults.top_p:
            options["top_p"] = self.top_p
        if self.top_k != defaults.top_k:
            options["top_k"] = self.top_k
        if self.repeat_penalty != defaults.repeat_penalty:
            options["repeat_penalty"] = self.repeat_penalty
        if self.max_tokens != defaults.max_tokens and self.max_tokens > 0:
            options["num_predict"] = self.max_tokens
        if self.num_thread != defaults.num_thread:
            options["num_thread"] = self.num_thread
        return options


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """One entry in a chat transcript."""

    role: MessageRole
    content: str
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utcnow)
    attached_files: tuple[str, ...] = ()
    thinking_content: str | None = None
    context: tuple[int, ...] | None = None

    @property
    def is_system(self) -> bool:
        return self.role == MessageRole.SYSTEM

    @property
    def has_thinking(self) -> bool:
        return bool(self.thinking_content and self.thinking_content.strip())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.attached_files:
            payload["attached_files"] = list(self.attached_files)
        if self.thinking_content:
            payload["thinking_content"] = self.thinking_content
        if self.context is not None:
            payload["context"] = list(self.context)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Message:
        try:
            role = MessageRole(payload.get("role", MessageRole.USER.value))
        except ValueError:
            role = MessageRole.USER
        content = payload.get("content")
        if not isinstance(content, str):
            raise ResponseFormatError("Message content must be a string.")
        message_id = payload.get("id")
        timestamp = payload.get("timestamp")
        thinking = payload.get("thinking_content")
        raw_context = payload.get("context")
        return cls(
            role=role,
            content=content,
            id=message_id if isinstance(message_id, str) and message_id else _new_id(),
            timestamp=_parse_datetime(timestamp),
            attached_files=tuple(
                str(item) for item in payload.get("attached_files") or () if item
            ),
            thinking_content=thinking if isinstance(thinking, str) else None,
            context=(
                tuple(int(token) for token in raw_context)
                if isinstance(raw_context, list)
                else None
            ),
        )


@dataclass(frozen=True)
class Chat:
    """A conversation with one model and its memory context."""

    model_name: str
    title: str = DEFAULT_CHAT_TITLE
    id: str = field(default_factory=_new_id)
    messages: tuple[Message, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)
    last_updated_at: datetime = field(default_factory=_utcnow)
    context: tuple[int, ...] | None = None
    custom_generation_settings: GenerationSettings | None = None

    @classmethod
    def create(
        cls,
        model_name: str,
        title: str | None = None,
        system_prompt: str | None = None,
    ) -> Chat:
        messages: tuple[Message, ...] = ()
        if system_prompt and system_prompt.strip():
            messages = (Message(MessageRole.SYSTEM, system_prompt.strip()),)
        now = _utcnow()
        return cls(
            model_name=model_name,
            title=title or default_title_for_model(model_name),
            messages=messages,
            created_at=now,
            last_updated_at=now,
        )

    @property
    def has_default_title(self) -> bool:
        return is_default_title(self.title)

    @property
    def has_custom_generation_settings(self) -> bool:
        return self.custom_generation_settings is not None

    @property
    def displayable_messages(self) -> list[Message]:
        return [message for message in self.messages if not message.is_system]

    @property
    def has_conversation(self) -> bool:
        return any(not message.is_system for message in self.messages)

    def with_message(self, message: Message) -> Chat:
        return replace(
            self,
            messages=self.messages + (message,),
            last_updated_at=_utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model_name": self.model_name,
            "messages": [message.to_dict() for message in self.messages],
            "created_at": self.created_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "context": list(self.context) if self.context is not None else None,
            "custom_generation_settings": (
                self.custom_generation_settings.model_dump()
                if self.custom_generation_settings is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Chat:
        if not isinstance(payload, dict):
            raise ResponseFormatError("Chat payload must be an object.")
        chat_id = payload.get("id")
        title = payload.get("title")
        if not isinstance(chat_id, str) or not chat_id:
            raise ResponseFormatError("Chat payload is missing an id.")
        if not isinstance(title, str):
            raise ResponseFormatError("Chat payload is missing a title.")
        raw_messages = payload.get("messages") or []
        if not isinstance(raw_messages, list):
            raise ResponseFormatError("Chat messages must be a list.")
        raw_context = payload.get("context")
        raw_settings = payload.get("custom_generation_settings")
        return cls(
            id=chat_id,
            title=title,
            model_name=str(payload.get("model_name") or ""),
            messages=tuple(Message.from_dict(item) for item in raw_messages),
            created_at=_parse_datetime(payload.get("created_at")),
            last_updated_at=_parse_datetime(payload.get("last_updated_at")),
            context=(
                tuple(int(token) for token in raw_context)
                if isinstance(raw_context, list)
                else None
            ),
            custom_generation_settings=(
                GenerationSettings.validated(**raw_settings)
                if isinstance(raw_settings, dict)
                else None
            ),
        )


class FileType(str, Enum):
    IMAGE = "image"
    PDF = "pdf"
    TEXT = "text"
    SOURCE_CODE = "source_code"
    JSON = "json"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProcessedFile:
    """Content extracted from an attached file, ready for the prompt."""

    original_path: str
    file_name: str
    file_type: FileType
    size_bytes: int
    text_content: str | None = None
    base64_content: str | None = None
    mime_type: str | None = None
    processed_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_path(cls, path: str | Path, **kwargs: Any) -> ProcessedFile:
        candidate = Path(path)
        return cls(original_path=str(candidate), file_name=candidate.name, **kwargs)

    @property
    def has_text_content(self) -> bool:
        return bool(self.text_content)

    @property
    def has_image_content(self) -> bool:
        return bool(self.base64_content)


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            raise ResponseFormatError(f"Invalid timestamp {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    return _utcnow()
