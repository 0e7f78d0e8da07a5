"""Collaborator contracts the orchestrator depends on."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from .models import Chat, GenerationSettings, Message, ProcessedFile
from .state import FileProcessingProgress
from .thinking import ThinkingContent

CancelCheck = Callable[[], bool]
ProgressCallback = Callable[[FileProcessingProgress], None]
ChatsListener = Callable[[list[Chat]], None]


@dataclass(frozen=True)
class GenerationResponse:
    text: str
    context: tuple[int, ...] | None = None


@dataclass(frozen=True)
class StreamChunk:
    """One streamed delta; ``context`` is only set on the final chunk."""

    response_delta: str
    context: tuple[int, ...] | None = None
    done: bool = False


class GenerationService(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        context: Sequence[int] | None = None,
        conversation_history: Sequence[Message] | None = None,
        processed_files: Sequence[ProcessedFile] | None = None,
        context_length: int | None = None,
        options: dict[str, Any] | None = None,
        system_prompt: str | None = None,
        is_cancelled: CancelCheck | None = None,
    ) -> GenerationResponse: ...

    def generate_stream(
        self,
        prompt: str,
        *,
        model: str,
        context: Sequence[int] | None = None,
        conversation_history: Sequence[Message] | None = None,
        processed_files: Sequence[ProcessedFile] | None = None,
        context_length: int | None = None,
        options: dict[str, Any] | None = None,
        system_prompt: str | None = None,
        is_cancelled: CancelCheck | None = None,
    ) -> AsyncIterator[StreamChunk]: ...

    async def list_models(self) -> list[str]: ...


class ChatRepository(Protocol):
    async def load_chats(self) -> list[Chat]: ...

    async def save_chat(self, chat: Chat) -> None: ...

    async def delete_chat(self, chat_id: str) -> None: ...

    def subscribe(self, listener: ChatsListener) -> Callable[[], None]:
        """Register ``listener`` for full-list pushes; returns an unsubscribe hook."""
        ...


class FileContentProcessor(Protocol):
    async def process_files(
        self,
        paths: Sequence[str],
        *,
        on_progress: ProgressCallback | None = None,
        is_cancelled: CancelCheck | None = None,
    ) -> list[ProcessedFile]: ...


class ThinkingExtractor(Protocol):
    def has_thinking_content(self, text: str) -> bool: ...

    def extract_thinking_content(self, text: str) -> ThinkingContent: ...


class ChatSettings(Protocol):
    """Read-only view of the settings a generation needs."""

    @property
    def model(self) -> str: ...

    @property
    def show_live_response(self) -> bool: ...

    @property
    def context_length(self) -> int: ...

    @property
    def system_prompt(self) -> str: ...

    @property
    def generation(self) -> GenerationSettings: ...
