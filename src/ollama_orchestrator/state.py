"""Immutable snapshots of chat operation state and their transitions.

Every transition returns a new frozen snapshot. Snapshots validate their own
invariants on construction, so an illegal combination can never be observed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Mapping

from .exceptions import InvalidStateError


class GenerationPhase(str, Enum):
    """Coarse lifecycle phase derived from a ChatOperationState."""

    IDLE = "IDLE"
    SENDING = "SENDING"
    PROCESSING_FILES = "PROCESSING_FILES"
    GENERATING = "GENERATING"


class FileProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class FileProcessingProgress:
    """Progress of one attached file."""

    file_path: str
    file_name: str
    progress: float
    status: FileProcessingStatus = FileProcessingStatus.PENDING

    def __post_init__(self) -> None:
        if not 0.0 <= self.progress <= 1.0:
            raise InvalidStateError(
                f"File progress must be within [0, 1], got {self.progress}"
            )


@dataclass(frozen=True)
class StreamingState:
    """Accumulated raw response and its filtered, displayable counterpart."""

    raw_response: str = ""
    display_response: str = ""
    is_streaming: bool = False

    def __post_init__(self) -> None:
        if not self.is_streaming and self.raw_response != self.display_response:
            raise InvalidStateError("Completed stream must display its raw response")
        if len(self.display_response) > len(self.raw_response):
            raise InvalidStateError("Display response cannot exceed raw response")

    @classmethod
    def initial(cls) -> StreamingState:
        return cls()

    @classmethod
    def streaming(cls, raw_response: str, display_response: str) -> StreamingState:
        return cls(raw_response, display_response, True)

    @classmethod
    def completed(cls, final_response: str) -> StreamingState:
        return cls(final_response, final_response, False)


@dataclass(frozen=True)
class ThinkingState:
    """Live thinking content plus the set of expanded thinking bubbles."""

    current_thinking_content: str = ""
    has_active_thinking_bubble: bool = False
    is_inside_thinking_block: bool = False
    is_thinking_phase: bool = False
    expanded_bubbles: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.has_active_thinking_bubble and not self.current_thinking_content:
            raise InvalidStateError("Active thinking bubble requires thinking content")
        if self.has_active_thinking_bubble and not self.is_thinking_phase:
            raise InvalidStateError("Active thinking bubble requires the thinking phase")
        if self.is_inside_thinking_block and not self.is_thinking_phase:
            raise InvalidStateError("Open thinking block requires the thinking phase")

    @classmethod
    def initial(cls) -> ThinkingState:
        return cls()

    def begin_generation(self) -> ThinkingState:
        """Start a fresh generation, assuming the model may think first."""
        return ThinkingState(
            is_thinking_phase=True,
            expanded_bubbles=self.expanded_bubbles,
        )

    def with_live_thinking(
        self,
        *,
        content: str,
        is_inside_block: bool,
        is_thinking_phase: bool,
    ) -> ThinkingState:
        return replace(
            self,
            current_thinking_content=content,
            has_active_thinking_bubble=bool(content) and is_thinking_phase,
            is_inside_thinking_block=is_inside_block,
            is_thinking_phase=is_thinking_phase,
        )

    def end_thinking_phase(self) -> ThinkingState:
        # The bubble stops live-updating once the answer begins; content is kept.
        return replace(
            self,
            has_active_thinking_bubble=False,
            is_inside_thinking_block=False,
            is_thinking_phase=False,
        )

    def clear_current_thinking(self) -> ThinkingState:
        return ThinkingState(expanded_bubbles=self.expanded_bubbles)

    def toggle_bubble(self, message_id: str) -> ThinkingState:
        if message_id in self.expanded_bubbles:
            expanded = self.expanded_bubbles - {message_id}
        else:
            expanded = self.expanded_bubbles | {message_id}
        return replace(self, expanded_bubbles=expanded)

    def is_bubble_expanded(self, message_id: str) -> bool:
        return message_id in self.expanded_bubbles


@dataclass(frozen=True)
class TitleGenerationState:
    chats_generating_title: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_generating_title(self) -> bool:
        return bool(self.chats_generating_title)

    def is_generating_title_for(self, chat_id: str) -> bool:
        return chat_id in self.chats_generating_title

    def start(self, chat_id: str) -> TitleGenerationState:
        return TitleGenerationState(self.chats_generating_title | {chat_id})

    def stop(self, chat_id: str) -> TitleGenerationState:
        return TitleGenerationState(self.chats_generating_title - {chat_id})


@dataclass(frozen=True)
class ChatOperationState:
    """Aggregate snapshot of everything the orchestrator is doing right now."""

    is_generating: bool = False
    is_sending_message: bool = False
    is_processing_files: bool = False
    current_generating_chat_id: str | None = None
    streaming: StreamingState = field(default_factory=StreamingState)
    thinking: ThinkingState = field(default_factory=ThinkingState)
    title: TitleGenerationState = field(default_factory=TitleGenerationState)
    file_processing_progress: Mapping[str, FileProcessingProgress] = field(
        default_factory=dict
    )
    should_scroll_to_bottom_on_chat_switch: bool = False

    def __post_init__(self) -> None:
        if self.is_generating != (self.current_generating_chat_id is not None):
            raise InvalidStateError(
                "is_generating must be set exactly when a generating chat id is present"
            )
        if self.file_processing_progress and not self.is_processing_files:
            raise InvalidStateError("File progress is only tracked while processing files")

    @classmethod
    def initial(cls) -> ChatOperationState:
        return cls()

    @property
    def phase(self) -> GenerationPhase:
        if self.is_generating:
            return GenerationPhase.GENERATING
        if self.is_processing_files:
            return GenerationPhase.PROCESSING_FILES
        if self.is_sending_message:
            return GenerationPhase.SENDING
        return GenerationPhase.IDLE

    @property
    def is_busy(self) -> bool:
        return self.is_generating or self.is_sending_message or self.is_processing_files

    def is_chat_generating(self, chat_id: str) -> bool:
        return self.current_generating_chat_id == chat_id

    # -- send / generation -------------------------------------------------

    def begin_send(self) -> ChatOperationState:
        if self.is_sending_message:
            raise InvalidStateError("A message is already being sent")
        return replace(self, is_sending_message=True)

    def start_generation(self, chat_id: str) -> ChatOperationState:
        if not chat_id:
            raise InvalidStateError("Generation requires a chat id")
        if self.is_generating and self.current_generating_chat_id != chat_id:
            raise InvalidStateError(
                f"Chat {self.current_generating_chat_id} is already generating"
            )
        return replace(
            self,
            is_generating=True,
            is_sending_message=True,
            current_generating_chat_id=chat_id,
            streaming=StreamingState.streaming("", ""),
            thinking=self.thinking.begin_generation(),
        )

    def stop_generation(self) -> ChatOperationState:
        return replace(
            self,
            is_generating=False,
            is_sending_message=False,
            current_generating_chat_id=None,
            streaming=StreamingState.initial(),
            thinking=self.thinking.clear_current_thinking(),
        )

    def with_streaming(self, raw_response: str, display_response: str) -> ChatOperationState:
        return replace(
            self, streaming=StreamingState.streaming(raw_response, display_response)
        )

    def with_thinking(self, thinking: ThinkingState) -> ChatOperationState:
        return replace(self, thinking=thinking)

    def toggle_thinking_bubble(self, message_id: str) -> ChatOperationState:
        return replace(self, thinking=self.thinking.toggle_bubble(message_id))

    # -- file processing ---------------------------------------------------

    def start_file_processing(self) -> ChatOperationState:
        return replace(self, is_processing_files=True, file_processing_progress={})

    def stop_file_processing(self) -> ChatOperationState:
        return replace(self, is_processing_files=False, file_processing_progress={})

    def update_file_progress(
        self, file_path: str, progress: FileProcessingProgress
    ) -> ChatOperationState:
        if not self.is_processing_files:
            raise InvalidStateError("File progress reported outside file processing")
        updated = dict(self.file_processing_progress)
        updated[file_path] = progress
        return replace(self, file_processing_progress=updated)

    def remove_file_progress(self, file_path: str) -> ChatOperationState:
        updated = dict(self.file_processing_progress)
        updated.pop(file_path, None)
        return replace(self, file_processing_progress=updated)

    # -- titles --------------------------------------------------------------

    def start_title_generation(self, chat_id: str) -> ChatOperationState:
        return replace(self, title=self.title.start(chat_id))

    def stop_title_generation(self, chat_id: str) -> ChatOperationState:
        return replace(self, title=self.title.stop(chat_id))

    # -- scrolling -----------------------------------------------------------

    def with_scroll_to_bottom(self, should_scroll: bool) -> ChatOperationState:
        return replace(self, should_scroll_to_bottom_on_chat_switch=should_scroll)

    # -- resets --------------------------------------------------------------

    def reset_generation(self) -> ChatOperationState:
        """Drop all generation, streaming, thinking and file-processing state."""
        return replace(
            self,
            is_generating=False,
            is_sending_message=False,
            is_processing_files=False,
            current_generating_chat_id=None,
            streaming=StreamingState.initial(),
            thinking=self.thinking.clear_current_thinking(),
            file_processing_progress={},
        )
